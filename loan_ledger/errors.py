"""
Error Types Module

Exception hierarchy for the loan ledger. Every error carries a machine-readable
kind plus a human-readable message so callers can map failures without
parsing strings.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors"""

    kind = "ledger_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses and structured logs"""
        result = {"kind": self.kind, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class NotFoundError(LedgerError):
    """Raised when a referenced customer, loan or installment does not exist"""

    kind = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id}
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationError(LedgerError):
    """Raised when input is missing, invalid, or the operation is not allowed in the current state"""

    kind = "validation_error"


class ConflictError(LedgerError):
    """Raised when creating an entity whose identity already exists"""

    kind = "conflict"


class StoreError(LedgerError):
    """Raised when the underlying storage backend fails"""

    kind = "store_error"
