"""
FastAPI REST API Module

Provides REST API endpoints for customer management, loans, installment
status changes and the overdue sweep. Ledger errors are mapped to HTTP
status codes by a single exception handler.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from fastapi import FastAPI, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .config import get_config
from .errors import LedgerError
from .ledger import LoanLedger
from .logging_config import get_logger, setup_logging


logger = get_logger(__name__)

ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "conflict": status.HTTP_409_CONFLICT,
    "store_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# Pydantic models for API requests
class CreateCustomerRequest(BaseModel):
    name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    referred_by: Optional[str] = None
    note: str = ""


class UpdateCustomerRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    referred_by: Optional[str] = None
    note: Optional[str] = None


class UpdateNoteRequest(BaseModel):
    note: str = ""


class CreateLoanRequest(BaseModel):
    customer_id: str
    principal: str = Field(..., description="Decimal amount as string")
    repayable: str = Field(..., description="Decimal amount as string")
    installment_count: int = Field(..., description="Number of monthly installments")
    origination_date: str = Field(..., description="ISO date (YYYY-MM-DD)")
    note: str = ""


class EditLoanRequest(BaseModel):
    customer_id: Optional[str] = None
    principal: Optional[str] = None
    repayable: Optional[str] = None
    installment_count: Optional[int] = None
    origination_date: Optional[str] = None
    note: Optional[str] = None


class InstallmentStatusRequest(BaseModel):
    status: str = Field(..., description="Paid or Pending")


def _changes(request: BaseModel) -> Dict[str, Any]:
    """Fields actually sent by the client"""
    return {key: value for key, value in request.model_dump(exclude_unset=True).items() if value is not None}


def _loan_with_installments(ledger: LoanLedger, loan_id: str) -> Dict[str, Any]:
    loan = ledger.get_loan(loan_id)
    result = loan.to_dict()
    result["installments"] = [installment.to_dict() for installment in ledger.get_installments(loan_id)]
    return result


@asynccontextmanager
async def lifespan(app: FastAPI):
    ledger: LoanLedger = app.state.ledger
    ledger.start_scheduler()
    yield
    ledger.shutdown()


def create_app(ledger: Optional[LoanLedger] = None) -> FastAPI:
    """
    Build the FastAPI application around a ledger.

    Args:
        ledger: Ledger to serve; one is built from configuration when omitted

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Loan Ledger API",
        description="Loan servicing ledger: schedules, installment status and customer rollups",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.ledger = ledger or LoanLedger()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})

    def get_ledger() -> LoanLedger:
        return app.state.ledger

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Customer endpoints
    @app.post("/customers", status_code=status.HTTP_201_CREATED)
    async def create_customer(request: CreateCustomerRequest, ledger: LoanLedger = Depends(get_ledger)):
        """Create a new customer"""
        customer = ledger.create_customer(
            name=request.name,
            phone=request.phone,
            address=request.address,
            referred_by=request.referred_by,
            note=request.note
        )
        return customer.to_dict()

    @app.get("/customers")
    async def list_customers(ledger: LoanLedger = Depends(get_ledger)):
        return [customer.to_dict() for customer in ledger.list_customers()]

    @app.get("/customers/{customer_id}")
    async def get_customer(customer_id: str, ledger: LoanLedger = Depends(get_ledger)):
        return ledger.get_customer(customer_id).to_dict()

    @app.put("/customers/{customer_id}")
    async def update_customer(customer_id: str, request: UpdateCustomerRequest,
                              ledger: LoanLedger = Depends(get_ledger)):
        return ledger.update_customer(customer_id, **_changes(request)).to_dict()

    @app.put("/customers/{customer_id}/note")
    async def update_customer_note(customer_id: str, request: UpdateNoteRequest,
                                   ledger: LoanLedger = Depends(get_ledger)):
        return ledger.update_customer_note(customer_id, request.note).to_dict()

    @app.delete("/customers/{customer_id}")
    async def delete_customer(customer_id: str, ledger: LoanLedger = Depends(get_ledger)):
        deleted = ledger.delete_customer(customer_id)
        return {"message": "Customer deleted", "deleted": deleted}

    @app.get("/customers/{customer_id}/aggregates")
    async def get_customer_aggregates(customer_id: str, ledger: LoanLedger = Depends(get_ledger)):
        return ledger.get_customer_aggregates(customer_id).to_dict()

    # Loan endpoints
    @app.post("/loans", status_code=status.HTTP_201_CREATED)
    async def create_loan(request: CreateLoanRequest, ledger: LoanLedger = Depends(get_ledger)):
        """Create a loan and its installment schedule"""
        loan = ledger.create_loan(
            customer_id=request.customer_id,
            principal=request.principal,
            repayable=request.repayable,
            installment_count=request.installment_count,
            origination_date=request.origination_date,
            note=request.note
        )
        return _loan_with_installments(ledger, loan.id)

    @app.get("/loans")
    async def list_open_loans(ledger: LoanLedger = Depends(get_ledger)):
        return [loan.to_dict() for loan in ledger.list_open_loans()]

    @app.get("/loans/paid")
    async def list_paid_loans(ledger: LoanLedger = Depends(get_ledger)):
        return [loan.to_dict() for loan in ledger.list_paid_loans()]

    @app.get("/loans/{loan_id}")
    async def get_loan(loan_id: str, ledger: LoanLedger = Depends(get_ledger)):
        return _loan_with_installments(ledger, loan_id)

    @app.put("/loans/{loan_id}")
    async def edit_loan(loan_id: str, request: EditLoanRequest, ledger: LoanLedger = Depends(get_ledger)):
        """Edit loan terms; changing installment_count resizes the schedule"""
        ledger.edit_loan(loan_id, **_changes(request))
        return _loan_with_installments(ledger, loan_id)

    @app.delete("/loans/{loan_id}")
    async def delete_loan(loan_id: str, ledger: LoanLedger = Depends(get_ledger)):
        ledger.delete_loan(loan_id)
        return {"message": "Loan deleted"}

    @app.get("/loans/{loan_id}/installments")
    async def get_loan_installments(loan_id: str, ledger: LoanLedger = Depends(get_ledger)):
        return [installment.to_dict() for installment in ledger.get_installments(loan_id)]

    @app.patch("/loans/{loan_id}/paid")
    async def mark_loan_paid(loan_id: str, ledger: LoanLedger = Depends(get_ledger)):
        return ledger.mark_loan_paid(loan_id).to_dict()

    # Installment endpoints
    @app.get("/installments")
    async def list_installments(loan_id: Optional[str] = None, customer_id: Optional[str] = None,
                                ledger: LoanLedger = Depends(get_ledger)):
        installments = ledger.list_installments(loan_id=loan_id, customer_id=customer_id)
        return [installment.to_dict() for installment in installments]

    @app.get("/installments/overdue")
    async def list_overdue_installments(ledger: LoanLedger = Depends(get_ledger)):
        rows = ledger.list_overdue_installments()
        return [
            {
                **row["installment"].to_dict(),
                "customer_id": row["loan"].customer_id,
                "customer_name": row["customer_name"],
                "loan_status": row["loan"].status.value,
            }
            for row in rows
        ]

    @app.patch("/installments/{installment_id}/status")
    async def set_installment_status(installment_id: str, request: InstallmentStatusRequest,
                                     ledger: LoanLedger = Depends(get_ledger)):
        """Mark an installment Paid or take the payment back"""
        return ledger.set_installment_status(installment_id, request.status).to_dict()

    # Overdue sweep
    @app.post("/sweeps")
    async def run_overdue_sweep(ledger: LoanLedger = Depends(get_ledger)):
        return ledger.run_overdue_sweep().to_dict()

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "loan_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
