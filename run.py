#!/usr/bin/env python3
"""
Loan Ledger Entry Point

Starts the FastAPI server with the loan ledger and its daily overdue sweep.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from loan_ledger.api import run_server
from loan_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Loan Ledger...")
    print(f"Storage: {config.database_url}")
    print(f"Overdue sweep: daily at {config.sweep_hour:02d}:{config.sweep_minute:02d}"
          f"{'' if config.sweep_enabled else ' (disabled)'}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
