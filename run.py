#!/usr/bin/env python3
"""
Microfinance Loan Core Entry Point

Opens the configured storage and runs the reconciliation sweeper, closing
fully paid loans every ``reconcile_interval_seconds`` until interrupted.
"""

import sys
import threading
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from microfinance.config import get_config
from microfinance.loans import LoanManager
from microfinance.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )

    manager = LoanManager.from_config(config)
    sweeper = manager.create_sweeper()

    print("Starting Microfinance Loan Core...")
    print(f"Storage: {config.database_url}")
    print(f"Audit trail {'active' if config.enable_audit_logging else 'disabled'}")
    print(f"Reconciliation sweep every {config.reconcile_interval_seconds}s")
    print()

    try:
        closed = sweeper.run_once()
        logger.info(f"Startup reconciliation closed {len(closed)} loan(s)")
        sweeper.start()
        threading.Event().wait()
    except KeyboardInterrupt:
        print("\nShutting down Microfinance Loan Core...")
    except Exception as e:
        print(f"Error running loan core: {e}")
        sys.exit(1)
    finally:
        sweeper.stop()
        manager.storage.close()
