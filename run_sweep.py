#!/usr/bin/env python3
"""
Overdue Sweep Entry Point

Runs one overdue sweep against the configured database and exits.
Meant to be invoked by cron or another scheduler; there is no internal timer.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from agriledger.config import get_config
from agriledger.errors import LedgerError
from agriledger.logging_config import setup_logging
from agriledger.service import LoanService
from agriledger.storage import create_storage
from agriledger.sweep import OverdueSweep


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    storage = create_storage(config.database_url, busy_timeout=config.database_pool_timeout)
    try:
        service = LoanService(storage, config=config)
        result = OverdueSweep(service, batch_size=config.sweep_batch_size).run()
        print(f"{result.transitioned} loans moved to OVERDUE "
              f"({result.examined} examined, {result.skipped} skipped, {len(result.failed)} failed)")
        if result.failed:
            sys.exit(2)
    except LedgerError as e:
        print(f"Overdue sweep failed: {e.message}")
        sys.exit(1)
    finally:
        storage.close()
