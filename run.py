#!/usr/bin/env python3
"""
Microfinance Core Entry Point

Starts the FastAPI server with the loan calculation and ledger posting engine.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from microfinance_core.config import get_config
from microfinance_core.logging_config import setup_logging
from microfinance_core.api import run_server


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info("Starting Microfinance Core API on %s:%d", config.api_host, config.api_port)
    logger.info("Backdate window: %d days, approvers: %s",
                config.backdate_window_days, ", ".join(config.approver_roles))

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down Microfinance Core API")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)
