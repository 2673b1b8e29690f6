#!/usr/bin/env python3
"""
Worker Loan Ledger Entry Point

Starts the FastAPI server with settings from ``LEDGER_*`` environment
variables (see ``loan_ledger.config``).
"""

import sys

import uvicorn

from loan_ledger.config import get_config
from loan_ledger.logging_config import setup_logging


def run_server(host: str, port: int, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_ledger.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info(f"Starting loan ledger API on {config.api_host}:{config.api_port} ({config.database_url})")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down loan ledger API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
