"""
FastAPI REST API Module

Exposes the credit engine over HTTP: credit origination, snapshots, updates,
installment payments, settlement, refinancing, voiding and the cash register.
Runs on port 8090 by default.
"""

import uvicorn

from .api_modular import create_app
from .config import get_config
from .logging_config import setup_logging


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    setup_logging(get_config().log_level)
    uvicorn.run(
        "credit_engine.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    run_server(config.api_host, config.api_port)
