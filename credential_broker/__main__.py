"""
Entry point for running the Credential Broker backend.

Usage:
    python -m credential_broker

This starts the FastAPI server on http://0.0.0.0:3001 (HOST / PORT override).
"""
import uvicorn

from logging_setup import setup_logging
from .config import get_config

if __name__ == "__main__":
    setup_logging(level="INFO", use_json=True)

    config = get_config()
    uvicorn.run(
        "credential_broker.server:app",
        host=config.host,
        port=config.port,
        log_level="info"
    )
