#!/usr/bin/env python3
"""
Startup script for the Marketplace Payments FastAPI application.

This script loads a local .env file and starts the server with uvicorn.
"""

import sys
import uvicorn
from dotenv import load_dotenv


def main():
    """Start the FastAPI application."""
    # Environment must be loaded before the app module reads its settings
    load_dotenv()

    try:
        from marketplace_payments.api.main import app
        from marketplace_payments.config import get_settings
    except ImportError as e:
        print(f"Failed to import FastAPI app: {e}")
        print("Make sure the package is installed (pip install -e .).")
        sys.exit(1)

    settings = get_settings()

    print(f"Starting Marketplace Payments API on {settings.host}:{settings.port}")
    print(f"API Documentation: http://{settings.host}:{settings.port}/docs")
    print(f"Health Check: http://{settings.host}:{settings.port}/health")

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
