#!/usr/bin/env python3
"""
Kargo API Server
Launches the FastAPI application with uvicorn.
"""

import uvicorn

from kargo_server.config import get_settings
from kargo_server.core.logging import setup_logging

settings = get_settings()

# Use the application's own logging setup instead of uvicorn's default log_config
setup_logging(settings)

if __name__ == "__main__":
    uvicorn.run(
        "kargo_server.main:build_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.is_debug,
        log_level=settings.log_level.lower(),
        log_config=None,
    )
