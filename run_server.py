#!/usr/bin/env python3
"""
Petals Server - HTTP chat server launcher
Runs the FastAPI app (streaming chat, tool listing) under uvicorn
"""
import logging
import sys

import uvicorn

from petals.config import settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    logger.info("Starting Petals server...")
    logger.info(f"Python {sys.version}, encoding={sys.getdefaultencoding()}")
    logger.info(f"HTTP server will run on http://{settings.http_host}:{settings.http_port}")
    uvicorn.run(
        "petals.main:create_app",
        factory=True,
        host=settings.http_host,
        port=settings.http_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
