"""Startup script for the market chat gateway."""

import sys

import uvicorn

from config import config
from utils.logger import setup_logger


if __name__ == "__main__":
    logger = setup_logger(log_dir=str(config.system.log_dir), level=config.system.log_level)

    host = config.gateway.host
    port = config.gateway.port

    logger.info("=" * 60)
    logger.info("Market Chat - Gateway Service")
    logger.info("=" * 60)
    logger.info(f"HTTP API  : http://{host}:{port}")
    logger.info(f"WebSocket : ws://{host}:{port}{config.gateway.websocket_path}")
    logger.info(f"Storage   : {config.storage.backend}")

    try:
        import chat_gateway.app  # noqa: F401
    except Exception as e:
        logger.error(f"Cannot import gateway app: {e}")
        import traceback

        logger.error(traceback.format_exc())
        logger.error("Please install dependencies first: pip install -e .")
        sys.exit(1)

    uvicorn.run(
        "chat_gateway.app:app",
        host=host,
        port=port,
        reload=False,
        log_level=config.system.log_level.lower(),
    )
