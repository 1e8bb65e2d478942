import logging
import os

import uvicorn

from backend.core.logging import setup_logging

logger = logging.getLogger("smartcharge.run")

if __name__ == "__main__":
    setup_logging()
    port = int(os.environ.get("PORT", 5000))
    logger.info(f"Starting SmartCharge on port {port}...")
    uvicorn.run("backend.main:get_app", factory=True, host="0.0.0.0", port=port)
