"""
odata_core.api - Run as module

Usage: python -m odata_core.api
"""

import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv


def main():
    """Run the development gateway."""
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    host = os.environ.get("ODATA_HOST", "127.0.0.1")
    port = int(os.environ.get("ODATA_PORT", "5050"))
    reload = os.environ.get("ODATA_RELOAD", "false").lower() == "true"
    log_level = os.environ.get("ODATA_LOG_LEVEL", "info")

    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("odata_core").info(f"starting OData gateway on {host}:{port}")

    uvicorn.run(
        "odata_core.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


if __name__ == "__main__":
    main()
