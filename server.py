import uvicorn  # type: ignore

from gatekeeper.core import config
from gatekeeper.utils import get_logger

log = get_logger(__name__)

if __name__ == "__main__":
    log.info(f"Running gatekeeper on {config.SERVER_HOST}:{config.SERVER_PORT}")
    uvicorn.run(
        "gatekeeper.main:app",
        reload=config.SERVER_RELOAD,
        host=config.SERVER_HOST,
        port=config.SERVER_PORT,
    )
