from __future__ import annotations

from typing import Optional

import uvicorn

import config as CFG


def main(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False) -> None:
    """Entry point for launching the API with uvicorn."""
    uvicorn.run(
        "web_api.app:app",
        host=host or CFG.API_HOST,
        port=port or CFG.API_PORT,
        reload=reload,
        log_level=CFG.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
