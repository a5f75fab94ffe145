"""
Run the companion service: python -m web

Configuration comes from the environment (see web.config.Settings). uvicorn
installs the SIGINT/SIGTERM handlers; on either signal it runs the
application's lifespan shutdown, which sends "quit" to the engine before the
process exits.
"""

import logging
import sys

import uvicorn

from web.app import create_app
from web.config import Settings


def main() -> int:
    try:
        settings = Settings.from_env()
    except ValueError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _log = logging.getLogger("web")
    _log.info(
        "engine=%s threads=%d hash=%d MB, listening on %s:%d",
        settings.engine_path,
        settings.threads,
        settings.hash_mb,
        settings.host,
        settings.port,
    )

    app = create_app(settings=settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
