"""
Command-line entry point: `aigis-memory`.

Exit codes
----------
0  clean shutdown (SIGINT/SIGTERM)
2  invalid configuration detected before startup
3  startup failed inside the app lifespan (uvicorn's startup-failure code),
   e.g. store dimension mismatch or rejected embedding credentials
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Sequence

import uvicorn
from dotenv import load_dotenv

from .config import load_settings
from .core.errors import ConfigurationError
from .logging_config import configure_logging
from .main import create_app

logger = logging.getLogger("aigis.cli")

EXIT_CONFIG_ERROR = 2


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        configure_logging("INFO")
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR

    configure_logging(settings.log_level)
    app = create_app(settings)

    # uvicorn turns SIGINT/SIGTERM into a lifespan shutdown and exits 0,
    # or calls sys.exit(3) when the lifespan startup raises.
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
