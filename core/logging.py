import logging
import sys

from core.config import settings


def setup_logging() -> None:
    logging.basicConfig(
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    )
    # The stripe SDK logs every request at INFO
    logging.getLogger("stripe").setLevel(logging.WARNING)
