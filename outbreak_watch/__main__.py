import logging
import sys

from dotenv import load_dotenv

from .config import Settings
from .core import build_watcher
from .exceptions import ConfigurationError

logger = logging.getLogger("outbreak_watch")


def main() -> int:
    """Run one watch cycle. Meant to be started by cron or any other scheduler."""
    load_dotenv()
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR, format="%(asctime)s | %(levelname)s | %(message)s")
        logger.error("Configuration error: %s", e)
        return 2

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    with build_watcher(settings) as watcher:
        watcher.catalog.create_all()
        summary = watcher.run_once()
    if not summary.ran:
        logger.info("Skipped: another run holds the lock")
    return 0


if __name__ == "__main__":
    sys.exit(main())
