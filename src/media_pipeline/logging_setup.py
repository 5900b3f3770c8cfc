"""Process-wide logging configuration for the CLI and API entry points."""

import logging
from typing import Optional

from .models import LoggingConfig

_configured = False


def configure_logging(config: Optional[LoggingConfig] = None, force: bool = False) -> None:
    """Install a root stream handler once.

    Library modules only call ``logging.getLogger(__name__)``; this is the one
    place that decides where records go. Repeated calls are no-ops unless
    ``force`` is set (e.g. after a ``--log-level`` override).
    """
    global _configured
    if _configured and not force:
        return

    config = config or LoggingConfig()
    logging.basicConfig(level=config.level, format=config.format, force=force)

    # Third-party clients are chatty at INFO
    for noisy in ("google", "urllib3", "PIL"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured = True
