import logging
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: Union[int, str] = logging.INFO, log_format: Optional[str] = None) -> None:
    """Configure root logging once; later calls are no-ops.

    ``level`` accepts a logging constant or a name such as ``"DEBUG"`` taken
    from ``monitoring.log_level``.
    """
    if logging.getLogger().handlers:
        return

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=log_format or DEFAULT_FORMAT)

    # websockets logs every frame at debug level
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
