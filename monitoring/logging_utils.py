import logging
from typing import Optional, Union

_NOISY_LOGGERS = ('websockets', 'aiohttp.access', 'asyncio')


def setup_logging(level: Union[int, str, None] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    The level defaults to ``logging.level`` from the configuration file.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        from config import config
        level = config.section('logging').get('level', 'INFO')
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
