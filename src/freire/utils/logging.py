"""Logging configuration for services embedding the agent core.

Provider and search API keys travel in request headers and settings dumps;
every handler installed here masks them before a record is written.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from dataclasses import fields
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from ..services.settings import Settings

__all__ = [
    "SecretMaskingFilter",
    "setup_logging",
    "setup_logging_from_settings",
    "get_log_path",
    "LOG_DIR_ENV",
]

LOG_DIR_ENV = "FREIRE_LOG_DIR"
_DEFAULT_LOG_DIR = Path.home() / ".freire" / "logs"
_LOG_FILE_NAME = "freire.log"
# Transport libraries log every request at INFO/DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MIN_SECRET_LENGTH = 6
_MASK = "***"

_LOG_PATH: Path | None = None


class SecretMaskingFilter(logging.Filter):
    """Replaces known secrets in the rendered message with ``***``.

    Values shorter than six characters are ignored so ordinary words are
    never masked.
    """

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        candidates = {value.strip() for value in secrets if value}
        # Longest first so a key containing another key is masked whole.
        self._secrets = tuple(
            sorted((value for value in candidates if len(value) >= _MIN_SECRET_LENGTH), key=len, reverse=True)
        )

    @property
    def secrets(self) -> tuple[str, ...]:
        return self._secrets

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in self._secrets:
            masked = masked.replace(secret, _MASK)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    secrets: Iterable[str] = (),
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler, plus a console handler when asked.

    Repeated calls return the existing log path unless ``force`` is set. The
    directory comes from ``log_dir``, then ``FREIRE_LOG_DIR``, then
    ``~/.freire/logs``.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    numeric_level = _coerce_level(level)
    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / _LOG_FILE_NAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    masking = SecretMaskingFilter(secrets)
    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(masking)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, numeric_level))

    _LOG_PATH = log_path
    return log_path


def setup_logging_from_settings(settings: Settings, *, console: bool = True) -> Path:
    """Configure logging from ``Settings``; ``debug_logging`` selects DEBUG.

    Every configured API key is masked in the output, and the effective
    settings are logged once in redacted form.
    """

    level = logging.DEBUG if settings.debug_logging else logging.INFO
    path = setup_logging(
        level,
        log_dir=settings.log_dir,
        console=console,
        secrets=_api_keys(settings),
        force=True,
    )
    logging.getLogger(__name__).debug("Settings: %s", settings.redacted())
    return path


def get_log_path() -> Path | None:
    return _LOG_PATH


def _coerce_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return numeric


def _api_keys(settings: Settings) -> list[str]:
    return [
        getattr(settings, item.name)
        for item in fields(settings)
        if item.name.endswith("_api_key") and getattr(settings, item.name)
    ]
