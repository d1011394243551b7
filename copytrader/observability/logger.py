"""Structured logging with structlog.

Security: the signing key and CLOB API credentials are NEVER logged.
Fields whose name contains a secret-like fragment are masked, and the
configured credential values are scrubbed from every string field
(venue error messages sometimes echo request material).

Event names follow ``component.event``; everything else is passed as
key/value fields so the JSON output stays machine-parseable.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import structlog


_CONFIGURED = False

_SECRET_KEY_FRAGMENTS = ("private_key", "secret", "passphrase", "mnemonic", "api_key", "password")
_CREDENTIAL_ENV_VARS = (
    "POLYMARKET_PRIVATE_KEY",
    "POLYMARKET_API_KEY",
    "POLYMARKET_API_SECRET",
    "POLYMARKET_API_PASSPHRASE",
)
_MASK = "***REDACTED***"

# Libraries that log every request / frame at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "urllib3", "py_clob_client")


_secret_values: tuple[str, ...] = ()


def _load_secret_values() -> tuple[str, ...]:
    values = (os.environ.get(var, "").strip() for var in _CREDENTIAL_ENV_VARS)
    return tuple(v for v in values if len(v) >= 8)


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS)


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Mask credential fields and credential values embedded in strings."""
    for key, value in list(event_dict.items()):
        if _is_secret_key(key):
            event_dict[key] = _MASK
        elif isinstance(value, str):
            for secret in _secret_values:
                if secret in value:
                    value = value.replace(secret, _MASK)
            event_dict[key] = value
    return event_dict


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: str | None = None,
    force: bool = False,
) -> None:
    """Route structlog through stdlib handlers (stderr, optional file).

    The first call wins unless ``force`` is set. The CLI forces once the
    config file is loaded, replacing the env-driven setup that importing
    any module triggers.
    """
    global _CONFIGURED, _secret_values
    if _CONFIGURED and not force:
        return
    _secret_values = _load_secret_values()

    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(log_level)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_processor,
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    for handler in handlers:
        # The file always gets JSON; the console follows the chosen format.
        final: list[structlog.types.Processor] = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        ]
        if fmt == "json" or isinstance(handler, logging.FileHandler):
            final += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        else:
            final.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
        handler.setFormatter(structlog.stdlib.ProcessorFormatter(
            processors=final,
            foreign_pre_chain=shared,
        ))
        handler.setLevel(log_level)
        root.addHandler(handler)

    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger, configuring from env on first use."""
    if not _CONFIGURED:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)


def short_id(value: str, length: int = 12) -> str:
    """Truncate a token id / hash for log output."""
    if not value or len(value) <= length + 3:
        return value
    return f"{value[:length]}..."


def bind_cycle_context(**fields: object) -> None:
    """Attach per-cycle fields (cycle number, wallet) to every log line."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**fields)
