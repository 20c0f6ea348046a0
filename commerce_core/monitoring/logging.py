"""
Structured logging for the API and the workers.

structlog renders every event as one JSON line (or a console line in
development). Secrets, gift card codes and instrument references are masked
before rendering. The request id, action and actor travel in contextvars so
every event logged while serving one call carries them.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from ..config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "gift_card_code",
        "instrument_reference",
        "secret",
        "signature",
    }
)
VISIBLE_SUFFIX = 4

# Library loggers kept at WARNING unless database echo is on
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncpg", "alembic.runtime.migration")


def mask(value: Any) -> str:
    """Keep only the last few characters of a sensitive value."""
    text = str(value)
    if len(text) <= VISIBLE_SUFFIX:
        return "*" * len(text)
    return "*" * (len(text) - VISIBLE_SUFFIX) + text[-VISIBLE_SUFFIX:]


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: mask(v) if str(k).lower() in SENSITIVE_KEYS and v is not None else _redact(v)
            for k, v in value.items()
        }
    return value


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask sensitive fields, including those nested in details or headers."""
    return _redact(event_dict)


def app_context_processor(settings: Settings) -> Callable[..., Dict[str, Any]]:
    """
    Build a processor that stamps the service name and environment.

    Args:
        settings: Settings providing app name and environment

    Returns:
        Callable: structlog processor
    """

    def add_app_context(
        logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        return event_dict

    return add_app_context


@contextmanager
def action_context(action: str, actor: Optional[str] = None, **fields: Any) -> Iterator[None]:
    """
    Bind the service action (and who asked for it) to every event logged inside.

    Nested actions restore the outer binding on exit.
    """
    bound: Dict[str, Any] = {"action": action}
    if actor is not None:
        bound["actor"] = actor
    bound.update({k: v for k, v in fields.items() if v is not None})
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def build_processors(settings: Settings) -> List[Any]:
    renderer: Any
    if settings.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        app_context_processor(settings),
        redact_sensitive,
        renderer,
    ]


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and route library records through a JSON handler.

    Called once by the API on startup and by each worker entry point.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
            )
        )
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        log_format=settings.log_format,
        app_env=settings.app_env,
    )
