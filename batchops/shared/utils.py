import json
import logging
import os
from datetime import date, datetime, timezone
from typing import Any, Iterator, List, Optional, Sequence


def _configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.getLogger().setLevel(level)
    logging.getLogger(__name__).setLevel(level)


_configure_logging()
logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Missing or invalid setting; raised before any AWS call is made."""


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def log(event: str, **fields: Any) -> None:
    payload = {"event": event, **fields}
    logger.info(json_dumps(payload))


def chunked(seq: Sequence[Any], n: int) -> Iterator[List[Any]]:
    for i in range(0, len(seq), n):
        yield list(seq[i : i + n])


def env(name: str, default: Optional[str] = None) -> str:
    v = os.getenv(name, default)
    if v is None or v == "":
        raise ConfigError(f"Missing env var: {name}")
    return v


def setting(payload: Any, key: str, name: str, default: Optional[str] = None) -> str:
    """
    Event/CLI value for `key` if present, else env var `name`.

    With no `default` the setting is required and an empty value is a ConfigError;
    with a default, an explicitly empty env var is returned as-is.
    """
    v = payload.get(key) if isinstance(payload, dict) else None
    if v is not None and v != "":
        return str(v)
    if default is None:
        return env(name)
    return os.getenv(name, default)


def as_bool(s: str) -> bool:
    return s.strip().lower() in ("1", "true", "yes", "on")


def as_int(s: str, name: str, minimum: int = 0) -> int:
    try:
        n = int(s)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {s!r}") from e
    if n < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {n}")
    return n


def as_positive_int(s: str, name: str) -> int:
    return as_int(s, name, minimum=1)


def parse_date(s: str, name: str) -> date:
    # ISO date only, e.g. 2025-12-25
    try:
        return date.fromisoformat(s.strip())
    except ValueError as e:
        raise ConfigError(f"{name} must be an ISO date (YYYY-MM-DD), got {s!r}") from e


def utc_today() -> date:
    return datetime.now(timezone.utc).date()
