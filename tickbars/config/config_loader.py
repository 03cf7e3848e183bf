"""
Purpose:
    - Loads a config file (JSON or TOML)
    - Validate it against a pydantic model

Config files written by the provider tooling use PascalCase keys ("BaseUrls", "TimeZoneId");
keys are normalized to snake_case before validation. Keys of mapping-valued fields (e.g. the
instrument -> digits table) are data and left untouched.
"""

from __future__ import annotations

import logging
import re
import tomllib
from pathlib import Path
from typing import Any, TypeVar

import orjson
from pydantic import BaseModel, ValidationError

from tickbars.core.utility import validation_error_parser
from tickbars.errors.errors import ConfigurationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def snake_key(key: str) -> str:
    """'BaseUrls' -> 'base_urls', 'retry-count' -> 'retry_count'."""
    return _CAMEL_BOUNDARY.sub("_", key.strip()).replace("-", "_").lower()


def _normalize(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {snake_key(str(k)): _normalize_value(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_normalize(v) for v in obj]
    return obj


def _normalize_value(v: Any) -> Any:
    # Lists may hold nested records (session rules); plain dict values are data tables.
    if isinstance(v, list):
        return [_normalize(item) for item in v]
    return v


def read_config_file(path: Path) -> dict[str, Any]:
    """Raw mapping from a .json or .toml file. Raises ConfigurationError on parse errors."""
    raw = path.read_bytes()
    try:
        if path.suffix.lower() == ".toml":
            data: Any = tomllib.loads(raw.decode("utf-8"))
        else:
            data = orjson.loads(raw) if raw.strip() else {}
    except (orjson.JSONDecodeError, tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigurationError(
            f"Config file is not parseable: {path}", field=str(path), details={"error": str(exc)}
        ) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be an object: {path}", field=str(path))
    return data


def load_model(path: Path | str | None, model: type[M]) -> M:
    """
    Load `path` into `model`.

    - Missing path (or None) -> model defaults
    - Unparseable or invalid content -> ConfigurationError carrying the pydantic error list
    """
    if path is None:
        return model()
    p = Path(path)
    if not p.exists():
        logger.info("Config file %s not found; using %s defaults", p, model.__name__)
        return model()

    data = _normalize(read_config_file(p))
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        errors = validation_error_parser(exc)
        raise ConfigurationError(
            f"Invalid {model.__name__} in {p}",
            field=str(p),
            details={"errors": errors},
        ) from exc
