"""Loading the tracer configuration file."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Final

import yaml
from attrs import frozen

from . import ConfigError

DEFAULT_CONFIG_PATH: Final = Path("tracer.yaml")


@frozen
class TracerConfig:
    endpoint: str
    tls: bool = False


def load_tracer_config(path: Path = DEFAULT_CONFIG_PATH) -> TracerConfig:
    """Read the `Endpoint` and `TLS` settings from a YAML file.

    Keys are matched case-insensitively.
    """
    try:
        raw = yaml.safe_load(path.read_text())
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in config file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return parse_tracer_config({str(k).lower(): v for k, v in raw.items()})


# Spellings accepted for booleans written as strings.
_TRUE: Final = frozenset({"1", "t", "T", "true", "TRUE", "True"})
_FALSE: Final = frozenset({"0", "f", "F", "false", "FALSE", "False", ""})


def parse_tracer_config(settings: dict[str, Any]) -> TracerConfig:
    """Build a `TracerConfig`, converting scalar values loosely.

    Numbers are accepted as the endpoint, and numbers or strings such as
    `"true"` as the TLS flag.
    """
    endpoint = settings.get("endpoint")
    if isinstance(endpoint, (int, float)) and not isinstance(endpoint, bool):
        endpoint = str(endpoint)
    if not isinstance(endpoint, str) or not endpoint:
        raise ConfigError("Endpoint must be a non-empty string")
    return TracerConfig(endpoint, _parse_bool(settings.get("tls")))


def _parse_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str) and value in _TRUE:
        return True
    if isinstance(value, str) and value in _FALSE:
        return False
    raise ConfigError(f"TLS must be a boolean, got {value!r}")
