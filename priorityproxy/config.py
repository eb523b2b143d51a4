"""Loading of the proxy's JSON configuration file."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Union

DEFAULT_OPENAI_API_URL = "https://api.openai.com/v1"
DEFAULT_INFLUX_BUCKET = "proxybucket"
DEFAULT_INFLUX_ORG = "openaiorg"


@dataclass
class Endpoint:
    """A listening port together with the priority of its queue."""

    port: int = 0
    priority: int = 0
    preemptive: bool = False


@dataclass
class Config:
    """Application configuration."""

    influxdb_url: str = ""
    influx_token: str = ""
    influx_org: str = ""
    influx_bucket: str = ""
    openai_api_url: str = ""
    openai_api_key: str = ""
    endpoints: List[Endpoint] = field(default_factory=list)


_STRING_FIELDS = tuple(f.name for f in fields(Config) if f.name != "endpoints")


def _typed(data: Dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if kind is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, kind)
    if not valid:
        raise ValueError(
            f"cannot use {type(value).__name__} value for field {key!r}: "
            f"expected {kind.__name__}"
        )
    return value


def _endpoint(raw: Any) -> Endpoint:
    if raw is None:
        return Endpoint()
    if not isinstance(raw, dict):
        raise ValueError("each endpoint must be a JSON object")
    return Endpoint(
        port=_typed(raw, "port", int, 0),
        priority=_typed(raw, "priority", int, 0),
        preemptive=_typed(raw, "preemptive", bool, False),
    )


def _config(data: Any) -> Config:
    if data is None:
        return Config()
    if not isinstance(data, dict):
        raise ValueError("configuration must be a JSON object")
    raw_endpoints = data.get("endpoints")
    if raw_endpoints is None:
        raw_endpoints = []
    if not isinstance(raw_endpoints, list):
        raise ValueError("field 'endpoints' must be a JSON array")
    strings = {name: _typed(data, name, str, "") for name in _STRING_FIELDS}
    endpoints = [_endpoint(item) for item in raw_endpoints]
    return Config(endpoints=endpoints, **strings)


def load_config(file_path: Union[str, Path]) -> Config:
    """Read a configuration file and fill in defaults for unset fields.

    Raises OSError if the file cannot be read and ValueError if it is not
    a valid configuration document.
    """
    data = json.loads(Path(file_path).read_bytes())
    config = _config(data)
    if not config.openai_api_url:
        config.openai_api_url = DEFAULT_OPENAI_API_URL
    if not config.influx_bucket:
        config.influx_bucket = DEFAULT_INFLUX_BUCKET
    if not config.influx_org:
        config.influx_org = DEFAULT_INFLUX_ORG
    return config