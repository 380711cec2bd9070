"""
Stack configuration.

Configuration is an explicit value passed into graph construction; nothing is
read from the process environment. The on-disk format follows the usual
per-stack settings file::

    project: web
    stack: dev
    config:
      aws:region: us-west-2
      instanceType: m6g.micro
      publicKey:
        secure: ssh-rsa AAAA...
"""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional

import yaml

from stackgraph.models.errors import ConfigError
from stackgraph.models.output import Output

_TRUE = {"true", "yes", "1", "on"}
_FALSE = {"false", "no", "0", "off"}


@dataclass(frozen=True)
class StackConfig:
    project: str = "stackgraph"
    stack: str = "dev"
    values: Mapping[str, Any] = field(default_factory=dict)
    secret_keys: FrozenSet[str] = frozenset()

    @property
    def region(self) -> Optional[str]:
        return self.get("aws:region") or self.get("region")

    def get(self, key: str, default: Any = None) -> Any:
        value = self.values.get(key)
        return default if value is None or value == "" else value

    def require(self, key: str) -> Any:
        value = self.get(key)
        if value is None:
            raise ConfigError(
                f"Missing required configuration value '{key}' for stack '{self.stack}'", key
            )
        return value

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Configuration value '{key}' is not an integer: {value!r}", key)

    def get_bool(self, key: str, default: Optional[bool] = None) -> Optional[bool]:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigError(f"Configuration value '{key}' is not a boolean: {value!r}", key)

    def get_secret(self, key: str, default: Any = None) -> Optional[Output]:
        value = self.get(key, default)
        return None if value is None else Output.secret(value)

    def require_secret(self, key: str) -> Output:
        return Output.secret(self.require(key))

    def is_secret(self, key: str) -> bool:
        return key in self.secret_keys

    def with_values(self, **overrides: Any) -> "StackConfig":
        merged = dict(self.values)
        merged.update(overrides)
        return StackConfig(self.project, self.stack, merged, self.secret_keys)


def from_dict(data: Mapping[str, Any]) -> StackConfig:
    if not isinstance(data, dict):
        raise ConfigError("Configuration document must be a mapping")
    raw = data.get("config", {}) or {}
    if not isinstance(raw, dict):
        raise ConfigError("'config' must be a mapping of key to value")

    values: Dict[str, Any] = {}
    secrets = set()
    for key, value in raw.items():
        # secure values arrive as {"secure": "..."}
        if isinstance(value, dict) and set(value) == {"secure"}:
            values[str(key)] = value["secure"]
            secrets.add(str(key))
        else:
            values[str(key)] = value

    return StackConfig(
        project=str(data.get("project", "stackgraph")),
        stack=str(data.get("stack", "dev")),
        values=values,
        secret_keys=frozenset(secrets),
    )


def load_config(filepath: str) -> StackConfig:
    try:
        with open(filepath, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read configuration {filepath}: {exc}")
    return from_dict(data)
