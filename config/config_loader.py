import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = 'config/config.yaml'
CONFIG_PATH_ENV = 'MOMENTUM_CONFIG'

# ${NAME} or ${NAME:-fallback}, spanning the whole scalar
_ENV_PATTERN = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*))?\}$')


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def _coerce_scalar(value: str) -> Any:
    # Numbers and booleans coming from the environment keep their YAML type
    try:
        parsed = yaml.safe_load(value)
    except yaml.YAMLError:
        return value
    if parsed is None or isinstance(parsed, (dict, list)):
        return value
    return parsed


def expand_env(node: Any) -> Any:
    """Recursively substitute environment references in a parsed YAML tree."""
    if isinstance(node, dict):
        return {key: expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_env(item) for item in node]
    if not isinstance(node, str):
        return node
    match = _ENV_PATTERN.match(node.strip())
    if match is None:
        return node
    name, fallback = match.groups()
    value = os.getenv(name)
    if value in (None, ''):
        if fallback is None:
            return node
        value = fallback
    return _coerce_scalar(value)


class SectionProxy(Mapping):
    """Read-only view of one config section with attribute access."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(value)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """Root of the YAML configuration, environment references already expanded.

    ``get`` returns raw values so typed settings can be built from plain dicts;
    item and attribute access wrap nested sections.
    """

    def __init__(self, config_path: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        self.config_path = Path(config_path or os.getenv(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))
        super().__init__(expand_env(data) if data is not None else self._read_file())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        return cls(data=data)

    def _read_file(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r', encoding='utf-8') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        return expand_env(raw)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def reload(self) -> None:
        self._data = self._read_file()


def load_config(config_path: Optional[str] = None) -> Config:
    return Config(config_path)
