import os
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'


class ConfigurationError(ValueError):
    """Raised when a configuration value is missing or out of range."""


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def resolve_env_vars(node: Any) -> Any:
    """Replace ``${NAME}`` strings with the environment value (None when unset)."""
    if isinstance(node, dict):
        return {key: resolve_env_vars(value) for key, value in node.items()}
    if isinstance(node, list):
        return [resolve_env_vars(item) for item in node]
    if isinstance(node, str) and node.startswith('${') and node.endswith('}'):
        return os.getenv(node[2:-1]) or None
    return node


class SectionProxy(Mapping):
    """Read-only view of a config mapping with attribute access to keys."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_') or name not in self._data:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """YAML configuration for the whole process.

    The file is ``config/config.yaml`` unless ``CASCADE_CONFIG`` points
    elsewhere; a ``.env`` file is loaded before placeholders are resolved.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv('CASCADE_CONFIG') or DEFAULT_CONFIG_PATH)
        super().__init__(self._load_config())

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        return resolve_env_vars(raw)

    def section(self, name: str) -> Dict[str, Any]:
        """Plain dict copy of a top-level section, empty when absent."""
        value = self._data.get(name)
        return dict(value) if isinstance(value, dict) else {}

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
