import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Iterable, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

REQUIRED_SECTIONS = (
    'exchange', 'market_data', 'universe', 'scoring', 'risk', 'lifecycle', 'store',
)

# ${NAME} or ${NAME:-fallback}
_PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


class SectionProxy(Mapping):
    """Read-only view of one config section; ``.get`` treats null values as missing."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return SectionProxy(value) if isinstance(value, dict) else value

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key)
        if value is None:
            return default
        return SectionProxy(value) if isinstance(value, dict) else value

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)


class Config:
    def __init__(self, config_path: Optional[str] = None,
                 required: Iterable[str] = REQUIRED_SECTIONS):
        path = config_path or os.getenv('ENGINE_CONFIG_PATH') or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self.required = tuple(required)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"{self.config_path} must contain a mapping of sections")
        missing = [name for name in self.required if not isinstance(raw.get(name), dict)]
        if missing:
            raise RuntimeError(f"{self.config_path} is missing sections: {', '.join(missing)}")
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if not isinstance(node, str) or '${' not in node:
            return node

        whole = _PLACEHOLDER.fullmatch(node)
        if whole:
            # unset variables without a fallback read as absent
            value = os.getenv(whole.group(1)) or whole.group(2)
            return value or None
        return _PLACEHOLDER.sub(lambda m: os.getenv(m.group(1)) or m.group(2) or '', node)

    def section(self, key: str) -> SectionProxy:
        value = self._data.get(key)
        return SectionProxy(value if isinstance(value, dict) else {})

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        return SectionProxy(value) if isinstance(value, dict) else value

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        return SectionProxy(value) if isinstance(value, dict) else value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        return SectionProxy(value) if isinstance(value, dict) else value

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
