"""
Settings-file loading for component overrides (``config/settings.json``).

The file is a JSON object whose top-level keys are component sections
(``site``, ``timeouts``, ``behavior``, ...). String values may reference
environment variables as ``${NAME}``.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .error_handling import ConfigurationError

KNOWN_SECTIONS = (
    "site",
    "timeouts",
    "behavior",
    "classifier",
    "cookies",
    "fetch",
    "acquisition",
    "driver",
)

ENV_REFERENCE = re.compile(r"\$\{([A-Z0-9_]+)\}")


class ConfigLoader:
    """Reads, caches and checks component settings files."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._warned_env: set[str] = set()

    def load_config(self, config_path: str) -> Dict[str, Any]:
        """Load a settings file, substituting ``${ENV}`` references.

        Raises:
            ConfigurationError: file missing, unreadable, not JSON or not an object
        """
        key = str(config_path)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        path = Path(config_path)
        if not path.is_file():
            raise self._fail(f"Settings file not found: {path}", path)

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise self._fail(f"Settings file {path} is not valid JSON: {e}", path) from e
        except OSError as e:
            raise self._fail(f"Cannot read settings file {path}: {e}", path) from e

        if not isinstance(raw, dict):
            raise self._fail(f"Settings file {path} must contain a JSON object", path)

        config = self._expand_env(raw)
        for problem in self.validate_config_structure(config):
            self.logger.warning(f"{path}: {problem}")

        self._cache[key] = config
        self.logger.debug(f"Loaded settings from {path} (sections: {sorted(config)})")
        return config

    def load_optional_config(self, config_path: Optional[str]) -> Dict[str, Any]:
        """Like load_config, but a missing file yields an empty configuration."""
        if not config_path or not Path(config_path).is_file():
            return {}
        return self.load_config(config_path)

    def get_nested_value(self, config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
        """Dot-path lookup, e.g. ``timeouts.navigation_ms``."""
        node: Any = config
        for part in key_path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def validate_required_keys(self, config: Dict[str, Any], required_keys: Iterable[str]) -> None:
        missing = [k for k in required_keys if self.get_nested_value(config, k) is None]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration keys: {missing}", {"missing": missing}
            )

    def validate_config_structure(self, config: Dict[str, Any]) -> List[str]:
        """Problems worth a warning; none of them stop loading."""
        problems: List[str] = []
        for section, value in config.items():
            if section not in KNOWN_SECTIONS:
                problems.append(f"Unknown configuration section '{section}'")
            elif not isinstance(value, dict):
                problems.append(f"Section '{section}' must be an object in configuration")
        timeouts = config.get("timeouts")
        if isinstance(timeouts, dict):
            for name, value in timeouts.items():
                if not isinstance(value, (int, float)) or value <= 0:
                    problems.append(f"Timeout '{name}' must be a positive number")
        return problems

    def clear_cache(self, config_path: Optional[str] = None) -> None:
        if config_path is None:
            self._cache.clear()
            self._warned_env.clear()
        else:
            self._cache.pop(str(config_path), None)

    def _fail(self, message: str, path: Path) -> ConfigurationError:
        self.logger.error(message)
        return ConfigurationError(message, {"path": str(path)})

    def _expand_env(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {key: self._expand_env(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self._expand_env(item) for item in value]
        if isinstance(value, str):
            return ENV_REFERENCE.sub(self._env_value, value)
        return value

    def _env_value(self, match: re.Match) -> str:
        name = match.group(1)
        value = os.environ.get(name)
        if value is None:
            if name not in self._warned_env:
                self._warned_env.add(name)
                self.logger.warning(f"Environment variable {name} is not set; using empty string")
            return ""
        return value


config_loader = ConfigLoader()
