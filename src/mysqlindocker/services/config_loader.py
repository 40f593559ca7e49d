"""Configuration loader for mysqlindocker."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from mysqlindocker.errors import ConfigurationError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "database",
        "user",
        "password",
        "mysql8",
        "legacy_orm",
        "storage",
        "models",
        "scripts_dir",
        "verbose",
        "log_file",
        "startup_timeout",
        "port_attempts",
        "start_attempts",
        "pool_size",
        "docker_binary",
    }

    NUMERIC_KEYS = {
        "startup_timeout": float,
        "port_attempts": int,
        "start_attempts": int,
        "pool_size": int,
    }
    BOOLEAN_KEYS = {"mysql8", "legacy_orm", "verbose"}

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigurationError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigurationError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigurationError(f"Unknown configuration keys: {unknown_list}")

        return {
            key: self._coerce(key, value) for key, value in parsed.items() if value is not None
        }

    def _coerce(self, key: str, value: Any) -> Any:
        if key in self.BOOLEAN_KEYS:
            if not isinstance(value, bool):
                raise ConfigurationError(f"`{key}` must be true or false, got {value!r}.")
            return value

        if key in self.NUMERIC_KEYS:
            cast = self.NUMERIC_KEYS[key]
            if isinstance(value, bool):
                raise ConfigurationError(f"`{key}` must be a number, got {value!r}.")
            try:
                number = cast(value)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"`{key}` must be a number, got {value!r}.") from exc
            if number <= 0:
                raise ConfigurationError(f"`{key}` must be greater than zero, got {value!r}.")
            return number

        if key == "models":
            # A single path is accepted as shorthand for a one-item list.
            if isinstance(value, str):
                return [value]
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ConfigurationError("`models` must be a path or a list of paths.")
            return value

        return str(value)
