"""Configuration loader with multi-source support."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

import platformdirs
import toml
from pydantic import BaseModel, ValidationError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)

# Defaults shipped inside the package (ibackup2fs/config/defaults.toml)
PACKAGED_DEFAULTS = Path(__file__).resolve().parent.parent / "config" / "defaults.toml"


class ConfigLoader:
    """Loads configuration from multiple sources with priority.

    Priority (lowest to highest): packaged defaults, system config, user
    config, explicit config file, environment variables, overrides.
    """

    def __init__(self, app_name: str = "ibackup2fs", config_class: Optional[Type[T]] = None) -> None:
        self.app_name = app_name
        self.config_class = config_class
        self._config: Optional[T] = None

    def load(
        self,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
        defaults_path: Optional[Path] = None,
    ) -> T:
        """Load configuration from all sources.

        Args:
            config_path: Optional explicit config file (e.g. from --config)
            overrides: Optional nested dict applied last (e.g. CLI flags)
            defaults_path: Optional replacement for the packaged defaults.toml

        Returns:
            Validated configuration object

        Raises:
            ConfigurationError: If a config file cannot be parsed or validation fails
        """
        config_dict = self._load_defaults(defaults_path)

        system_config = self._load_system_config()
        if system_config:
            config_dict = self._deep_merge(config_dict, system_config)

        user_config = self._load_user_config()
        if user_config:
            config_dict = self._deep_merge(config_dict, user_config)

        if config_path is not None:
            config_path = Path(config_path)
            if not config_path.exists():
                raise ConfigurationError("Config file not found", path=str(config_path))
            config_dict = self._deep_merge(config_dict, self._read_toml(config_path))

        config_dict = self._apply_env_overrides(config_dict)

        if overrides:
            config_dict = self._deep_merge(config_dict, overrides)

        if self.config_class:
            try:
                self._config = self.config_class(**config_dict)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid configuration: {e}") from e
        else:
            self._config = config_dict

        return self._config

    def _read_toml(self, path: Path) -> Dict[str, Any]:
        try:
            return toml.load(path)
        except (toml.TomlDecodeError, OSError) as e:
            raise ConfigurationError(f"Cannot read config file: {e}", path=str(path)) from e

    def _load_defaults(self, defaults_path: Optional[Path] = None) -> Dict[str, Any]:
        """Load default configuration shipped with app."""
        if defaults_path and Path(defaults_path).exists():
            return self._read_toml(Path(defaults_path))

        if PACKAGED_DEFAULTS.exists():
            return self._read_toml(PACKAGED_DEFAULTS)

        return {}

    def _load_system_config(self) -> Optional[Dict[str, Any]]:
        """Load system-wide configuration."""
        if os.name == "nt":
            system_path = (
                Path(os.environ.get("PROGRAMDATA", "C:\\ProgramData"))
                / self.app_name
                / "config.toml"
            )
        else:
            system_path = Path(f"/etc/{self.app_name}/config.toml")

        if system_path.exists():
            return self._read_toml(system_path)

        return None

    def _load_user_config(self) -> Optional[Dict[str, Any]]:
        """Load user-specific configuration."""
        user_config_path = self.user_config_path()

        logger.debug(f"Looking for user config: path={user_config_path}, exists={user_config_path.exists()}")

        if user_config_path.exists():
            logger.debug(f"Loading user config from {user_config_path}")
            return self._read_toml(user_config_path)

        return None

    def user_config_path(self) -> Path:
        """Location of the per-user config.toml."""
        return Path(platformdirs.user_config_dir(appname=self.app_name, appauthor=False)) / "config.toml"

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Override config with environment variables.

        IBACKUP2FS_EXTRACTION_CHUNK_SIZE=131072 sets extraction.chunk_size. Key
        parts are matched against existing keys first so that snake_case keys
        survive the underscore split.
        """
        prefix = f"{self.app_name.upper().replace('-', '_')}_"

        for env_key, env_value in os.environ.items():
            if not env_key.startswith(prefix):
                continue

            parts = env_key[len(prefix):].lower().split("_")
            key_path = self._resolve_key_path(config, parts)

            current = config
            for part in key_path[:-1]:
                if not isinstance(current.get(part), dict):
                    current[part] = {}
                current = current[part]

            current[key_path[-1]] = self._convert_env_value(env_value)
            logger.debug(f"Config override from environment: {env_key} -> {'.'.join(key_path)}")

        return config

    def _resolve_key_path(self, config: Dict[str, Any], parts: List[str]) -> List[str]:
        """Group underscore-separated parts into the keys present in config."""
        key_path: List[str] = []
        current: Any = config
        index = 0
        while index < len(parts):
            match = None
            if isinstance(current, dict):
                # Longest run of parts naming an existing key wins
                for end in range(len(parts), index, -1):
                    candidate = "_".join(parts[index:end])
                    if candidate in current:
                        match = (candidate, end)
                        break
            if match is None:
                key_path.append("_".join(parts[index:]))
                break
            key_path.append(match[0])
            current = current[match[0]]
            index = match[1]
        return key_path

    def _convert_env_value(self, value: str) -> Any:
        """Convert string environment variable to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        # List (comma-separated)
        if "," in value:
            return [v.strip() for v in value.split(",")]

        return value

    def save_user_config(self, config: BaseModel) -> Path:
        """Save user configuration and return the path written."""
        user_config_path = self.user_config_path()
        user_config_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = config.model_dump(exclude_none=True)
        with open(user_config_path, "w", encoding="utf-8") as f:
            toml.dump(config_dict, f)
        return user_config_path

    @property
    def config(self) -> T:
        """Get loaded configuration."""
        if self._config is None:
            self._config = self.load()
        return self._config
