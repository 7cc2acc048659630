# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Configuration loading and validation for the code graph engine."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".codegraph_engine.yml"


class ConfigurationError(Exception):
    """Raised when configuration validation fails critically."""

    pass


class Config:
    """Configuration for the code graph engine.

    Loads configuration from .codegraph_engine.yml with validation and defaults.
    Unknown keys and invalid values are logged and replaced by defaults; a
    malformed file falls back to defaults entirely.
    """

    DEFAULTS: Dict[str, Any] = {
        # Analysis
        "max_workers": 4,  # Worker threads for analysis passes
        "max_file_size_bytes": 10_000_000,  # Larger files are treated as corrupted
        "max_file_lines": 10000,
        "max_recursion_depth": 100,  # AST traversal depth limit
        "source_roots": ["src"],  # Leading directories stripped from module names
        "language_extensions": {},  # Extra extension -> language mappings
        "ignore_patterns": [],
        "trust_mtime": False,  # Skip hashing when mtime hints match records
        # Queries
        "default_traversal_depth": 3,
        "max_path_depth": 10,
        "max_paths": 100,
        # Cache
        "cache_enabled": True,
        "cache_dir": "",  # Empty: ~/.codegraph_engine/cache
        # Logging
        "log_to_file": False,  # Install the JSON file handler when the engine starts
        "log_dir": "",  # Empty: ~/.codegraph_engine/logs
    }

    _POSITIVE_INTS = (
        "max_workers",
        "max_file_size_bytes",
        "max_file_lines",
        "max_recursion_depth",
        "max_path_depth",
        "max_paths",
    )

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_path: Path to configuration file. If None, uses
                .codegraph_engine.yml in the current directory.
        """
        if config_path is None:
            config_path = Path.cwd() / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self._load_config()

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "Config":
        """Build a configuration from a dictionary (validated like a file)."""
        config = cls.__new__(cls)
        config.config_path = None
        config._config = cls._defaults()
        config._validate_and_merge(values)
        return config

    @classmethod
    def _defaults(cls) -> Dict[str, Any]:
        return {
            key: (value.copy() if isinstance(value, (list, dict)) else value)
            for key, value in cls.DEFAULTS.items()
        }

    def _load_config(self) -> None:
        """Load and validate configuration from file."""
        if not self.config_path.exists():
            logger.info(f"Configuration file not found at {self.config_path}, using defaults")
            self._config = self._defaults()
            return

        try:
            with open(self.config_path, encoding="utf-8") as f:
                loaded_config = yaml.safe_load(f)

            if loaded_config is None:
                logger.warning("Configuration file is empty, using defaults")
                self._config = self._defaults()
                return

            if not isinstance(loaded_config, dict):
                logger.warning(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(loaded_config)}, using defaults"
                )
                self._config = self._defaults()
                return

            self._config = self._defaults()
            self._validate_and_merge(loaded_config)

        except yaml.YAMLError as e:
            logger.warning(
                f"Error parsing configuration file {self.config_path}: {e}, using defaults"
            )
            self._config = self._defaults()
        except OSError as e:
            logger.warning(
                f"Error reading configuration file {self.config_path}: {e}, using defaults"
            )
            self._config = self._defaults()

    def _validate_and_merge(self, loaded_config: Dict[str, Any]) -> None:
        """Validate loaded configuration and merge with defaults.

        Invalid parameters are logged as warnings and defaults are used.
        """
        for key, value in loaded_config.items():
            if key not in self.DEFAULTS:
                logger.warning(f"Unknown configuration parameter '{key}', ignoring")
                continue

            try:
                self._validate_parameter(key, value)
            except ConfigurationError as e:
                logger.warning(f"{e}, using default {self.DEFAULTS[key]}")
                continue

            self._config[key] = value

    def _validate_parameter(self, key: str, value: Any) -> None:
        """Validate a configuration parameter.

        Raises:
            ConfigurationError: If the value has the wrong type or range.
        """
        if not self._is_valid(key, value):
            raise ConfigurationError(f"Invalid value for '{key}': {value}")

    def _is_valid(self, key: str, value: Any) -> bool:
        expected_type = type(self.DEFAULTS[key])
        if not isinstance(value, expected_type):
            return False
        # bool is an int subclass; reject it for numeric parameters
        if expected_type is int and isinstance(value, bool):
            return False

        if key in self._POSITIVE_INTS:
            return value > 0
        elif key == "default_traversal_depth":
            return value >= 0
        elif key in ("ignore_patterns", "source_roots"):
            return all(isinstance(item, str) for item in value)
        elif key == "language_extensions":
            return all(
                isinstance(ext, str) and isinstance(lang, str) and ext.startswith(".")
                for ext, lang in value.items()
            )

        return True

    def get(self, key: str, default: Any = None) -> Any:
        """Raw configuration value (``default`` for unknown keys)."""
        return self._config.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._config)

    # Property accessors for all configuration values
    @property
    def max_workers(self) -> int:
        """Worker threads used for analysis passes."""
        value = self._config["max_workers"]
        assert isinstance(value, int)
        return value

    @property
    def max_file_size_bytes(self) -> int:
        value = self._config["max_file_size_bytes"]
        assert isinstance(value, int)
        return value

    @property
    def max_file_lines(self) -> int:
        value = self._config["max_file_lines"]
        assert isinstance(value, int)
        return value

    @property
    def max_recursion_depth(self) -> int:
        """Maximum AST traversal depth before a subtree is skipped."""
        value = self._config["max_recursion_depth"]
        assert isinstance(value, int)
        return value

    @property
    def source_roots(self) -> List[str]:
        """Leading directories that are not part of Python module names."""
        value = self._config["source_roots"]
        assert isinstance(value, list)
        return value

    @property
    def language_extensions(self) -> Dict[str, str]:
        """Extra file extension -> language mappings.

        Example: {".mjs": "javascript"}
        """
        value = self._config["language_extensions"]
        assert isinstance(value, dict)
        return value

    @property
    def ignore_patterns(self) -> List[str]:
        """Additional file patterns to ignore beyond .gitignore."""
        value = self._config["ignore_patterns"]
        assert isinstance(value, list)
        return value

    @property
    def trust_mtime(self) -> bool:
        """Whether matching modification times skip the fingerprint comparison."""
        value = self._config["trust_mtime"]
        assert isinstance(value, bool)
        return value

    @property
    def default_traversal_depth(self) -> int:
        value = self._config["default_traversal_depth"]
        assert isinstance(value, int)
        return value

    @property
    def max_path_depth(self) -> int:
        """Maximum path length (in edges) for path searches."""
        value = self._config["max_path_depth"]
        assert isinstance(value, int)
        return value

    @property
    def max_paths(self) -> int:
        value = self._config["max_paths"]
        assert isinstance(value, int)
        return value

    @property
    def cache_enabled(self) -> bool:
        value = self._config["cache_enabled"]
        assert isinstance(value, bool)
        return value

    @property
    def cache_dir(self) -> Optional[Path]:
        """Cache directory, or None for the default location."""
        value = self._config["cache_dir"]
        assert isinstance(value, str)
        return Path(value).expanduser() if value else None

    @property
    def log_to_file(self) -> bool:
        value = self._config["log_to_file"]
        assert isinstance(value, bool)
        return value

    @property
    def log_dir(self) -> Optional[Path]:
        """Log directory, or None for the default location."""
        value = self._config["log_dir"]
        assert isinstance(value, str)
        return Path(value).expanduser() if value else None
