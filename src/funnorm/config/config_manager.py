#!/usr/bin/env python
# coding: utf-8

"""
Normalization configuration manager.

Provides a thread-safe singleton holding the options recognised by the
normalization pipeline (``number.pcs``, ``number.quantiles``,
``dye.intensity``, ``detection.threshold``, ``bead.threshold``,
``sex.cutoff``, ``pseudo``, ``max.bytes``, ``cpglist.remove``) with full
validation and JSON/YAML/TOML/Python-literal file support.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from copy import deepcopy
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from funnorm.errors import ConfigurationError
from funnorm.utils.logger import logger

# Optional dependency imports with better error messages
try:
    import yaml

    YAML_AVAILABLE = True
except ImportError:
    yaml = None
    YAML_AVAILABLE = False
    logger.warning("PyYAML not installed. Install with: pip install pyyaml")

try:
    import toml

    TOML_AVAILABLE = True
except ImportError:
    toml = None
    TOML_AVAILABLE = False
    logger.warning("toml not installed. Install with: pip install toml")


DEFAULT_MAX_BYTES = 2**30 - 1


class NormalizationSettings(BaseModel):
    """
    Validated options of a normalization run.

    Field aliases are the dotted option names used in configuration files;
    the Python names are accepted as well.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    number_pcs: int = Field(2, ge=1, alias="number.pcs")
    number_quantiles: int = Field(500, ge=100, alias="number.quantiles")
    dye_intensity: float = Field(5000.0, ge=100, alias="dye.intensity")
    detection_threshold: float = Field(
        0.01, gt=0.0, le=1.0, alias="detection.threshold"
    )
    bead_threshold: int = Field(3, ge=0, alias="bead.threshold")
    sex_cutoff: float = Field(-2.0, alias="sex.cutoff")
    pseudo: float = Field(100.0, gt=0.0)
    max_bytes: int = Field(DEFAULT_MAX_BYTES, ge=1, alias="max.bytes")
    cpglist_remove: Optional[List[str]] = Field(None, alias="cpglist.remove")
    n_jobs: int = Field(1, alias="n.jobs")

    @field_validator("n_jobs")
    @classmethod
    def validate_n_jobs(cls, v: int) -> int:
        if v == 0:
            raise ValueError("n.jobs cannot be 0 (use -1 for all cores)")
        return v

    @field_validator("number_pcs")
    @classmethod
    def validate_number_pcs(cls, v: int) -> int:
        if v > 20:
            logger.warning(f"Unusually high number.pcs: {v}")
        return v


# Utility Functions


def _atomic_write(path: Union[str, Path], content: Union[str, bytes]) -> None:
    """
    Write content to a file atomically using a temporary file.

    Parameters
    ----------
    path : str or Path
        Destination file path.
    content : str or bytes
        Content to write.

    Raises
    ------
    OSError
        If the write operation fails.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    content_bytes = content.encode("utf-8") if isinstance(content, str) else content

    tmp_file = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb", dir=str(path.parent), delete=False
        ) as tmp:
            tmp_file = Path(tmp.name)
            tmp.write(content_bytes)
            tmp.flush()
            os.fsync(tmp.fileno())

        os.replace(str(tmp_file), str(path))
        logger.debug(f"Successfully wrote file: {path}")

    except Exception as e:
        logger.error(f"Failed to write file {path}: {e}")
        if tmp_file and tmp_file.exists():
            tmp_file.unlink()
        raise


def _read_python_literal(path: Path) -> Dict[str, Any]:
    """
    Parse a Python literal dictionary from a file.

    Raises
    ------
    ValueError
        If the file doesn't contain a valid dictionary.
    """
    import ast

    try:
        text = path.read_text(encoding="utf-8")
        obj = ast.literal_eval(text)
    except Exception as e:
        raise ValueError(f"Failed to parse Python literal from {path}: {e}")

    if not isinstance(obj, dict):
        raise ValueError(f"File {path} must contain a dictionary at top level")

    return obj


def _deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively update ``base`` (in place) with values from ``updates``."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _canonical_keys(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map Python-style option names onto their dotted aliases."""
    out = {}
    for key, value in raw.items():
        field = NormalizationSettings.model_fields.get(key)
        out[field.alias if field is not None and field.alias else key] = value
    return out


def validate_settings(raw: Dict[str, Any]) -> NormalizationSettings:
    """
    Validate a raw option dictionary.

    Raises
    ------
    ConfigurationError
        If any option is unknown or out of range.
    """
    try:
        return NormalizationSettings(**raw)
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ConfigurationError(str(e)) from e


class ConfigManager:
    """
    Thread-safe singleton for normalization configuration.

    Parameters
    ----------
    config_file : str or Path, optional
        Configuration file to load on initialization. A ``funnorm.json``
        sidecar in the working directory is merged first when present.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = RLock()

    def __new__(cls, config_file: Optional[Union[str, Path]] = None):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
            return cls._instance

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        # Prevent re-initialization
        if hasattr(self, "_initialized") and self._initialized:
            return

        self._cfg_path: Optional[Path] = None
        self._data_lock = RLock()
        self._raw: Dict[str, Any] = {}
        self.settings: NormalizationSettings = NormalizationSettings()

        self._load_sidecar_config()

        if config_file is not None:
            try:
                self.load_file(config_file)
            except Exception as e:
                logger.error(f"Failed to load config file {config_file}: {e}")
                raise

        self._validate_and_set(self._raw)
        self._initialized = True

    def _load_sidecar_config(self) -> None:
        """Merge ``funnorm.json`` from the working directory if it exists."""
        sidecar_path = Path.cwd() / "funnorm.json"
        if sidecar_path.exists():
            self._raw = _canonical_keys(self._load_by_format(sidecar_path, ".json"))
            logger.info(f"Loaded sidecar config from {sidecar_path}")

    @contextmanager
    def _transaction(self):
        """Restore the previous configuration state if the body raises."""
        with self._data_lock:
            backup_raw = deepcopy(self._raw)
            backup_settings = self.settings
            try:
                yield
            except Exception:
                self._raw = backup_raw
                self.settings = backup_settings
                raise

    # Loading and Saving
    def load_file(self, path: Union[str, Path]) -> None:
        """
        Load options from a file and merge them over the current configuration.

        Supported formats: JSON, YAML, TOML, Python literal.

        Raises
        ------
        FileNotFoundError
            If file doesn't exist.
        ValueError
            If file format is unsupported.
        ConfigurationError
            If the merged options fail validation.
        """
        path = Path(path).resolve()

        if not path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {path}\n"
                f"Current directory: {Path.cwd()}"
            )

        if not path.is_file():
            raise ValueError(f"Path is not a file: {path}")

        logger.info(f"Loading configuration from {path}")

        loaded = self._load_by_format(path, path.suffix.lower())
        if not isinstance(loaded, dict):
            raise ValueError(f"Configuration must be a dictionary, got {type(loaded)}")

        with self._transaction():
            merged = deepcopy(self._raw)
            _deep_update(merged, _canonical_keys(loaded))
            self._validate_and_set(merged)
            self._cfg_path = path

        logger.info(f"Successfully loaded configuration from {path}")

    def _load_by_format(self, path: Path, ext: str) -> Dict[str, Any]:
        """Load configuration based on file format."""

        if ext == ".json":
            return json.loads(path.read_text(encoding="utf-8"))

        elif ext in (".yml", ".yaml"):
            if not YAML_AVAILABLE:
                raise RuntimeError("PyYAML required to load YAML files")
            return yaml.safe_load(path.read_text(encoding="utf-8"))

        elif ext == ".toml":
            if not TOML_AVAILABLE:
                raise RuntimeError("toml required to load TOML files")
            return toml.loads(path.read_text(encoding="utf-8"))

        elif ext in (".py", ".txt"):
            return _read_python_literal(path)

        else:
            raise ValueError(f"Unsupported file extension: {ext}")

    def save_file(self, path: Union[str, Path], fmt: Optional[str] = None) -> None:
        """
        Save the current options (dotted names) to a file.

        Parameters
        ----------
        path : str or Path
            Destination file path.
        fmt : str, optional
            Format (json, yaml, toml). Inferred from extension if not provided.
        """
        path = Path(path)
        fmt = (fmt or path.suffix.lstrip(".")).lower()

        with self._data_lock:
            data = self.to_dict()

        if fmt in ("json", ""):
            _atomic_write(path, json.dumps(data, indent=2))

        elif fmt in ("yml", "yaml"):
            if not YAML_AVAILABLE:
                raise RuntimeError("PyYAML required to write YAML")
            _atomic_write(path, yaml.safe_dump(data, sort_keys=False))

        elif fmt == "toml":
            if not TOML_AVAILABLE:
                raise RuntimeError("toml required to write TOML")
            # toml has no null
            _atomic_write(
                path, toml.dumps({k: v for k, v in data.items() if v is not None})
            )

        else:
            raise ValueError(f"Unsupported format: {fmt}")

        logger.info(f"Configuration saved to {path}")
        self._cfg_path = path

    def _validate_and_set(self, raw: Dict[str, Any]) -> None:
        validated = validate_settings(raw)
        with self._data_lock:
            self.settings = validated
            self._raw = raw

    # Query and modification
    def get(self, option: str) -> Any:
        """
        Return one option by dotted or Python name.

        Raises
        ------
        KeyError
            If the option is unknown.
        """
        key = option.replace(".", "_")
        if key not in NormalizationSettings.model_fields:
            available = ", ".join(self.to_dict())
            raise KeyError(f"Option '{option}' not found. Available options: {available}")
        with self._data_lock:
            return getattr(self.settings, key)

    def update(self, **options: Any) -> None:
        """Set options by Python name, validating the result."""
        with self._transaction():
            merged = deepcopy(self._raw)
            _deep_update(merged, _canonical_keys(options))
            self._validate_and_set(merged)
            logger.info(f"Updated configuration: {options}")

    def to_dict(self) -> Dict[str, Any]:
        """Export current options as a dictionary keyed by dotted names."""
        with self._data_lock:
            return self.settings.model_dump(by_alias=True)


# Global Singleton Access
_global_config: Optional[ConfigManager] = None


def get_config() -> ConfigManager:
    """Return the global ConfigManager instance, creating it on first use."""
    global _global_config
    if _global_config is None:
        _global_config = ConfigManager()
    return _global_config


def reset_config() -> None:
    """Reset the global configuration instance (primarily for testing)."""
    global _global_config
    _global_config = None
    with ConfigManager._lock:
        ConfigManager._instance = None
    logger.debug("Global configuration reset")


# Convenience Functions


def load_file(path: Union[str, Path]) -> None:
    """Load configuration from a file. See ConfigManager.load_file()."""
    get_config().load_file(path=path)


def save_file(path: Union[str, Path], fmt: Optional[str] = None) -> None:
    """Save configuration to a file. See ConfigManager.save_file()."""
    get_config().save_file(path=path, fmt=fmt)


def get_settings() -> NormalizationSettings:
    """Return the validated settings of the global configuration."""
    return get_config().settings
