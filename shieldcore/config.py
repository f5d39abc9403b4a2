"""
SHIELDCORE Configuration System

Configuration for the shielded-pool client core: sync batching, Merkle tree
geometry, transaction building, artifact caching and logging.

Every setting is addressed by a dotted path (``sync.batch_size``) and can be
bound to a ``SHIELDCORE_*`` environment variable.

Configuration Sources (in order of precedence):
    1. Environment variables (SHIELDCORE_*)
    2. Runtime overrides (``ConfigManager.set``)
    3. Loaded YAML files, later files winning
       (./shieldcore.yaml, ./config/shieldcore.yaml, ~/.shieldcore/config.yaml)
    4. Default values
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar, Union

import yaml

T = TypeVar("T")

logger = logging.getLogger(__name__)

_TRUE_STRINGS = ("true", "1", "yes", "on")


def _is_address(value: str) -> bool:
    if not isinstance(value, str) or len(value) != 42 or not value.startswith("0x"):
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


class ConfigError(Exception):
    """Unknown setting, unreadable file or malformed document."""


class ValidationError(ConfigError):
    """A value was rejected by its setting's validator."""


@dataclass
class ConfigValue(Generic[T]):
    """
    One setting: a default, an optional environment binding, a validator.

    The environment variable, when present, always wins over a runtime
    override. Its text is coerced to the type of ``default``; integers accept
    any base prefix (``0x10``).
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        raw = os.environ.get(self.env_var) if self.env_var else None
        if raw is None:
            return self.default if self._value is None else self._value
        try:
            value = self._from_text(raw)
        except ValueError:
            kind = type(self.default).__name__
            raise ValidationError(f"Cannot read {self.env_var} as {kind}") from None
        self._check(value, f" from {self.env_var}")
        return value

    def set(self, value: T) -> None:
        self._check(value)
        previous, self._value = self._value, value
        for callback in self._callbacks:
            callback(previous, value)

    def accepts(self, value: Any) -> bool:
        return self.validator is None or bool(self.validator(value))

    def _check(self, value: Any, source: str = "") -> None:
        if not self.accepts(value):
            shown = "<secret>" if self.secret else repr(value)
            raise ValidationError(f"Rejected value {shown}{source} ({self.description or 'no description'})")

    def reset(self) -> None:
        """Drop any runtime override and fall back to the default."""
        self._value = None

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        self._callbacks.append(callback)

    def _from_text(self, raw: str) -> T:
        kind = type(self.default)
        if kind is bool:
            return raw.strip().lower() in _TRUE_STRINGS  # type: ignore[return-value]
        if kind is int:
            return int(raw, 0)  # type: ignore[return-value]
        if kind is float:
            return float(raw)  # type: ignore[return-value]
        if kind is list:
            return [item.strip() for item in raw.split(",") if item.strip()]  # type: ignore[return-value]
        return raw  # type: ignore[return-value]


def _setting(default: Any, env_var: str, description: str,
             validator: Optional[Callable[[Any], bool]] = None, secret: bool = False) -> Any:
    """Dataclass field holding a fresh ``ConfigValue`` per config instance."""
    return field(default_factory=lambda: ConfigValue(default, env_var, description, validator, secret))


def _walk(section: Any, prefix: str = "") -> Iterator[Tuple[str, ConfigValue]]:
    """Yield ``(dotted path, ConfigValue)`` for every leaf setting under ``section``."""
    for f in fields(section):
        value = getattr(section, f.name)
        path = f"{prefix}{f.name}"
        if isinstance(value, ConfigValue):
            yield path, value
        elif is_dataclass(value):
            yield from _walk(value, path + ".")


# =============================================================================
# SECTIONS
# =============================================================================

@dataclass
class SyncConfig:
    """Indexer / sync engine."""
    batch_size: ConfigValue[int] = _setting(
        10000, "SHIELDCORE_SYNC_BATCH_SIZE",
        "Number of blocks fetched and applied per atomic batch",
        lambda x: x > 0,
    )
    start_block: ConfigValue[int] = _setting(
        0, "SHIELDCORE_SYNC_START_BLOCK",
        "Deployment block of the pool contract; first block ever scanned",
        lambda x: x >= 0,
    )
    max_read_attempts: ConfigValue[int] = _setting(
        3, "SHIELDCORE_SYNC_MAX_READ_ATTEMPTS",
        "Attempts per chain read before surfacing ChainReadError",
        lambda x: 1 <= x <= 20,
    )
    retry_base_delay_seconds: ConfigValue[float] = _setting(
        0.5, "SHIELDCORE_SYNC_RETRY_DELAY",
        "Base backoff delay between chain read attempts",
        lambda x: x >= 0,
    )
    verify_roots: ConfigValue[bool] = _setting(
        True, "SHIELDCORE_SYNC_VERIFY_ROOTS",
        "Check every touched tree root against the on-chain root history",
    )


@dataclass
class MerkleConfig:
    depth: ConfigValue[int] = _setting(
        16, "SHIELDCORE_MERKLE_DEPTH",
        "Fixed depth of every commitment tree (capacity 2**depth)",
        lambda x: 1 <= x <= 32,
    )


@dataclass
class BuilderConfig:
    """Transaction builder and coin selection."""
    contract_address: ConfigValue[str] = _setting(
        "0x" + "00" * 20, "SHIELDCORE_CONTRACT_ADDRESS",
        "Address of the shielded pool contract",
        _is_address,
    )
    chain_id: ConfigValue[int] = _setting(
        1, "SHIELDCORE_CHAIN_ID",
        "Chain id bound into every private operation",
        lambda x: 0 < x < 2 ** 64,
    )
    min_gas_price: ConfigValue[int] = _setting(
        0, "SHIELDCORE_MIN_GAS_PRICE",
        "Minimum gas price committed into bound parameters",
        lambda x: 0 <= x < 2 ** 72,
    )
    max_stale_retries: ConfigValue[int] = _setting(
        3, "SHIELDCORE_BUILDER_STALE_RETRIES",
        "Rebuilds attempted after the tree advanced under a proof",
        lambda x: x >= 0,
    )
    selection_search_limit: ConfigValue[int] = _setting(
        50000, "SHIELDCORE_SELECTION_SEARCH_LIMIT",
        "Maximum note combinations examined by coin selection",
        lambda x: x > 0,
    )


@dataclass
class CacheConfig:
    artifact_cache_size: ConfigValue[int] = _setting(
        6, "SHIELDCORE_ARTIFACT_CACHE_SIZE",
        "Circuit artifact sets kept in memory (LRU eviction)",
        lambda x: x > 0,
    )
    artifact_dir: ConfigValue[str] = _setting(
        "artifacts", "SHIELDCORE_ARTIFACT_DIR",
        "Directory holding <inputs>x<outputs>/ circuit artifacts",
    )


@dataclass
class LoggingConfig:
    log_level: ConfigValue[str] = _setting(
        "info", "SHIELDCORE_LOG_LEVEL",
        "Minimum level emitted by shieldcore loggers",
        lambda x: x in ("debug", "info", "warning", "error", "critical"),
    )
    log_format: ConfigValue[str] = _setting(
        "json", "SHIELDCORE_LOG_FORMAT",
        "json for StructuredHandler lines, text for plain records",
        lambda x: x in ("json", "text"),
    )


@dataclass
class ShieldConfig:
    """Root of the configuration tree."""
    sync: SyncConfig = field(default_factory=SyncConfig)
    merkle: MerkleConfig = field(default_factory=MerkleConfig)
    builder: BuilderConfig = field(default_factory=BuilderConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def settings(self) -> Iterator[Tuple[str, ConfigValue]]:
        return _walk(self)

    def to_dict(self) -> Dict[str, Any]:
        """Effective values, nested by section."""
        result: Dict[str, Any] = {}
        for path, setting in self.settings():
            section, _, name = path.rpartition(".")
            result.setdefault(section, {})[name] = setting.get()
        return result

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)


# =============================================================================
# MANAGER
# =============================================================================

class ConfigManager:
    """
    Process-wide owner of the active ``ShieldConfig``.

    Thread-safe singleton: every ``ConfigManager()`` call returns the same
    instance. Files loaded through ``load_from_file`` are remembered so that
    ``reload`` can re-read them; watchers run after every reload.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._initialized = False
                cls._instance = instance
            return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._config = ShieldConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[ShieldConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> ShieldConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def load_from_file(self, path: Union[str, Path]) -> None:
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {path}") from None
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")

        known = dict(self._config.settings())
        for dotted, value in _flatten(data):
            setting = known.get(dotted)
            if setting is None:
                logger.warning("Ignoring unknown setting %s in %s", dotted, path)
                continue
            setting.set(value)
        self._config_paths.append(path)
        logger.debug("Loaded configuration from %s", path)

    def load_defaults(self) -> None:
        """Load whichever of the conventional config files exist."""
        for path in (
            Path("shieldcore.yaml"),
            Path("config/shieldcore.yaml"),
            Path.home() / ".shieldcore" / "config.yaml",
        ):
            if not path.exists():
                continue
            try:
                self.load_from_file(path)
            except ConfigError as e:
                logger.warning("Skipping default config %s: %s", path, e)

    def reload(self) -> None:
        paths, self._config_paths = self._config_paths, []
        for path in paths:
            if path.exists():
                self.load_from_file(path)
        for watcher in self._watchers:
            watcher(self._config)

    def watch(self, callback: Callable[[ShieldConfig], None]) -> None:
        self._watchers.append(callback)

    def reset(self) -> None:
        """Discard loaded files, overrides and watchers; return to defaults."""
        self._config = ShieldConfig()
        self._config_paths = []
        self._watchers = []

    # -------------------------------------------------------------------------
    # Dotted access
    # -------------------------------------------------------------------------

    def _lookup(self, path: str) -> ConfigValue:
        obj: Any = self._config
        for part in path.split("."):
            if not is_dataclass(obj) or part not in {f.name for f in fields(obj)}:
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        if not isinstance(obj, ConfigValue):
            raise ConfigError(f"Config path {path} names a section, not a setting")
        return obj

    def set(self, path: str, value: Any) -> None:
        """Override one setting, e.g. ``set("sync.batch_size", 2000)``."""
        self._lookup(path).set(value)

    def get(self, path: str) -> Any:
        """Effective value of one setting, e.g. ``get("builder.chain_id")``."""
        return self._lookup(path).get()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def validate(self) -> List[str]:
        """Problems with the effective values (environment included); empty if none."""
        errors: List[str] = []
        for path, setting in self._config.settings():
            try:
                value = setting.get()
            except ValidationError as e:
                errors.append(f"{path}: {e}")
                continue
            if not setting.accepts(value):
                errors.append(f"{path}: value {value!r} rejected")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Settings with their types, defaults and bindings, for documentation."""
        properties: Dict[str, Any] = {}
        for path, setting in self._config.settings():
            section, _, name = path.rpartition(".")
            entry = {
                "type": type(setting.default).__name__,
                "default": "<secret>" if setting.secret else str(setting.default),
                "description": setting.description,
            }
            if setting.env_var:
                entry["env_var"] = setting.env_var
            properties.setdefault(section, {})[name] = entry
        return {"properties": properties}


def _flatten(data: Dict[str, Any], prefix: str = "") -> Iterator[Tuple[str, Any]]:
    for key, value in data.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            yield from _flatten(value, path + ".")
        else:
            yield path, value


def get_config() -> ShieldConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
