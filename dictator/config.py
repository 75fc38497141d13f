"""
Dictator Configuration System

Configuration for the sequencer itself (polling, transport retries,
authority, logging) plus loading of the deployment document that names the
governed resources.

Configuration Sources (in order of precedence):
    1. Environment variables (DICTATOR_*)
    2. Runtime overrides
    3. User config file (~/.dictator/config.yaml)
    4. Project config file (./dictator.yaml)
    5. Default values

Deployment documents are YAML validated against
``dictator/schemas/deployment.schema.json`` (JSON Schema 2020-12).

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import copy
import json
import os
import re
import threading
import time
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union

import yaml
from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from dictator.observability import SequencerLayer, get_logger
from dictator.plans import DEAD_ADDRESS_NAMES, SystemAddresses
from dictator.resilience import BackoffStrategy, ConditionPoller, RetryPolicy, RunDeadline

T = TypeVar("T")

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
DEPLOYMENT_SCHEMA = SCHEMAS_DIR / "deployment.schema.json"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ValidationError(ConfigError):
    """Configuration validation error."""
    pass


def _is_address_or_unset(value: str) -> bool:
    return value == "" or bool(_ADDRESS_RE.match(value))


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        value = self._coerce(value) if isinstance(value, str) else value
        if isinstance(self.default, float) and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)  # type: ignore
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
            elif target_type == list:
                return [v.strip() for v in value.split(",") if v.strip()]  # type: ignore
        except ValueError as e:
            raise ValidationError(f"Cannot read {value!r} as {target_type.__name__}") from e
        return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class PollingConfig:
    """Configuration for the ConditionPoller."""
    interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="DICTATOR_POLL_INTERVAL",
        description="Seconds between evaluations of a polled condition",
        validator=lambda x: x > 0,
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=600.0,
        env_var="DICTATOR_POLL_TIMEOUT",
        description="Seconds before a single wait gives up",
        validator=lambda x: x > 0,
    ))
    backoff: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="fixed",
        env_var="DICTATOR_POLL_BACKOFF",
        description="Interval growth between polls (fixed, exponential)",
        validator=lambda x: x in ("fixed", "exponential"),
    ))
    max_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="DICTATOR_POLL_MAX_INTERVAL",
        description="Upper bound on the poll interval under exponential backoff",
        validator=lambda x: x > 0,
    ))
    max_transient_failures: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="DICTATOR_POLL_MAX_FAILURES",
        description="Consecutive failed reads tolerated before a wait fails",
        validator=lambda x: x >= 0,
    ))
    run_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.0,
        env_var="DICTATOR_RUN_TIMEOUT",
        description="Overall deadline for a run in seconds (0 disables it)",
        validator=lambda x: x >= 0,
    ))


@dataclass
class TransportConfig:
    """Configuration for remote reads."""
    read_retry_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="DICTATOR_READ_RETRIES",
        description="Attempts per remote read before a transport failure",
        validator=lambda x: x >= 1,
    ))
    read_retry_base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.25,
        env_var="DICTATOR_READ_RETRY_DELAY",
        description="Base delay between read attempts",
        validator=lambda x: x >= 0,
    ))
    read_retry_max_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=5.0,
        env_var="DICTATOR_READ_RETRY_MAX_DELAY",
        description="Maximum delay between read attempts",
        validator=lambda x: x >= 0,
    ))


@dataclass
class AuthorityConfig:
    """Identities involved in the migration."""
    deployer: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="DICTATOR_DEPLOYER",
        description="Identity running the sequencer",
        validator=_is_address_or_unset,
    ))
    controller: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="DICTATOR_CONTROLLER",
        description="Identity allowed to execute dictator steps",
        validator=_is_address_or_unset,
    ))
    final_system_owner: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="DICTATOR_FINAL_OWNER",
        description="Owner of the system once the migration is complete",
        validator=_is_address_or_unset,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="DICTATOR_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="DICTATOR_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class DictatorConfig:
    """
    Root configuration for the dictator sequencer.

    Aggregates all component configurations and builds the runtime
    collaborators they describe.
    """
    polling: PollingConfig = field(default_factory=PollingConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    authority: AuthorityConfig = field(default_factory=AuthorityConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)

    def build_poller(self, **overrides: Any) -> ConditionPoller:
        """ConditionPoller configured from the polling section."""
        polling = self.polling
        run_timeout = polling.run_timeout_seconds.get()
        options: Dict[str, Any] = dict(
            poll_interval_seconds=polling.interval_seconds.get(),
            timeout_seconds=polling.timeout_seconds.get(),
            backoff_strategy=(
                BackoffStrategy.EXPONENTIAL if polling.backoff.get() == "exponential"
                else BackoffStrategy.FIXED
            ),
            max_interval_seconds=polling.max_interval_seconds.get(),
            max_transient_failures=polling.max_transient_failures.get(),
            logger=get_logger("poller", SequencerLayer.POLLER),
        )
        if run_timeout > 0:
            options["deadline"] = RunDeadline(run_timeout, clock=overrides.get("clock") or time.monotonic)
        options.update(overrides)
        return ConditionPoller(**options)

    def build_read_retry(self, **overrides: Any) -> RetryPolicy:
        """RetryPolicy for remote reads."""
        transport = self.transport
        options: Dict[str, Any] = dict(
            max_attempts=transport.read_retry_attempts.get(),
            base_delay_seconds=transport.read_retry_base_delay_seconds.get(),
            max_delay_seconds=transport.read_retry_max_delay_seconds.get(),
        )
        options.update(overrides)
        return RetryPolicy(**options)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = DictatorConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[DictatorConfig], None]] = []
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> DictatorConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must be a mapping: {path}")

        self._apply_dict(data)
        if path not in self._config_paths:
            self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("dictator.yaml"),
            Path("config/dictator.yaml"),
            Path.home() / ".dictator" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration; unknown keys are errors."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}.{key}" if prefix else key
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, path)
                else:
                    raise ConfigError(f"Expected a mapping for config section: {path}")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("polling.interval_seconds", 5.0)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("polling.timeout_seconds")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, "__dataclass_fields__") or part not in obj.__dataclass_fields__:
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def watch(self, callback: Callable[[DictatorConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """
        Reload configuration from all loaded files.

        All-or-nothing: a file that fails to load leaves the previous
        configuration in place.
        """
        previous = copy.deepcopy(self._config)
        try:
            for path in list(self._config_paths):
                self.load_from_file(path)
        except (ConfigError, OSError):
            self._config = previous
            raise

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except ValidationError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> DictatorConfig:
    """Get the current dictator configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()


# =============================================================================
# DEPLOYMENT DOCUMENT
# =============================================================================

@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Registry of the bundled schemas so ``$ref`` resolves locally."""
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        resources.append((schema["$id"], Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


def deployment_validator(schema_path: Path = DEPLOYMENT_SCHEMA) -> Draft202012Validator:
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_deployment(data: Any) -> List[str]:
    """Validate a deployment document; returns error messages (empty if valid)."""
    validator = deployment_validator()
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(data), key=lambda e: e.json_path)
    ]


@dataclass(frozen=True)
class Deployment:
    """Validated deployment document."""
    deployer: str
    controller: str
    final_system_owner: str
    addresses: SystemAddresses
    dead_address_names: Tuple[str, ...] = DEAD_ADDRESS_NAMES
    network: str = ""
    polling: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Deployment":
        errors = validate_deployment(data)
        if errors:
            raise ValidationError("Invalid deployment document:\n  " + "\n  ".join(errors))
        return cls(
            deployer=data["deployer"],
            controller=data["controller"],
            final_system_owner=data["final_system_owner"],
            addresses=SystemAddresses.from_mapping(data["addresses"]),
            dead_address_names=tuple(data.get("dead_address_names", DEAD_ADDRESS_NAMES)),
            network=data.get("network", ""),
            polling=dict(data.get("polling", {})),
        )

    def apply_to(self, config: DictatorConfig) -> None:
        """Carry the document's identities and polling overrides into ``config``."""
        config.authority.deployer.set(self.deployer)
        config.authority.controller.set(self.controller)
        config.authority.final_system_owner.set(self.final_system_owner)
        if "interval_seconds" in self.polling:
            config.polling.interval_seconds.set(float(self.polling["interval_seconds"]))
        if "timeout_seconds" in self.polling:
            config.polling.timeout_seconds.set(float(self.polling["timeout_seconds"]))


def load_deployment(path: Union[str, Path]) -> Deployment:
    """Load and validate a deployment YAML file."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Deployment file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return Deployment.from_dict(data)
