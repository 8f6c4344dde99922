"""
Runtime configuration for did:webvh log building and validation.

Configuration Sources (in order of precedence):
    1. Environment variables (WEBVH_*)
    2. Values from a YAML file passed to ``load_config``
    3. Default values

Per-log settings (method version, hash algorithm, SCID) are not part of
this configuration: they are fixed by the genesis entry and read back from
it (see ``webvh.resolver.LogContext``). A ``WebvhConfig`` is passed to
operations explicitly; nothing here is process-global.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from webvh.core import HASH_ALGORITHMS
from webvh.errors import ConfigError

T = TypeVar("T")


class KeyAuthorization(str, Enum):
    """Which keys may sign the entry that follows a pre-rotation commitment."""
    ROTATION_ONLY = "rotation-only"
    UPDATE_KEYS_OR_ROTATION = "update-keys-or-rotation"


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            value = self._coerce(os.environ[self.env_var])
            self._check(value)
            return value
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        self._check(value)
        self._value = value

    def _check(self, value: T) -> None:
        if self.validator and not self.validator(value):
            raise ConfigError(f"Invalid value for config ({self.description or self.env_var}): {value!r}")

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.strip().lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            try:
                return int(value)  # type: ignore
            except ValueError as ex:
                raise ConfigError(f"{self.env_var} must be an integer: {value!r}") from ex
        else:
            return value  # type: ignore


@dataclass
class WebvhConfig:
    """
    Root configuration.

    Example:
        config = load_config("webvh.yaml")
        result = resolve(log, config=config)
    """
    hash_algorithm: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="sha2-256",
        env_var="WEBVH_HASH_ALGORITHM",
        description="Hash algorithm recorded in new logs",
        validator=lambda x: x in HASH_ALGORITHMS,
    ))
    key_authorization: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=KeyAuthorization.ROTATION_ONLY.value,
        env_var="WEBVH_KEY_AUTHORIZATION",
        description="Signer policy after a pre-rotation commitment",
        validator=lambda x: x in {k.value for k in KeyAuthorization},
    ))
    max_clock_skew_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=60,
        env_var="WEBVH_MAX_CLOCK_SKEW",
        description="Allowed future drift of versionTime in seconds",
        validator=lambda x: isinstance(x, int) and x >= 0,
    ))
    require_witness_proofs: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="WEBVH_REQUIRE_WITNESS",
        description="Fail resolution when a witnessed entry has no witness proofs",
    ))
    proof_purpose: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="assertionMethod",
        env_var="WEBVH_PROOF_PURPOSE",
        description="proofPurpose used for new controller proofs",
        validator=lambda x: x in ("assertionMethod", "authentication"),
    ))
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="WEBVH_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="text",
        env_var="WEBVH_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))

    @property
    def authorization(self) -> KeyAuthorization:
        return KeyAuthorization(self.key_authorization.get())

    def set(self, name: str, value: Any) -> None:
        """Set a configuration value by name."""
        attr = getattr(self, name, None)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config key: {name}")
        attr.set(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            k: getattr(self, k).get()
            for k in self.__dataclass_fields__
            if isinstance(getattr(self, k), ConfigValue)
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)

    def validate(self) -> List[str]:
        """Validation errors for the effective values (env included)."""
        errors: List[str] = []
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if not isinstance(value, ConfigValue):
                continue
            try:
                value.get()
            except ConfigError as e:
                errors.append(f"{name}: {e}")
        return errors


def load_config(path: Optional[Union[str, Path]] = None) -> WebvhConfig:
    """Build a configuration from defaults, an optional YAML file and the environment.

    The YAML file is a flat mapping of the keys of :class:`WebvhConfig`,
    optionally nested under a top-level ``webvh:`` key.
    """
    config = WebvhConfig()
    if path is None:
        return config

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as ex:
        raise ConfigError(f"Configuration file is not valid YAML: {path}: {ex}") from ex

    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must be a mapping: {path}")
    if isinstance(data.get("webvh"), dict):
        data = data["webvh"]

    for key, value in data.items():
        config.set(str(key), value)
    return config
