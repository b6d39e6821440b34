# src/chaosproxy/config.py
"""Configuration schema and loading for ChaosProxy.

Uses Pydantic for validation with frozen (immutable) models.
Configuration precedence: CLI > YAML file > preset > defaults.

Delay rates are per millisecond: a sampled delay is a number of
milliseconds with mean ``1 / rate``, clamped to the matching ``*_max_ms``.
"""

from pathlib import Path
from typing import Any, Literal

import httpx
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from chaosproxy.errors import InvalidDestinationError


def parse_destination(value: str) -> httpx.URL:
    """Parse a destination string into an absolute http(s) URL.

    Raises:
        InvalidDestinationError: If the string is not a URL, is relative,
            has no host, or uses a scheme other than http/https.
    """
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError) as e:
        raise InvalidDestinationError(str(value), str(e)) from e
    if url.scheme not in ("http", "https"):
        raise InvalidDestinationError(value, "scheme must be http or https")
    if not url.host:
        raise InvalidDestinationError(value, "URL has no host")
    return url


# === Fault Injection ===


class FaultConfig(BaseModel):
    """Fault injection settings for one proxy.

    A rate <= 0 disables that delay entirely. The underlying transport and
    the logger are not settings; they are passed next to this config.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    destination: str = Field(
        description="Absolute http(s) URL requests are forwarded to",
    )
    drop_probability: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Chance a request is dropped instead of forwarded (0 = never, 1 = always)",
    )
    pre_delay_rate: float = Field(
        default=0.0,
        allow_inf_nan=False,
        description="Exponential rate (per ms) of the delay before forwarding; <= 0 disables it",
    )
    pre_delay_max_ms: float = Field(
        default=0.0,
        ge=0.0,
        description="Hard clamp on the pre-forwarding delay in milliseconds",
    )
    post_delay_rate: float = Field(
        default=0.0,
        allow_inf_nan=False,
        description="Exponential rate (per ms) of the delay after the response; <= 0 disables it",
    )
    post_delay_max_ms: float = Field(
        default=0.0,
        ge=0.0,
        description="Hard clamp on the post-response delay in milliseconds",
    )
    seed: int = Field(
        default=0,
        ge=0,
        description="RNG seed for reproducible faults (0 = non-deterministic)",
    )

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        """Reject destinations that are not absolute http(s) URLs.

        The InvalidDestinationError raised here reaches callers wrapped in a
        pydantic ValidationError, under the error's ``ctx["error"]``.
        """
        parse_destination(v)
        return v


# === Server / Upstream / Logging ===


class ServerConfig(BaseModel):
    """Server binding configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    host: str = Field(
        default="127.0.0.1",
        description="Host address to bind to",
    )
    port: int = Field(
        default=8300,
        gt=0,
        le=65535,
        description="Port to listen on",
    )


class UpstreamConfig(BaseModel):
    """Outbound client settings used to build the default transport."""

    model_config = {"frozen": True, "extra": "forbid"}

    timeout_sec: float | None = Field(
        default=30.0,
        gt=0,
        description="Timeout for each outbound network operation (None = no timeout)",
    )
    verify_tls: bool = Field(
        default=True,
        description="Verify TLS certificates of https destinations",
    )


class LoggingConfig(BaseModel):
    """Log output configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level",
    )
    json_output: bool = Field(
        default=False,
        description="Emit JSON lines instead of console output",
    )


# === Top-Level Config ===


class ChaosProxyConfig(BaseModel):
    """Top-level ChaosProxy configuration.

    Configuration precedence (highest to lowest):
    1. CLI flags
    2. YAML config file
    3. Preset defaults
    4. Built-in defaults
    """

    model_config = {"frozen": True, "extra": "forbid"}

    server: ServerConfig = Field(
        default_factory=ServerConfig,
        description="Server binding configuration",
    )
    faults: FaultConfig = Field(
        description="Destination and fault injection settings",
    )
    upstream: UpstreamConfig = Field(
        default_factory=UpstreamConfig,
        description="Outbound client configuration",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    admin_prefix: str | None = Field(
        default=None,
        description="Path prefix for admin routes (health, stats, reset); disabled when unset",
    )
    allow_external_bind: bool = Field(
        default=False,
        description="Allow binding to 0.0.0.0 or :: (all interfaces). Blocked by default for safety.",
    )
    preset_name: str | None = Field(
        default=None,
        description="Preset name used to build this config (if any)",
    )

    @field_validator("admin_prefix")
    @classmethod
    def validate_admin_prefix(cls, v: str | None) -> str | None:
        """Admin prefix must be an absolute path other than the root."""
        if v is None:
            return v
        if not v.startswith("/"):
            raise ValueError(f"admin_prefix must start with '/', got {v!r}")
        stripped = v.rstrip("/")
        if not stripped:
            raise ValueError("admin_prefix cannot be '/', it would shadow every proxied path")
        return stripped

    @model_validator(mode="after")
    def validate_host_binding(self) -> "ChaosProxyConfig":
        """Block binding to all interfaces unless explicitly allowed.

        Every request through the proxy may be delayed or dropped, so it
        must not be reachable from the network by accident.
        """
        dangerous_hosts = {"0.0.0.0", "::", "0:0:0:0:0:0:0:0"}
        if self.server.host in dangerous_hosts and not self.allow_external_bind:
            raise ValueError(
                f"Binding to '{self.server.host}' exposes ChaosProxy to the network. "
                f"Use allow_external_bind: true to override, or bind to 127.0.0.1."
            )
        return self


# === Loading ===

# Presets describe network conditions only; where traffic goes and how the
# proxy is bound come from the config file or the CLI.
_PRESET_SECTIONS = frozenset({"faults", "upstream"})


def _get_presets_dir() -> Path:
    """Get the presets directory path."""
    return Path(__file__).parent / "presets"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``, recursing into nested sections."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _read_mapping(path: Path, label: str) -> dict[str, Any]:
    """Read a YAML file that must hold a mapping (an empty file is an empty mapping)."""
    with path.open() as f:
        loaded = yaml.safe_load(f)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{label} must be a YAML mapping, got {type(loaded).__name__}")
    return loaded


def list_presets() -> list[str]:
    """List available preset names."""
    return sorted(path.stem for path in _get_presets_dir().glob("*.yaml"))


def load_preset(preset_name: str) -> dict[str, Any]:
    """Load a preset by name.

    Raises:
        FileNotFoundError: If the preset does not exist.
        ValueError: If the preset is not a mapping, sets sections other than
            ``faults``/``upstream``, or fixes a destination.
    """
    path = _get_presets_dir() / f"{preset_name}.yaml"
    if not path.exists():
        raise FileNotFoundError(f"Preset '{preset_name}' not found. Available presets: {list_presets()}")

    preset = _read_mapping(path, f"Preset '{preset_name}'")
    extra_sections = sorted(set(preset) - _PRESET_SECTIONS)
    if extra_sections:
        raise ValueError(f"Preset '{preset_name}' may only set {sorted(_PRESET_SECTIONS)}, got {extra_sections}")
    if "destination" in preset.get("faults", {}):
        raise ValueError(f"Preset '{preset_name}' must not set faults.destination")
    return preset


def load_config(
    *,
    preset: str | None = None,
    config_file: Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ChaosProxyConfig:
    """Load ChaosProxy configuration with precedence handling.

    Precedence (highest to lowest):
    1. cli_overrides - Direct overrides from CLI flags
    2. config_file - User's YAML configuration file
    3. preset - Named preset (fault and upstream sections only)
    4. defaults - Built-in Pydantic defaults

    Raises:
        FileNotFoundError: If the preset or config file does not exist.
        yaml.YAMLError: If a YAML file is malformed.
        ValueError: If a YAML file is not a mapping or a preset is invalid.
        pydantic.ValidationError: If the merged configuration is invalid,
            including a missing or invalid destination.
    """
    layers: list[dict[str, Any]] = []
    if preset is not None:
        layers.append(load_preset(preset))
    if config_file is not None:
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")
        layers.append(_read_mapping(config_file, f"Config file {config_file}"))
    if cli_overrides is not None:
        layers.append(cli_overrides)

    merged: dict[str, Any] = {}
    for layer in layers:
        merged = deep_merge(merged, layer)
    merged["preset_name"] = preset
    return ChaosProxyConfig.model_validate(merged)
