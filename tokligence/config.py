"""Configuration snapshot for the gateway toolkit."""

from __future__ import annotations

import json
import logging
import platform
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".tokligence"
CONFIG_FILE_NAME = "config.json"

BINARY_PREFIX = "tokligence-gateway"

# Architecture aliases used in release asset names
ARCH_ALIASES = {
    "x64": ["amd64", "x86_64", "x64"],
    "arm64": ["arm64", "aarch64"],
}

_MACHINE_TO_ARCH = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
}


class ConfigError(Exception):
    """Raised when the configuration file cannot be read or validated."""

    pass


class GatewayConfig(BaseModel):
    """Typed configuration snapshot."""

    url: str = "http://localhost:8081"
    api_path: str = "/v1/chat/completions"
    health_path: str = "/health"
    models_path: str = "/v1/models"
    start_on_activation: bool = True
    auto_download_binary: bool = True
    version: str = "v0.4.0"
    work_mode: Literal["auto", "passthrough", "translation"] = "auto"
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    gemini_api_key: str = ""
    model_routes: str = "claude*=>anthropic,gpt-*=>openai,o*=>openai,gemini-*=>gemini"
    pii_firewall_enabled: bool = True
    pii_firewall_mode: Literal["monitor", "redact", "enforce"] = "redact"
    model: str = "gpt-4o-mini"
    system_prompt: str = "You are a helpful coding assistant."
    use_streaming: bool = True
    request_timeout_ms: int = Field(default=120_000, gt=0)
    request_headers: dict[str, str] = Field(default_factory=dict)
    api_key: str = ""
    binary_path: str = ""
    install_dir: str = ""
    multiport_mode: bool = False
    facade_port: int = 8081
    openai_port: int = 8082
    anthropic_port: int = 8083
    gemini_port: int = 8084
    log_level: Literal["debug", "info", "warn", "error"] = "info"
    start_grace_seconds: float = Field(default=1.5, ge=0.0)

    @property
    def providers(self) -> list[str]:
        """Names of providers that have an API key configured."""
        names = []
        if self.openai_api_key:
            names.append("OpenAI")
        if self.anthropic_api_key:
            names.append("Anthropic")
        if self.gemini_api_key:
            names.append("Gemini")
        return names

    def endpoint(self, path: str) -> str:
        """Join the base URL with an absolute endpoint path."""
        return self.url.rstrip("/") + "/" + path.lstrip("/")


class ConfigView:
    """Resolves a fresh GatewayConfig from disk on every call.

    Overrides given at construction win over the file; they are never
    written back.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        overrides: dict[str, Any] | None = None,
    ):
        self.path = Path(path) if path else DEFAULT_CONFIG_DIR / CONFIG_FILE_NAME
        self.overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    def _read_file(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self.path} must contain a JSON object")
        return data

    def get(self) -> GatewayConfig:
        """Return the current configuration snapshot."""
        data = self._read_file()
        data.update(self.overrides)
        try:
            return GatewayConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {self.path}: {e}") from e

    def update(self, key: str, value: Any) -> GatewayConfig:
        """Persist a single field to the config file."""
        if key not in GatewayConfig.model_fields:
            raise ConfigError(f"Unknown configuration key: {key}")
        data = self._read_file()
        data[key] = value
        try:
            GatewayConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid value for {key}: {e}") from e

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2) + "\n")
        logger.info(f"Updated config {key} in {self.path}")
        return self.get()


def config_dir() -> Path:
    """Directory holding config, consent decisions and managed binaries."""
    return DEFAULT_CONFIG_DIR


def binary_name(system: str | None = None) -> str:
    """Platform-specific file name of the gateway executable."""
    system = (system or platform.system()).lower()
    return f"{BINARY_PREFIX}.exe" if system == "windows" else BINARY_PREFIX


def install_dir(config: GatewayConfig) -> Path:
    """Managed directory the installer writes binaries into."""
    if config.install_dir.strip():
        return Path(config.install_dir).expanduser()
    return config_dir() / "bin"


def default_binary_path(config: GatewayConfig) -> Path:
    """Binary path from config, or the canonical path in the install dir."""
    if config.binary_path.strip():
        return Path(config.binary_path).expanduser()
    return install_dir(config) / binary_name()


def platform_labels(
    system: str | None = None,
    machine: str | None = None,
) -> tuple[str, list[str]]:
    """Return the release OS label and architecture aliases for a host.

    Args:
        system: platform.system() value, defaults to the running host
        machine: platform.machine() value, defaults to the running host

    Returns:
        Tuple of (os_label, arch_labels)
    """
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()

    if system.startswith("win"):
        os_label = "windows"
    elif system == "darwin":
        os_label = "darwin"
    else:
        os_label = "linux"

    arch = _MACHINE_TO_ARCH.get(machine)
    arch_labels = list(ARCH_ALIASES[arch]) if arch else [machine]
    return os_label, arch_labels
