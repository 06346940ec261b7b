"""Pydantic schemas for gateway provisioning, supervision and chat."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChatRole(str, Enum):
    """Roles allowed in a conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ArchiveKind(str, Enum):
    """Packaging of a release asset, in install preference order."""

    TAR_GZ = "tar.gz"
    ZIP = "zip"
    RAW = "raw"


class ConsentAction(str, Enum):
    """Actions that touch the local machine and need user consent."""

    START = "start"
    DOWNLOAD = "download"


class ConsentChoice(str, Enum):
    """Answers a consent prompt can return."""

    ALLOW_ONCE = "allow-once"
    ALWAYS_ALLOW = "always-allow"
    CANCEL = "cancel"


class ConsentScope(str, Enum):
    """How long a granted consent lasts."""

    ONCE = "once"
    ALWAYS = "always"


class HealthState(str, Enum):
    """Classification of a health probe."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class ProcessState(str, Enum):
    """Lifecycle states of the supervised gateway process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"


# --- Chat ---


class ChatMessage(BaseModel):
    """One entry of the conversation history."""

    role: ChatRole
    content: str


class ChatRequest(BaseModel):
    """Body of a chat completion request."""

    model: str
    messages: list[ChatMessage]
    stream: bool = False


# --- Provisioning ---


class ReleaseAsset(BaseModel):
    """A downloadable file attached to a gateway release."""

    model_config = ConfigDict(frozen=True)

    name: str
    download_url: str
    kind: ArchiveKind


class InstalledBinary(BaseModel):
    """A gateway executable placed on disk by the installer."""

    path: str = Field(..., description="Absolute path to the executable")
    executable: bool


# --- Consent ---


class ConsentDecision(BaseModel):
    """Outcome of a consent check."""

    action: ConsentAction
    granted: bool
    scope: ConsentScope | None = None


# --- Health and status ---


class HealthResult(BaseModel):
    """Classified result of a health probe."""

    state: HealthState
    status_code: int | None = None
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.state == HealthState.HEALTHY


class GatewayStatus(BaseModel):
    """Gateway status derived from configuration and liveness."""

    running: bool
    port: int
    work_mode: str
    pii_enabled: bool
    pii_mode: str
    providers: list[str] = Field(default_factory=list)
    health: HealthResult | None = None
