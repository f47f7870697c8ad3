"""
Pydantic V2 Models for Kernel Sessions
======================================

Value types shared by the session state machine and its collaborators:
kernel specs, connection metadata, connection parameters, exit payloads
and the enumerations for kernel/connection status and interrupt mode.

All models reject unknown fields (except ConnectionInfo, which is fed
straight from jupyter_client and carries extra keys across versions).
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class KernelStatus(str, Enum):
    """Execution status of a kernel as observed by a session."""

    UNKNOWN = "unknown"
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    TERMINATING = "terminating"
    RESTARTING = "restarting"
    AUTORESTARTING = "autorestarting"
    DEAD = "dead"


class ConnectionStatus(str, Enum):
    """Transport-level status of a wire connection."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class InterruptMode(str, Enum):
    """How a kernel wants to be interrupted (kernel.json ``interrupt_mode``)."""

    SIGNAL = "signal"
    MESSAGE = "message"


class SecureBaseModel(BaseModel):
    """Base class with extra='forbid' to reject unknown fields."""

    model_config = ConfigDict(extra="forbid")


# ============================================================================
# KERNEL SPECS & CONNECTION METADATA
# ============================================================================


class KernelSpec(SecureBaseModel):
    """The subset of a kernel.json needed to launch and drive a kernel."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., min_length=1, description="Kernel spec name")
    display_name: str = Field(default="", description="Human readable name")
    argv: List[str] = Field(..., description="Launch command line")
    language: Optional[str] = None
    interrupt_mode: Optional[InterruptMode] = Field(
        default=None, description="None means signal-based interruption"
    )
    env: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    executable: Optional[str] = None

    @field_validator("argv")
    @classmethod
    def validate_argv(cls, v):
        if not v:
            raise ValueError("Kernel spec argv cannot be empty")
        return v


class KernelConnectionMetadata(SecureBaseModel):
    """Immutable description of which kernel a session talks to."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1)
    kernel_spec: KernelSpec
    kind: Literal["startUsingLocalKernelSpec"] = "startUsingLocalKernelSpec"

    @property
    def display_name(self) -> str:
        return self.kernel_spec.display_name or self.kernel_spec.name


class ConnectionInfo(BaseModel):
    """ZMQ connection parameters of a running kernel process."""

    model_config = ConfigDict(extra="ignore")

    ip: str = "127.0.0.1"
    transport: str = "tcp"
    shell_port: int
    iopub_port: int
    stdin_port: int
    control_port: int
    hb_port: int
    key: str = ""
    signature_scheme: str = "hmac-sha256"
    kernel_name: str = ""


class ExitInfo(BaseModel):
    """Payload of a kernel process ``exited`` notification."""

    exit_code: Optional[int] = None
    reason: Optional[str] = None
    stderr: str = ""


class SessionModel(SecureBaseModel):
    """Read-only description of a session, as reported to callers."""

    id: str
    name: str
    path: str
    type: Literal["notebook", "console"]
    kernel_id: str
    kernel_name: str
