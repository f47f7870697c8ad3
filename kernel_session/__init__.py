from .cancellation import CancellationToken, CancellationTokenSource, wait_for_cancellable
from .config import SessionSettings, load_settings
from .errors import (
    CancellationError,
    KernelConnectionTimeoutError,
    KernelDiedError,
    KernelDisposedError,
    KernelInterruptError,
    KernelNotStartedError,
    KernelSessionError,
)
from .events import EventEmitter, Subscription
from .factory import KernelSessionFactory
from .launch import KernelLaunch
from .models import (
    ConnectionInfo,
    ConnectionStatus,
    ExitInfo,
    InterruptMode,
    KernelConnectionMetadata,
    KernelSpec,
    KernelStatus,
    SessionModel,
)
from .monitor import KernelAutoRestartMonitor
from .observability import configure_logging
from .session import KernelSession, SessionKernel

__all__ = [
    "CancellationError",
    "CancellationToken",
    "CancellationTokenSource",
    "ConnectionInfo",
    "ConnectionStatus",
    "EventEmitter",
    "ExitInfo",
    "InterruptMode",
    "KernelAutoRestartMonitor",
    "KernelConnectionMetadata",
    "KernelConnectionTimeoutError",
    "KernelDiedError",
    "KernelDisposedError",
    "KernelInterruptError",
    "KernelLaunch",
    "KernelNotStartedError",
    "KernelSession",
    "KernelSessionError",
    "KernelSessionFactory",
    "KernelSpec",
    "KernelStatus",
    "SessionKernel",
    "SessionModel",
    "SessionSettings",
    "Subscription",
    "configure_logging",
    "load_settings",
    "wait_for_cancellable",
]
