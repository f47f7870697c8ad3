"""Exceptions raised by kernel sessions."""


class KernelSessionError(Exception):
    """Base class for all kernel session failures."""


class CancellationError(KernelSessionError):
    """The caller's cancellation token fired before the operation completed."""

    def __init__(self, message: str = "Canceled"):
        super().__init__(message)


class KernelConnectionTimeoutError(KernelSessionError):
    """Launching or connecting to a kernel did not finish in time."""

    def __init__(self, kernel_connection_metadata):
        self.kernel_connection_metadata = kernel_connection_metadata
        super().__init__(
            f"Timed out waiting for kernel '{kernel_connection_metadata.display_name}' "
            f"({kernel_connection_metadata.id}) to connect."
        )


class KernelInterruptError(KernelSessionError):
    """An interrupt request was not acknowledged by the kernel."""


class KernelDisposedError(KernelSessionError):
    """The session, kernel or connection has already been disposed."""


class KernelNotStartedError(KernelSessionError):
    """The operation needs a running kernel and there is none."""


class KernelDiedError(KernelSessionError):
    """The kernel process exited before it finished starting."""

    def __init__(self, kernel_connection_metadata, exit_info):
        self.kernel_connection_metadata = kernel_connection_metadata
        self.exit_info = exit_info
        super().__init__(
            f"Kernel '{kernel_connection_metadata.display_name}' "
            f"({kernel_connection_metadata.id}) died during startup "
            f"(exit code {exit_info.exit_code}): {exit_info.reason or 'no reason given'}"
        )
