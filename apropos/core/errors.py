"""Error taxonomy for the terminal session bridge."""

from __future__ import annotations

from typing import Sequence


class AproposError(Exception):
    """Base class for all bridge errors."""


class ExecutionError(AproposError):
    """A local subprocess or remote ssh command failed.

    Attributes:
        argv: Command that was executed (before ssh wrapping)
        host: Remote host alias, or None for local execution
        returncode: Process exit code (None when the process never started)
        stderr: Captured standard error, stripped
    """

    def __init__(
        self,
        argv: Sequence[str],
        host: str | None,
        returncode: int | None,
        stderr: str = "",
        message: str | None = None,
    ) -> None:
        self.argv = list(argv)
        self.host = host
        self.returncode = returncode
        self.stderr = stderr.strip()
        if message is None:
            detail = self.stderr or f"exit code {returncode}"
            program = self.argv[0] if self.argv else "<empty>"
            message = f"{program} failed on {host or 'local'}: {detail}"
        super().__init__(message)


class SubprocessTimeoutError(ExecutionError):
    """A subprocess exceeded its time budget and was killed."""

    def __init__(self, operation: str, timeout: float, pid: int | None, host: str | None = None) -> None:
        self.operation = operation
        self.timeout = timeout
        self.pid = pid
        super().__init__(
            [operation],
            host,
            None,
            message=f"{operation} timed out after {timeout}s (pid={pid})",
        )


class MissingDependencyError(AproposError):
    """A required executable for a session kind is not installed."""

    def __init__(self, kind: str, executable: str) -> None:
        self.kind = kind
        self.executable = executable
        super().__init__(
            f"{kind} is not installed. Download/install {kind} and ensure "
            f"'{executable}' is on PATH, then retry."
        )


class EarlyExitError(AproposError):
    """A freshly spawned agent session died during its grace period."""

    def __init__(self, kind: str, location: str) -> None:
        self.kind = kind
        self.location = location
        super().__init__(f"{kind} exited immediately after launch in {location}. Check the CLI works in that folder.")


class ProtocolError(AproposError):
    """A client message could not be understood."""


class BridgeAttachError(AproposError):
    """Direct terminal attach is unavailable for this connection."""
