"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    GIT_ERROR = 5
    PROVISIONING_ERROR = 6
    UNREACHABLE = 7
    VALIDATION_ERROR = 8
    WORKSPACE_ERROR = 9


@dataclass
class AgentVmError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


class ProvisioningFailed(AgentVmError):
    """Backend apply/destroy reported failure; state is kept for inspection."""

    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.PROVISIONING_ERROR, hint)


class Unreachable(AgentVmError):
    """VM did not accept a remote connection within the boot window."""

    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.UNREACHABLE, hint)


class WorkspaceCorrupt(AgentVmError):
    """Workspace directory exists without git metadata."""

    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.WORKSPACE_ERROR, hint)


class GitSyncError(AgentVmError):
    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.GIT_ERROR, hint)


class RemoteCommandTimeout(AgentVmError):
    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.RUNTIME_ERROR, hint)


# Non-fatal conditions. Instances are collected as warnings, never raised.


class DirtyWorkingTree(AgentVmError):
    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.SUCCESS, hint)


class MountUnavailable(AgentVmError):
    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.SUCCESS, hint)


class CredentialsNotFound(AgentVmError):
    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.SUCCESS, hint)


class ResourceOverrideIgnored(AgentVmError):
    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.SUCCESS, hint)


class StatusUnavailable(AgentVmError):
    """A read-only sub-query failed; list and status report it and carry on."""

    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message, ExitCode.SUCCESS, hint)


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."


def user_facing_warning(warning: AgentVmError) -> str:
    if warning.hint:
        return f"Warning: {warning.message} ({warning.hint})"
    return f"Warning: {warning.message}"
