from __future__ import annotations

from agentvm.errors import (
    AgentVmError,
    DirtyWorkingTree,
    ExitCode,
    GitSyncError,
    MountUnavailable,
    ProvisioningFailed,
    RemoteCommandTimeout,
    Unreachable,
    WorkspaceCorrupt,
    user_facing_error,
    user_facing_warning,
)
from agentvm.logging import LOG_LEVELS, configure_logging


def test_exit_codes_are_deterministic() -> None:
    assert int(ExitCode.SUCCESS) == 0
    assert int(ExitCode.INVALID_ARGS) == 2
    assert int(ExitCode.PROVISIONING_ERROR) == 6
    assert int(ExitCode.UNREACHABLE) == 7
    assert int(ExitCode.WORKSPACE_ERROR) == 9


def test_agentvm_error_string_contains_hint() -> None:
    err = AgentVmError("terraform missing", code=ExitCode.CONFIG_ERROR, hint="Install Terraform")
    assert "Install Terraform" in str(err)


def test_taxonomy_classes_carry_their_exit_codes() -> None:
    assert ProvisioningFailed("x").code == ExitCode.PROVISIONING_ERROR
    assert Unreachable("x").code == ExitCode.UNREACHABLE
    assert WorkspaceCorrupt("x").code == ExitCode.WORKSPACE_ERROR
    assert GitSyncError("x").code == ExitCode.GIT_ERROR
    assert RemoteCommandTimeout("x").code == ExitCode.RUNTIME_ERROR


def test_warning_classes_are_errors_with_success_code() -> None:
    warning = DirtyWorkingTree("uncommitted changes", hint="commit first")
    assert isinstance(warning, AgentVmError)
    assert warning.code == ExitCode.SUCCESS
    assert MountUnavailable("no sshfs").code == ExitCode.SUCCESS


def test_user_facing_error_template() -> None:
    text = user_facing_error("Provisioning apply failed", hint="Run agentvm destroy")
    assert text.startswith("Error:")
    assert "Next step: Run agentvm destroy" in text


def test_user_facing_error_without_hint() -> None:
    assert user_facing_error("boom") == "Error: boom."


def test_user_facing_warning_includes_hint() -> None:
    text = user_facing_warning(MountUnavailable("sshfs missing", hint="Install sshfs"))
    assert text == "Warning: sshfs missing (Install sshfs)"
    assert user_facing_warning(MountUnavailable("sshfs missing")) == "Warning: sshfs missing"


def test_logging_levels() -> None:
    logger = configure_logging("WARN")
    assert logger.level == LOG_LEVELS["WARN"]
