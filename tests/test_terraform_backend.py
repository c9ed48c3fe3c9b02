from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from agentvm.errors import AgentVmError, ExitCode, ProvisioningFailed
from agentvm.provisioning.terraform import TerraformBackend
from agentvm.vm.models import VmState

pytestmark = pytest.mark.critical_regression


def _cp(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _initialized(tmp_path: Path) -> Path:
    (tmp_path / ".terraform").mkdir()
    return tmp_path


def _backend(directory: Path, runner) -> TerraformBackend:
    return TerraformBackend(directory, vm_name="agent-vm", libvirt_uri="qemu:///system", runner=runner)


def test_state_absent_without_state_records(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        if cmd[2:] == ["state", "list"]:
            return _cp(0, stdout="")
        raise AssertionError(cmd)

    assert _backend(_initialized(tmp_path), runner).state() is VmState.ABSENT


def test_state_running_when_domain_running(tmp_path: Path) -> None:
    commands: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        commands.append(cmd)
        if cmd[2:] == ["state", "list"]:
            return _cp(0, stdout="libvirt_domain.vm\nlibvirt_volume.disk\n")
        if cmd[0] == "virsh":
            return _cp(0, stdout="running\n")
        raise AssertionError(cmd)

    directory = _initialized(tmp_path)
    assert _backend(directory, runner).state() is VmState.RUNNING
    assert commands[0] == ["terraform", f"-chdir={directory}", "state", "list"]
    assert commands[1] == ["virsh", "-c", "qemu:///system", "domstate", "agent-vm"]


def test_state_stopped_when_domain_shut_off_or_missing(tmp_path: Path) -> None:
    domain = {"stdout": "shut off\n", "code": 0}

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        if cmd[2:] == ["state", "list"]:
            return _cp(0, stdout="libvirt_domain.vm\n")
        return _cp(domain["code"], stdout=domain["stdout"])

    backend = _backend(_initialized(tmp_path), runner)
    assert backend.state() is VmState.STOPPED

    domain.update(stdout="", code=1)
    assert backend.state() is VmState.STOPPED


def test_uninitialized_directory_runs_init_first(tmp_path: Path) -> None:
    commands: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        commands.append(cmd)
        return _cp(0)

    _backend(tmp_path, runner).state()

    assert commands[0] == ["terraform", f"-chdir={tmp_path}", "init", "-input=false"]
    assert commands[1][2:] == ["state", "list"]


def test_read_only_state_never_initializes(tmp_path: Path) -> None:
    commands: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        commands.append(cmd)
        return _cp(0)

    assert _backend(tmp_path, runner).state(read_only=True) is VmState.ABSENT
    assert commands == []
    assert not (tmp_path / ".terraform").exists()


def test_read_only_state_surfaces_state_read_failure(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        return _cp(1, stderr="Error: state lock held")

    with pytest.raises(ProvisioningFailed) as exc_info:
        _backend(_initialized(tmp_path), runner).state(read_only=True)
    assert "state lock held" in exc_info.value.hint


def test_missing_directory_is_config_error(tmp_path: Path) -> None:
    backend = _backend(tmp_path / "missing", lambda *args, **kwargs: _cp(0))

    with pytest.raises(AgentVmError) as exc_info:
        backend.state()
    assert exc_info.value.code == ExitCode.CONFIG_ERROR


def test_missing_terraform_binary_is_config_error(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        raise FileNotFoundError(cmd[0])

    with pytest.raises(AgentVmError) as exc_info:
        _backend(_initialized(tmp_path), runner).has_state()
    assert exc_info.value.code == ExitCode.CONFIG_ERROR


def test_apply_passes_sorted_variables(tmp_path: Path) -> None:
    commands: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        commands.append(cmd)
        return _cp(0)

    directory = _initialized(tmp_path)
    _backend(directory, runner).apply({"vm_vcpus": "4", "user_uid": "1000"})

    assert commands == [
        [
            "terraform",
            f"-chdir={directory}",
            "apply",
            "-auto-approve",
            "-input=false",
            "-var",
            "user_uid=1000",
            "-var",
            "vm_vcpus=4",
        ]
    ]


def test_apply_failure_keeps_details_and_recovery_hint(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        return _cp(1, stderr="Error: pool 'default' not found")

    with pytest.raises(ProvisioningFailed) as exc_info:
        _backend(_initialized(tmp_path), runner).apply({})

    error = exc_info.value
    assert error.code == ExitCode.PROVISIONING_ERROR
    assert "pool 'default' not found" in error.hint
    assert "agentvm destroy" in error.hint


def test_destroy_failure_raises_with_inspection_hint(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        return _cp(1, stderr="domain busy")

    with pytest.raises(ProvisioningFailed) as exc_info:
        _backend(_initialized(tmp_path), runner).destroy()
    assert "virsh -c qemu:///system list --all" in exc_info.value.hint


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (_cp(0, stdout="192.168.123.45\n"), "192.168.123.45"),
        (_cp(0, stdout="IP not yet assigned"), None),
        (_cp(0, stdout=""), None),
        (_cp(1, stderr="Output not found"), None),
    ],
)
def test_output_values(tmp_path: Path, result: subprocess.CompletedProcess, expected: str | None) -> None:
    commands: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        commands.append(cmd)
        return result

    assert _backend(tmp_path, runner).output("vm_ip") == expected
    assert commands[0][2:] == ["output", "-raw", "vm_ip"]


def test_ssh_key_lives_in_terraform_directory(tmp_path: Path) -> None:
    assert _backend(tmp_path, lambda *args, **kwargs: _cp(0)).ssh_key_path == tmp_path / "vm-ssh-key"
