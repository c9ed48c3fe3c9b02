"""Per-invocation dispatch from a user intent to the VM, workspace, git and mount components."""

from __future__ import annotations

import logging as py_logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from agentvm.config import AppConfig
from agentvm.errors import (
    AgentVmError,
    ExitCode,
    ResourceOverrideIgnored,
    StatusUnavailable,
    user_facing_warning,
)
from agentvm.git.sync import GitSync, current_branch, repository_name, validate_branch_name
from agentvm.mount.manager import MountManager
from agentvm.provisioning.terraform import TerraformBackend
from agentvm.remote.shell import RemoteShell
from agentvm.vm import credentials
from agentvm.vm.controller import VmController
from agentvm.vm.models import Endpoint, ResourceOverrides, ResourceSpec, VmState, VmStatus
from agentvm.workspace.registry import WorkspaceRegistry, workspace_name

logger = py_logging.getLogger(__name__)

SubprocessRunner = Callable[..., subprocess.CompletedProcess]


class _Command(BaseModel):
    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    repo_dir: Path | None = None


class ConnectCommand(_Command):
    kind: Literal["connect"] = "connect"
    name: str | None = None
    command: str | None = None
    as_root: bool = False
    overrides: ResourceOverrides = Field(default_factory=ResourceOverrides)
    credentials_path: Path | None = None
    vertex_project_id: str | None = None
    vertex_region: str | None = None


class PushCommand(_Command):
    kind: Literal["push"] = "push"
    name: str | None = None


class FetchCommand(_Command):
    kind: Literal["fetch"] = "fetch"
    name: str | None = None
    unmount: bool = False


class ListCommand(_Command):
    kind: Literal["list"] = "list"


class CleanCommand(_Command):
    kind: Literal["clean"] = "clean"
    name: str


class CleanAllCommand(_Command):
    kind: Literal["clean-all"] = "clean-all"


class DestroyCommand(_Command):
    kind: Literal["destroy"] = "destroy"


class StatusCommand(_Command):
    kind: Literal["status"] = "status"


Command = Annotated[
    Union[
        ConnectCommand,
        PushCommand,
        FetchCommand,
        ListCommand,
        CleanCommand,
        CleanAllCommand,
        DestroyCommand,
        StatusCommand,
    ],
    Field(discriminator="kind"),
]

_COMMAND_ADAPTER: TypeAdapter[Command] = TypeAdapter(Command)


def parse_command(data: dict[str, object]) -> Command:
    return _COMMAND_ADAPTER.validate_python(data)


@dataclass
class SessionRequest:
    endpoint: Endpoint
    workdir: PurePosixPath
    command: str | None = None


@dataclass
class OrchestrationResult:
    exit_code: int = int(ExitCode.SUCCESS)
    lines: list[str] = field(default_factory=list)
    warnings: list[AgentVmError] = field(default_factory=list)
    session: SessionRequest | None = None


@dataclass
class _Components:
    endpoint: Endpoint
    shell: RemoteShell
    registry: WorkspaceRegistry
    sync: GitSync


class Orchestrator:
    def __init__(
        self,
        controller: VmController,
        mount: MountManager,
        *,
        runner: SubprocessRunner = subprocess.run,
        remote_timeout_seconds: float = 60.0,
        workspace_root: PurePosixPath | None = None,
        url_for: Callable[..., str] | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.controller = controller
        self.mount = mount
        self.runner = runner
        self.remote_timeout_seconds = remote_timeout_seconds
        self.workspace_root = workspace_root
        self.url_for = url_for
        self.cwd = cwd
        self._handlers: dict[str, Callable[..., OrchestrationResult]] = {
            "connect": self._connect,
            "push": self._push,
            "fetch": self._fetch,
            "list": self._list,
            "clean": self._clean,
            "clean-all": self._clean_all,
            "destroy": self._destroy,
            "status": self._status,
        }

    def dispatch(self, command: Command) -> OrchestrationResult:
        logger.debug("Dispatching command kind=%s", command.kind)
        return self._handlers[command.kind](command)

    def execute(
        self,
        command: Command,
        *,
        out: Callable[[str], None],
        err: Callable[[str], None],
    ) -> OrchestrationResult:
        """Dispatch, report, then hand the terminal to any requested session."""
        result = self.dispatch(command)
        for warning in result.warnings:
            err(user_facing_warning(warning))
        for line in result.lines:
            out(line)
        if result.session is not None:
            result.exit_code = self.open_session(result.session)
        return result

    def open_session(self, request: SessionRequest) -> int:
        shell = self._shell(request.endpoint)
        logger.info("Opening session as %s in %s", request.endpoint.user, request.workdir)
        return shell.open_session(request.workdir, request.command)

    # Shared helpers

    def _shell(self, endpoint: Endpoint) -> RemoteShell:
        return RemoteShell(endpoint, runner=self.runner, timeout_seconds=self.remote_timeout_seconds)

    def _components(self, endpoint: Endpoint) -> _Components:
        shell = self._shell(endpoint)
        root = self.workspace_root or endpoint.workspace_root
        registry = WorkspaceRegistry(shell, root, host_runner=self.runner, residue=self.mount)
        sync = GitSync(registry, endpoint=endpoint, runner=self.runner, url_for=self.url_for)
        return _Components(endpoint=endpoint, shell=shell, registry=registry, sync=sync)

    def _repo_dir(self, command: _Command) -> Path:
        return (command.repo_dir or self.cwd or Path.cwd()).expanduser()

    def _target(self, command: _Command, name: str | None) -> tuple[Path, str, str]:
        repo_dir = self._repo_dir(command)
        repo = repository_name(repo_dir, self.runner)
        branch = name or current_branch(repo_dir, self.runner)
        if not branch:
            raise AgentVmError(
                f"Cannot determine the current branch of {repo_dir}.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Check out a branch or pass the branch name explicitly.",
            )
        return repo_dir, repo, validate_branch_name(branch)

    def _running_endpoint(self) -> Endpoint:
        status = self.controller.status()
        if status.state is not VmState.RUNNING or status.endpoint is None:
            logger.error("Command requires a running VM; state=%s", status.state.value)
            raise AgentVmError(
                f"The VM is {status.state.value}.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Run `agentvm connect` to start it first.",
            )
        return status.endpoint

    # Handlers

    def _connect(self, command: ConnectCommand) -> OrchestrationResult:
        repo_dir, repo, branch = self._target(command, command.name)
        result = OrchestrationResult()

        material = None
        credential_flags = [
            flag
            for flag, value in (
                ("--gcp-credentials", command.credentials_path),
                ("--vertex-project-id", command.vertex_project_id),
                ("--vertex-region", command.vertex_region),
            )
            if value is not None
        ]
        if self.controller.current_state() is VmState.ABSENT:
            material = credentials.resolve(
                command.credentials_path,
                vertex_project_id=command.vertex_project_id,
                vertex_region=command.vertex_region,
            )
        elif credential_flags:
            warning = ResourceOverrideIgnored(
                f"{', '.join(credential_flags)} ignored for existing VM; credentials are only injected at creation.",
                hint="Run `agentvm destroy`, then connect again to provision with new credentials.",
            )
            logger.warning("%s", warning)
            result.warnings.append(warning)

        ensured = self.controller.ensure_running(command.overrides, material)
        result.warnings.extend(ensured.warnings)
        if ensured.created:
            result.lines.append(f"Created VM at {ensured.endpoint.host}")
        elif ensured.started:
            result.lines.append(f"Started VM at {ensured.endpoint.host}")

        parts = self._components(ensured.endpoint)
        workspace = parts.registry.ensure(repo, branch)
        # A workspace left empty by an interrupted first push is populated again here.
        if workspace.created or not parts.registry.has_branch(workspace.workspace, branch):
            pushed = parts.sync.push(repo_dir, branch, workspace.workspace)
            verb = "Created" if workspace.created else "Populated"
            result.lines.append(f"{verb} workspace {workspace.workspace.name} from {branch} ({pushed.commit[:12]})")

        mounted = self.mount.ensure_mounted(ensured.endpoint)
        result.warnings.extend(mounted.warnings)
        if mounted.changed:
            result.lines.append(f"Mounted workspaces at {self.mount.mount_point}")

        session_endpoint = ensured.endpoint.as_user("root") if command.as_root else ensured.endpoint
        result.session = SessionRequest(
            endpoint=session_endpoint,
            workdir=workspace.workspace.path,
            command=command.command,
        )
        return result

    def _push(self, command: PushCommand) -> OrchestrationResult:
        repo_dir, repo, branch = self._target(command, command.name)
        result = OrchestrationResult()
        ensured = self.controller.ensure_running()
        result.warnings.extend(ensured.warnings)

        parts = self._components(ensured.endpoint)
        workspace = parts.registry.ensure(repo, branch)
        pushed = parts.sync.push(repo_dir, branch, workspace.workspace)
        if pushed.branch_created:
            result.lines.append(f"Created local branch {branch}")
        result.lines.append(f"Pushed {branch} ({pushed.commit[:12]}) to workspace {workspace.workspace.name}")
        return result

    def _fetch(self, command: FetchCommand) -> OrchestrationResult:
        repo_dir, repo, branch = self._target(command, command.name)
        if self.controller.current_state() is VmState.ABSENT:
            raise AgentVmError(
                "No VM exists to fetch from.",
                code=ExitCode.VALIDATION_ERROR,
                hint=f"Run `agentvm connect {branch}` first.",
            )
        result = OrchestrationResult()
        ensured = self.controller.ensure_running()
        result.warnings.extend(ensured.warnings)

        parts = self._components(ensured.endpoint)
        name = workspace_name(repo, branch)
        workspace = parts.registry.require(name)
        fetched = parts.sync.fetch(repo_dir, branch, workspace)
        result.warnings.extend(fetched.warnings)
        where = "working tree updated" if fetched.working_tree_updated else "ref updated"
        result.lines.append(f"Fetched {branch} ({fetched.commit[:12]}) from workspace {name}; {where}")

        # The dirty check above already ran; only now may host paths disappear.
        if command.unmount:
            unmounted = self.mount.unmount()
            if unmounted.changed:
                result.lines.append(f"Unmounted {self.mount.mount_point}")
        return result

    def _vm_status(self, result: OrchestrationResult) -> VmStatus | None:
        try:
            return self.controller.status()
        except AgentVmError as exc:
            warning = StatusUnavailable(f"Could not read VM state: {exc.message}", hint=exc.hint)
            logger.warning("%s", warning)
            result.warnings.append(warning)
            return None

    def _list(self, command: ListCommand) -> OrchestrationResult:
        del command
        result = OrchestrationResult()
        status = self._vm_status(result)
        if status is None:
            result.lines.append("VM state unknown; no workspaces listed.")
            return result
        if status.state is not VmState.RUNNING or status.endpoint is None:
            result.lines.append(f"VM is {status.state.value}; no workspaces to list. Run `agentvm connect` to start it.")
            return result

        try:
            entries = self._components(status.endpoint).registry.list()
        except AgentVmError as exc:
            warning = StatusUnavailable(f"Could not list workspaces: {exc.message}", hint=exc.hint)
            logger.warning("%s", warning)
            result.warnings.append(warning)
            return result
        if not entries:
            result.lines.append("No workspaces.")
        for entry in entries:
            stamp = entry["last_modified"].strftime("%Y-%m-%d %H:%M:%S UTC")
            result.lines.append(f"{entry['name']}\t{stamp}")
        return result

    def _status(self, command: StatusCommand) -> OrchestrationResult:
        del command
        result = OrchestrationResult()
        status = self._vm_status(result)
        if status is None:
            result.lines.append("VM: unknown")
        else:
            result.lines.append(f"VM: {status.state.value}")
            if status.endpoint is not None:
                result.lines.append(f"Endpoint: {status.endpoint.target}")
            if status.resources is not None:
                result.lines.append(f"Resources: {status.resources.describe()}")
        result.lines.append(f"Mount: {self.mount.state().value} ({self.mount.mount_point})")
        return result

    def _clean(self, command: CleanCommand) -> OrchestrationResult:
        endpoint = self._running_endpoint()
        cleaned = self._components(endpoint).registry.clean(command.name)
        result = OrchestrationResult(warnings=list(cleaned.warnings))
        if cleaned.removed:
            result.lines.append(f"Removed workspace {command.name}")
        else:
            result.lines.append(f"Workspace {command.name} does not exist; nothing to remove.")
        return result

    def _clean_all(self, command: CleanAllCommand) -> OrchestrationResult:
        del command
        endpoint = self._running_endpoint()
        cleaned = self._components(endpoint).registry.clean_all()
        result = OrchestrationResult(warnings=list(cleaned.warnings))
        result.lines.extend(f"Removed workspace {name}" for name in cleaned.removed)
        if not cleaned.removed:
            result.lines.append("No workspaces to remove.")
        return result

    def _destroy(self, command: DestroyCommand) -> OrchestrationResult:
        del command
        destroyed = self.controller.destroy(self.mount)
        line = "VM destroyed." if destroyed.destroyed else "No VM to destroy."
        return OrchestrationResult(lines=[line], warnings=list(destroyed.warnings))


def build_orchestrator(
    config: AppConfig,
    *,
    runner: SubprocessRunner = subprocess.run,
) -> Orchestrator:
    backend = TerraformBackend(
        config.terraform_path,
        vm_name=config.vm_name,
        libvirt_uri=config.libvirt_uri,
        runner=runner,
    )
    controller = VmController(
        backend,
        defaults=ResourceSpec(memory_mb=config.memory_mb, vcpus=config.vcpus, disk_gb=config.disk_gb),
        shell_factory=lambda endpoint: RemoteShell(
            endpoint, runner=runner, timeout_seconds=config.remote_timeout_seconds
        ),
        boot_timeout_seconds=config.boot_timeout_seconds,
        boot_poll_seconds=config.boot_poll_seconds,
        boot_wait_retries=config.boot_wait_retries,
        network_subnet=config.network_subnet,
        runner=runner,
    )
    mount = MountManager(config.mount_path, runner=runner, timeout_seconds=config.mount_timeout_seconds)
    return Orchestrator(
        controller,
        mount,
        runner=runner,
        remote_timeout_seconds=config.remote_timeout_seconds,
    )
