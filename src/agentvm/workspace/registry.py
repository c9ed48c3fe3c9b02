"""Per-branch workspaces inside the VM, each an independent git clone."""

from __future__ import annotations

import hashlib
import logging as py_logging
import re
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Protocol

from typing_extensions import TypedDict

from agentvm.errors import (
    AgentVmError,
    DirtyWorkingTree,
    ExitCode,
    WorkspaceCorrupt,
)
from agentvm.remote.shell import RemoteShell

logger = py_logging.getLogger(__name__)

FALLBACK_GIT_NAME = "Agent User"
FALLBACK_GIT_EMAIL = "agent@localhost"

_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")
_STATE_MARKERS = ("present", "corrupt", "absent")
_DIGEST_LENGTH = 8


class WorkspaceState(str, Enum):
    PRESENT = "present"
    CORRUPT = "corrupt"
    ABSENT = "absent"


class WorkspaceEntry(TypedDict):
    name: str
    last_modified: datetime


@dataclass(frozen=True)
class Workspace:
    name: str
    path: PurePosixPath
    repo: str = ""
    branch: str = ""


@dataclass
class EnsureWorkspaceResult:
    workspace: Workspace
    created: bool


@dataclass
class CleanResult:
    removed: list[str] = field(default_factory=list)
    warnings: list[AgentVmError] = field(default_factory=list)


class HostResidue(Protocol):
    def forget(self, name: str) -> bool: ...


def _safe(value: str) -> str:
    cleaned = _SANITIZE_PATTERN.sub("-", value).strip("-.")
    return cleaned or "default"


def workspace_name(repo: str, branch: str) -> str:
    """Stable directory name for a (repository, branch) pair.

    The readable prefix is lossy (``a-b``/``c`` and ``a``/``b-c`` sanitize to the
    same text), so the suffix hashes the exact pair.
    """
    digest = hashlib.sha1(f"{repo}\0{branch}".encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    return f"{_safe(repo)}-{_safe(branch)}-{digest}"


def validate_workspace_name(name: str) -> str:
    value = name.strip()
    if not value or value in {".", ".."} or "/" in value or "\x00" in value or value.startswith("-"):
        logger.error("Rejected workspace name: %r", name)
        raise AgentVmError(
            f"Invalid workspace name: {name!r}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Use a name shown by `agentvm list`.",
        )
    return value


def parse_workspace_listing(raw: str) -> list[WorkspaceEntry]:
    entries: dict[str, WorkspaceEntry] = {}
    for line in raw.splitlines():
        name, sep, stamp = line.strip().partition("\t")
        if not sep or not name:
            continue
        try:
            modified = datetime.fromtimestamp(float(stamp), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            continue
        entries[name] = WorkspaceEntry(name=name, last_modified=modified)
    return [entries[name] for name in sorted(entries)]


def host_git_identity(
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> tuple[str, str]:
    values: list[str] = []
    for key, fallback in (("user.name", FALLBACK_GIT_NAME), ("user.email", FALLBACK_GIT_EMAIL)):
        try:
            result = runner(["git", "config", "--get", key], capture_output=True, text=True, check=False)
        except OSError:
            values.append(fallback)
            continue
        value = (result.stdout or "").strip() if result.returncode == 0 else ""
        values.append(value or fallback)
    return values[0], values[1]


class WorkspaceRegistry:
    def __init__(
        self,
        shell: RemoteShell,
        root: str | PurePosixPath,
        *,
        host_runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        residue: HostResidue | None = None,
    ) -> None:
        self.shell = shell
        self.root = PurePosixPath(root)
        self.host_runner = host_runner
        self.residue = residue

    def path_for(self, name: str) -> PurePosixPath:
        return self.root / validate_workspace_name(name)

    def workspace(self, name: str, *, repo: str = "", branch: str = "") -> Workspace:
        return Workspace(name=name, path=self.path_for(name), repo=repo, branch=branch)

    def list(self) -> list[WorkspaceEntry]:
        root = shlex.quote(str(self.root))
        script = (
            f"test -d {root} || exit 0; "
            f"find {root} -mindepth 1 -maxdepth 1 -type d -printf '%f\\t%T@\\n'"
        )
        result = self.shell.run(script)
        if not result.ok:
            logger.error("Workspace listing failed root=%s stderr=%s", self.root, result.stderr.strip())
            raise AgentVmError(
                f"Failed to list workspaces under {self.root}",
                code=ExitCode.RUNTIME_ERROR,
                hint=result.stderr.strip() or "Check that the VM is reachable with `agentvm status`.",
            )
        entries = parse_workspace_listing(result.stdout)
        logger.debug("Discovered %s workspaces under root=%s", len(entries), self.root)
        return entries

    def state(self, name: str) -> WorkspaceState:
        path = shlex.quote(str(self.path_for(name)))
        script = (
            f"if [ -e {path}/.git ]; then echo present; "
            f"elif [ -e {path} ]; then echo corrupt; "
            "else echo absent; fi"
        )
        result = self.shell.run(script)
        marker = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        if not result.ok or marker not in _STATE_MARKERS:
            logger.error("Workspace state check failed name=%s stderr=%s", name, result.stderr.strip())
            raise AgentVmError(
                f"Could not inspect workspace {name}",
                code=ExitCode.RUNTIME_ERROR,
                hint=result.stderr.strip() or "Check that the VM is reachable with `agentvm status`.",
            )
        return WorkspaceState(marker)

    def require(self, name: str) -> Workspace:
        state = self.state(name)
        if state is WorkspaceState.CORRUPT:
            raise self._corrupt(name)
        if state is WorkspaceState.ABSENT:
            raise AgentVmError(
                f"Workspace {name} does not exist.",
                code=ExitCode.WORKSPACE_ERROR,
                hint="Create it with `agentvm connect` or `agentvm push`.",
            )
        return self.workspace(name)

    def _corrupt(self, name: str) -> WorkspaceCorrupt:
        logger.error("Workspace %s exists without git metadata", name)
        return WorkspaceCorrupt(
            f"Workspace {name} exists but is not a git repository.",
            hint=f"Inspect it with `agentvm connect`, then run `agentvm clean {name}` to recreate it.",
        )

    def ensure(self, repo: str, branch: str) -> EnsureWorkspaceResult:
        name = workspace_name(repo, branch)
        workspace = self.workspace(name, repo=repo, branch=branch)
        state = self.state(name)
        if state is WorkspaceState.PRESENT:
            logger.debug("Workspace exists name=%s", name)
            return EnsureWorkspaceResult(workspace=workspace, created=False)
        if state is WorkspaceState.CORRUPT:
            raise self._corrupt(name)

        user_name, user_email = host_git_identity(self.host_runner)
        path = shlex.quote(str(workspace.path))
        script = " && ".join(
            [
                f"mkdir -p {path}",
                f"git -C {path} init -q",
                f"git -C {path} config user.name {shlex.quote(user_name)}",
                f"git -C {path} config user.email {shlex.quote(user_email)}",
                # Lets pushes to the checked-out branch update a clean working tree.
                f"git -C {path} config receive.denyCurrentBranch updateInstead",
            ]
        )
        result = self.shell.run(script)
        if not result.ok:
            logger.error("Workspace creation failed name=%s stderr=%s", name, result.stderr.strip())
            raise AgentVmError(
                f"Failed to create workspace {name}",
                code=ExitCode.WORKSPACE_ERROR,
                hint=result.stderr.strip() or "Check disk space and permissions inside the VM.",
            )
        logger.info("Created workspace %s at %s", name, workspace.path)
        return EnsureWorkspaceResult(workspace=workspace, created=True)

    def is_dirty(self, workspace: Workspace) -> bool:
        path = shlex.quote(str(workspace.path))
        result = self.shell.run(f"git -C {path} status --porcelain")
        if not result.ok:
            logger.error("Dirty check failed for %s stderr=%s", workspace.path, result.stderr.strip())
            raise AgentVmError(
                f"Dirty check failed for {workspace.name}",
                code=ExitCode.GIT_ERROR,
                hint=result.stderr.strip() or "Run git status inside the workspace.",
            )
        dirty = bool(result.stdout.strip())
        logger.debug("Dirty check path=%s dirty=%s", workspace.path, dirty)
        return dirty

    def has_branch(self, workspace: Workspace, branch: str) -> bool:
        path = shlex.quote(str(workspace.path))
        ref = shlex.quote(f"refs/heads/{branch}")
        result = self.shell.run(f"git -C {path} rev-parse --verify --quiet {ref}")
        logger.debug("Branch ref check path=%s branch=%s found=%s", workspace.path, branch, result.ok)
        return result.ok

    def _dirty_warning(self, workspace: Workspace) -> DirtyWorkingTree | None:
        try:
            dirty = self.is_dirty(workspace)
        except AgentVmError as exc:
            return DirtyWorkingTree(
                f"Could not check {workspace.name} for uncommitted changes before removal.",
                hint=exc.hint,
            )
        if not dirty:
            return None
        return DirtyWorkingTree(
            f"Workspace {workspace.name} had uncommitted changes; they were deleted.",
            hint="Use `agentvm fetch` before cleaning to keep committed work.",
        )

    def clean(self, name: str) -> CleanResult:
        workspace = self.workspace(name)
        outcome = CleanResult()
        if self.state(name) is WorkspaceState.ABSENT:
            logger.info("Workspace %s already absent", name)
            return outcome

        warning = self._dirty_warning(workspace)
        if warning is not None:
            logger.warning("%s", warning)
            outcome.warnings.append(warning)

        path = shlex.quote(str(workspace.path))
        result = self.shell.run(f"rm -rf -- {path} && test ! -e {path}")
        if not result.ok:
            logger.error("Workspace removal failed name=%s stderr=%s", name, result.stderr.strip())
            raise AgentVmError(
                f"Failed to remove workspace {name}",
                code=ExitCode.WORKSPACE_ERROR,
                hint=result.stderr.strip() or "Remove it manually via `agentvm connect`.",
            )
        if self.residue is not None:
            self.residue.forget(name)
        outcome.removed.append(name)
        logger.info("Removed workspace %s", name)
        return outcome

    def clean_all(self) -> CleanResult:
        outcome = CleanResult()
        for entry in self.list():
            single = self.clean(entry["name"])
            outcome.removed.extend(single.removed)
            outcome.warnings.extend(single.warnings)
        return outcome
