"""Move commits between a host repository and a workspace clone in the VM."""

from __future__ import annotations

import logging as py_logging
import os
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from agentvm.errors import AgentVmError, DirtyWorkingTree, ExitCode, GitSyncError
from agentvm.remote.shell import RemoteShell, ssh_transport_command
from agentvm.vm.models import Endpoint
from agentvm.workspace.registry import Workspace, WorkspaceRegistry

logger = py_logging.getLogger(__name__)

_REJECTION_MARKERS = (
    "non-fast-forward",
    "[rejected]",
    "fetch first",
    "not possible to fast-forward",
    "diverging branches",
    "rejected",
)


@dataclass
class SyncResult:
    branch: str
    workspace: str
    commit: str = ""
    branch_created: bool = False
    working_tree_updated: bool = False
    warnings: list[AgentVmError] = field(default_factory=list)


def remote_url(endpoint: Endpoint, workspace: Workspace) -> str:
    return f"ssh://{endpoint.user}@{endpoint.host}:{endpoint.port}{workspace.path}"


def _looks_rejected(stderr: str) -> bool:
    text = stderr.lower()
    return any(marker in text for marker in _REJECTION_MARKERS)


def current_branch(
    repo_dir: str | Path,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> str:
    result = runner(
        ["git", "-C", str(repo_dir), "symbolic-ref", "--quiet", "--short", "HEAD"],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        return ""
    return (result.stdout or "").strip()


def repository_name(
    repo_dir: str | Path,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> str:
    result = runner(
        ["git", "-C", str(repo_dir), "rev-parse", "--show-toplevel"],
        capture_output=True,
        text=True,
        check=False,
    )
    top = (result.stdout or "").strip()
    if result.returncode != 0 or not top:
        logger.error("Not a git repository: %s stderr=%s", repo_dir, (result.stderr or "").strip())
        raise AgentVmError(
            f"Not a git repository: {repo_dir}",
            code=ExitCode.GIT_ERROR,
            hint="Run agentvm from inside a git repository or pass --repo.",
        )
    return Path(top).name


def validate_branch_name(branch: str) -> str:
    value = branch.strip()
    if not value or value.startswith("-") or any(char.isspace() or char in "~^:?*[\\" for char in value):
        logger.error("Rejected branch name: %r", branch)
        raise AgentVmError(
            f"Invalid branch name: {branch!r}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Use a valid git branch name such as feature-x.",
        )
    return value


class GitSync:
    def __init__(
        self,
        registry: WorkspaceRegistry,
        *,
        endpoint: Endpoint,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        url_for: Callable[[Workspace], str] | None = None,
    ) -> None:
        self.registry = registry
        self.endpoint = endpoint
        self.runner = runner
        self.url_for = url_for or (lambda workspace: remote_url(endpoint, workspace))

    @property
    def shell(self) -> RemoteShell:
        return self.registry.shell

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_SSH_COMMAND"] = ssh_transport_command(self.endpoint)
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env

    def _git(self, repo_dir: str | Path, args: list[str]) -> subprocess.CompletedProcess:
        command = ["git", "-C", str(repo_dir), *args]
        logger.debug("Running host git command=%s", command)
        return self.runner(command, capture_output=True, text=True, check=False, env=self._env())

    def _rev(self, repo_dir: str | Path, ref: str) -> str:
        result = self._git(repo_dir, ["rev-parse", "--verify", "--quiet", ref])
        if result.returncode != 0:
            return ""
        return (result.stdout or "").strip()

    def ensure_local_branch(self, repo_dir: str | Path, branch: str) -> bool:
        validate_branch_name(branch)
        if self._rev(repo_dir, f"refs/heads/{branch}"):
            return False
        result = self._git(repo_dir, ["branch", branch])
        if result.returncode != 0:
            logger.error("Failed to create local branch=%s stderr=%s", branch, result.stderr.strip())
            raise GitSyncError(
                f"Failed to create branch {branch} in {repo_dir}.",
                hint=result.stderr.strip() or "Make sure the repository has at least one commit.",
            )
        logger.info("Created local branch %s from current HEAD", branch)
        return True

    def push(self, repo_dir: str | Path, branch: str, workspace: Workspace) -> SyncResult:
        created = self.ensure_local_branch(repo_dir, branch)
        url = self.url_for(workspace)
        refspec = f"refs/heads/{branch}:refs/heads/{branch}"
        logger.debug("Pushing branch=%s to workspace=%s url=%s", branch, workspace.name, url)
        result = self._git(repo_dir, ["push", "--quiet", url, refspec])
        if result.returncode != 0:
            stderr = result.stderr.strip()
            logger.error("git push failed branch=%s workspace=%s stderr=%s", branch, workspace.name, stderr)
            if _looks_rejected(stderr):
                raise GitSyncError(
                    f"Push of {branch} to {workspace.name} was rejected: the workspace has commits the host lacks.",
                    hint=f"Run `agentvm fetch {branch}`, merge or rebase on the host, then push again.",
                )
            raise GitSyncError(
                f"Failed to push {branch} to workspace {workspace.name}.",
                hint=stderr or "Check that the VM is reachable with `agentvm status`.",
            )

        path = shlex.quote(str(workspace.path))
        checkout = self.shell.run(f"git -C {path} checkout -q {shlex.quote(branch)}")
        if not checkout.ok:
            logger.error("Guest checkout failed branch=%s stderr=%s", branch, checkout.stderr.strip())
            raise GitSyncError(
                f"Pushed {branch} but could not check it out in {workspace.name}.",
                hint=checkout.stderr.strip() or "Commit or stash changes inside the workspace and retry.",
            )
        commit = self._rev(repo_dir, f"refs/heads/{branch}")
        logger.info("Pushed %s (%s) to workspace %s", branch, commit[:12], workspace.name)
        return SyncResult(branch=branch, workspace=workspace.name, commit=commit, branch_created=created)

    def dirty_warning(self, workspace: Workspace) -> DirtyWorkingTree | None:
        if not self.registry.is_dirty(workspace):
            return None
        warning = DirtyWorkingTree(
            f"Workspace {workspace.name} has uncommitted changes that will NOT be fetched.",
            hint="Commit them inside the workspace and fetch again to bring them to the host.",
        )
        logger.warning("%s", warning)
        return warning

    def fetch(
        self,
        repo_dir: str | Path,
        branch: str,
        workspace: Workspace,
    ) -> SyncResult:
        warnings: list[AgentVmError] = []
        warning = self.dirty_warning(workspace)
        if warning is not None:
            warnings.append(warning)

        url = self.url_for(workspace)
        checked_out = current_branch(repo_dir, self.runner) == branch
        if checked_out:
            args = ["pull", "--quiet", "--ff-only", url, branch]
        else:
            args = ["fetch", "--quiet", url, f"refs/heads/{branch}:refs/heads/{branch}"]
        logger.debug("Fetching branch=%s from workspace=%s checked_out=%s", branch, workspace.name, checked_out)
        result = self._git(repo_dir, args)
        if result.returncode != 0:
            stderr = result.stderr.strip()
            logger.error("git %s failed branch=%s stderr=%s", args[0], branch, stderr)
            if _looks_rejected(stderr):
                raise GitSyncError(
                    f"Host branch {branch} and workspace {workspace.name} have diverged.",
                    hint=f"Push or merge host commits first (`git pull {url} {branch}` on the host), then fetch again.",
                )
            raise GitSyncError(
                f"Failed to fetch {branch} from workspace {workspace.name}.",
                hint=stderr or "Check that the branch exists in the workspace with `agentvm connect`.",
            )

        commit = self._rev(repo_dir, f"refs/heads/{branch}")
        logger.info("Fetched %s (%s) from workspace %s", branch, commit[:12], workspace.name)
        return SyncResult(
            branch=branch,
            workspace=workspace.name,
            commit=commit,
            working_tree_updated=checked_out,
            warnings=warnings,
        )
