"""Single sshfs binding of a host directory to the VM workspace root."""

from __future__ import annotations

import errno
import logging as py_logging
import os
import re
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agentvm.errors import AgentVmError, ExitCode, MountUnavailable
from agentvm.vm.models import Endpoint

logger = py_logging.getLogger(__name__)

_UNMOUNT_TOOLS = (
    ("fusermount3", ["-u"]),
    ("fusermount", ["-u"]),
    ("umount", []),
)
_MOUNT_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape_mount_field(value: str) -> str:
    return _MOUNT_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), value)


class MountState(str, Enum):
    MOUNTED = "mounted"
    ABSENT = "absent"
    STALE = "stale"


@dataclass
class MountResult:
    state: MountState
    changed: bool = False
    warnings: list[AgentVmError] = field(default_factory=list)


def sshfs_options(endpoint: Endpoint) -> list[str]:
    options = [
        "reconnect",
        "ServerAliveInterval=15",
        "ServerAliveCountMax=3",
        f"IdentityFile={endpoint.key_path}",
        "StrictHostKeyChecking=no",
        "UserKnownHostsFile=/dev/null",
        "BatchMode=yes",
        f"port={endpoint.port}",
    ]
    return ["-o", ",".join(options)]


class MountManager:
    def __init__(
        self,
        mount_point: str | Path,
        *,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        which: Callable[[str], str | None] = shutil.which,
        mount_table: str | Path = "/proc/mounts",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.mount_point = Path(mount_point).expanduser()
        self.runner = runner
        self.which = which
        self.mount_table = Path(mount_table)
        self.timeout_seconds = timeout_seconds

    def _listed_in_mount_table(self) -> bool | None:
        try:
            table = self.mount_table.read_text(encoding="utf-8")
        except OSError:
            return None
        target = str(self.mount_point)
        for line in table.splitlines():
            fields = line.split()
            if len(fields) > 1 and _unescape_mount_field(fields[1]) == target:
                return True
        return False

    def state(self) -> MountState:
        try:
            os.lstat(self.mount_point)
        except FileNotFoundError:
            return MountState.ABSENT
        except OSError as exc:
            if exc.errno == errno.ENOTCONN:
                logger.debug("Mount point %s reports a disconnected transport", self.mount_point)
                return MountState.STALE
            return MountState.STALE if self._listed_in_mount_table() else MountState.ABSENT
        listed = self._listed_in_mount_table()
        if listed is None:
            # No kernel mount table on this host.
            listed = os.path.ismount(self.mount_point)
        return MountState.MOUNTED if listed else MountState.ABSENT

    def is_mounted(self) -> bool:
        return self.state() is MountState.MOUNTED

    def _run(self, command: list[str]) -> subprocess.CompletedProcess:
        logger.debug("Running mount command=%s", command)
        return self.runner(
            command,
            capture_output=True,
            text=True,
            check=False,
            timeout=self.timeout_seconds,
        )

    def ensure_mounted(self, endpoint: Endpoint) -> MountResult:
        current = self.state()
        if current is MountState.MOUNTED:
            logger.debug("Mount already active path=%s", self.mount_point)
            return MountResult(state=current)

        if self.which("sshfs") is None:
            warning = MountUnavailable(
                "sshfs is not installed; workspaces are not mounted on the host.",
                hint="Install sshfs to browse workspaces locally; remote shell workflows keep working.",
            )
            logger.warning("%s", warning)
            return MountResult(state=current, warnings=[warning])

        if current is MountState.STALE:
            logger.warning("Stale mount detected at %s; unmounting before rebinding", self.mount_point)
            self.unmount()

        try:
            self.mount_point.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            warning = MountUnavailable(
                f"Could not create mount point {self.mount_point}: {exc}",
                hint="Choose a writable mount_point in ~/.config/agentvm/config.toml.",
            )
            logger.warning("%s", warning)
            return MountResult(state=MountState.ABSENT, warnings=[warning])

        remote = f"{endpoint.target}:{endpoint.workspace_root}"
        command = ["sshfs", *sshfs_options(endpoint), remote, str(self.mount_point)]
        try:
            result = self._run(command)
        except subprocess.TimeoutExpired:
            result = None
        if result is None or result.returncode != 0:
            details = "sshfs timed out" if result is None else (result.stderr or "").strip()
            warning = MountUnavailable(
                f"Could not mount {remote} at {self.mount_point}.",
                hint=details or "Check that the VM is reachable and sshfs works.",
            )
            logger.warning("%s", warning)
            return MountResult(state=self.state(), warnings=[warning])

        logger.info("Mounted %s at %s", remote, self.mount_point)
        return MountResult(state=MountState.MOUNTED, changed=True)

    def _unmount_command(self) -> list[str] | None:
        for tool, args in _UNMOUNT_TOOLS:
            if self.which(tool) is not None:
                return [tool, *args, str(self.mount_point)]
        return None

    def unmount(self) -> MountResult:
        """Release the binding; safe to call when nothing is mounted.

        Callers that also fetch from a workspace must run the dirty check
        before calling this: host editors lose their buffers once the paths vanish.
        """
        current = self.state()
        if current is MountState.ABSENT:
            logger.debug("Unmount skipped; nothing mounted at %s", self.mount_point)
            return MountResult(state=current)

        command = self._unmount_command()
        if command is None:
            logger.error("No unmount tool found for %s", self.mount_point)
            raise AgentVmError(
                f"Cannot unmount {self.mount_point}: no fusermount or umount available.",
                code=ExitCode.RUNTIME_ERROR,
                hint=f"Unmount {self.mount_point} manually.",
            )
        if current is MountState.STALE and command[0] != "umount":
            command.insert(1, "-z")

        try:
            result = self._run(command)
        except subprocess.TimeoutExpired as exc:
            raise AgentVmError(
                f"Unmount of {self.mount_point} timed out.",
                code=ExitCode.RUNTIME_ERROR,
                hint=f"Close programs using {self.mount_point} and run `fusermount -u {self.mount_point}`.",
            ) from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.error("Unmount failed path=%s stderr=%s", self.mount_point, stderr)
            raise AgentVmError(
                f"Failed to unmount {self.mount_point}.",
                code=ExitCode.RUNTIME_ERROR,
                hint=stderr or f"Close programs using {self.mount_point} and retry.",
            )
        logger.info("Unmounted %s", self.mount_point)
        return MountResult(state=MountState.ABSENT, changed=True)

    def forget(self, name: str) -> bool:
        """Drop host residue for a removed workspace.

        Only an empty directory left under an unbound mount point is removed;
        while mounted the path belongs to the guest.
        """
        if self.state() is not MountState.ABSENT:
            return False
        leftover = self.mount_point / name
        if not leftover.is_dir() or leftover.is_symlink():
            return False
        try:
            leftover.rmdir()
        except OSError:
            logger.warning("Host residue for workspace %s is not empty; left in place: %s", name, leftover)
            return False
        logger.debug("Removed host residue for workspace %s", name)
        return True
