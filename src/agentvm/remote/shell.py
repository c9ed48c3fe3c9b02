"""Remote shell executor for the VM with per-call timeouts."""

from __future__ import annotations

import logging as py_logging
import shlex
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath

from agentvm.errors import AgentVmError, ExitCode, RemoteCommandTimeout
from agentvm.vm.models import Endpoint

logger = py_logging.getLogger(__name__)

PROBE_CONNECT_TIMEOUT_SECONDS = 5
_BASE_SSH_OPTIONS = (
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
    "-o",
    "LogLevel=ERROR",
)


@dataclass
class RuntimeResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def ssh_options(
    endpoint: Endpoint,
    *,
    batch: bool = True,
    connect_timeout: int = PROBE_CONNECT_TIMEOUT_SECONDS,
) -> list[str]:
    options = ["-i", str(endpoint.key_path), *_BASE_SSH_OPTIONS]
    if batch:
        options += ["-o", "BatchMode=yes"]
    options += ["-o", f"ConnectTimeout={connect_timeout}", "-p", str(endpoint.port)]
    return options


def build_ssh_command(
    endpoint: Endpoint,
    remote_command: str | None = None,
    *,
    tty: bool = False,
    connect_timeout: int = PROBE_CONNECT_TIMEOUT_SECONDS,
) -> list[str]:
    command = ["ssh", *ssh_options(endpoint, batch=not tty, connect_timeout=connect_timeout)]
    if tty:
        command.append("-t")
    command.append(endpoint.target)
    if remote_command:
        command.append(remote_command)
    return command


def ssh_transport_command(endpoint: Endpoint) -> str:
    """Value for ``GIT_SSH_COMMAND`` that authenticates with the VM key."""
    return shlex.join(["ssh", *ssh_options(endpoint)])


def bash_script(script: str) -> str:
    # ssh joins its arguments into a single string for the remote login shell.
    return shlex.join(["bash", "-c", script])


def session_script(workdir: str | PurePosixPath, command: str | None = None) -> str:
    cd = f"cd {shlex.quote(str(workdir))}"
    if command:
        return f"{cd} && {command}"
    return f"{cd} && exec bash -l"


class RemoteShell:
    def __init__(
        self,
        endpoint: Endpoint,
        *,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.endpoint = endpoint
        self.runner = runner
        self.timeout_seconds = timeout_seconds

    def run(self, script: str, *, timeout_seconds: float | None = None) -> RuntimeResult:
        """Run ``script`` with bash in the guest; never retried on timeout."""
        command = build_ssh_command(self.endpoint, bash_script(script))
        timeout = timeout_seconds or self.timeout_seconds
        logger.debug("Running remote command host=%s timeout=%s script=%s", self.endpoint.host, timeout, script)
        try:
            completed = self.runner(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            logger.error("Remote command timed out host=%s script=%s", self.endpoint.host, script)
            raise RemoteCommandTimeout(
                f"Remote command timed out after {timeout:g}s.",
                hint="Inspect the VM with `agentvm connect` before retrying; the command may have partially run.",
            ) from exc
        except FileNotFoundError as exc:
            logger.error("ssh executable not found")
            raise AgentVmError(
                "ssh is not installed on the host.",
                code=ExitCode.RUNTIME_ERROR,
                hint="Install an OpenSSH client and retry.",
            ) from exc

        result = RuntimeResult(
            command=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if not result.ok:
            logger.debug(
                "Remote command failed host=%s returncode=%s stderr=%s",
                self.endpoint.host,
                result.returncode,
                result.stderr.strip(),
            )
        return result

    def probe(self, *, connect_timeout: int = PROBE_CONNECT_TIMEOUT_SECONDS) -> bool:
        command = build_ssh_command(self.endpoint, "exit", connect_timeout=connect_timeout)
        try:
            completed = self.runner(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=connect_timeout + 5,
            )
        except subprocess.TimeoutExpired:
            logger.debug("Reachability probe timed out host=%s", self.endpoint.host)
            return False
        except FileNotFoundError as exc:
            raise AgentVmError(
                "ssh is not installed on the host.",
                code=ExitCode.RUNTIME_ERROR,
                hint="Install an OpenSSH client and retry.",
            ) from exc
        reachable = completed.returncode == 0
        logger.debug("Reachability probe host=%s reachable=%s", self.endpoint.host, reachable)
        return reachable

    def open_session(
        self,
        workdir: str | PurePosixPath,
        command: Sequence[str] | str | None = None,
    ) -> int:
        """Hand the terminal to an ssh session scoped to ``workdir``."""
        if isinstance(command, str):
            remote = command
        elif command:
            remote = shlex.join(command)
        else:
            remote = None
        interactive = remote is None
        ssh_command = build_ssh_command(
            self.endpoint,
            session_script(workdir, remote),
            tty=interactive,
        )
        logger.debug("Opening remote session interactive=%s command=%s", interactive, ssh_command)
        try:
            completed = self.runner(ssh_command, check=False)
        except FileNotFoundError as exc:
            raise AgentVmError(
                "ssh is not installed on the host.",
                code=ExitCode.RUNTIME_ERROR,
                hint="Install an OpenSSH client and retry.",
            ) from exc
        return int(completed.returncode)
