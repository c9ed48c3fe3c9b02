"""Singleton VM lifecycle controller.

VM state is re-derived from the provisioning backend on every call; nothing
about the VM is cached between invocations.
"""

from __future__ import annotations

import logging as py_logging
import subprocess
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from agentvm.errors import AgentVmError, ProvisioningFailed, ResourceOverrideIgnored, Unreachable
from agentvm.provisioning.network import detect_subnet, host_identity_variables
from agentvm.remote.shell import RemoteShell
from agentvm.retry import RecoverableError, RetryPolicy, run_with_retry
from agentvm.vm.credentials import CredentialMaterial, deliver
from agentvm.vm.models import (
    EnsureResult,
    Endpoint,
    ResourceOverrides,
    ResourceSpec,
    VmState,
    VmStatus,
)

logger = py_logging.getLogger(__name__)

RESOURCE_VARIABLES = {
    "memory_mb": "vm_memory_mb",
    "vcpus": "vm_vcpus",
    "disk_gb": "vm_disk_gb",
}


class ProvisioningBackend(Protocol):
    @property
    def ssh_key_path(self) -> Path: ...

    def state(self, *, read_only: bool = False) -> VmState: ...

    def apply(self, variables: Mapping[str, str]) -> None: ...

    def destroy(self) -> None: ...

    def output(self, key: str) -> str | None: ...


class Unmountable(Protocol):
    def unmount(self) -> object: ...


@dataclass
class DestroyResult:
    destroyed: bool
    warnings: list[AgentVmError] = field(default_factory=list)


def _resource_variables(spec: ResourceSpec) -> dict[str, str]:
    return {variable: str(getattr(spec, name)) for name, variable in RESOURCE_VARIABLES.items()}


def forget_host_key(
    host: str,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> None:
    try:
        runner(["ssh-keygen", "-R", host], capture_output=True, text=True, check=False)
    except OSError:
        logger.debug("ssh-keygen unavailable; stale host key for %s left in place", host)


class VmController:
    def __init__(
        self,
        backend: ProvisioningBackend,
        *,
        defaults: ResourceSpec,
        shell_factory: Callable[[Endpoint], RemoteShell] | None = None,
        boot_timeout_seconds: float = 120.0,
        boot_poll_seconds: float = 2.0,
        boot_wait_retries: int = 3,
        network_subnet: int | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.defaults = defaults
        self.shell_factory = shell_factory or (lambda endpoint: RemoteShell(endpoint))
        self.boot_timeout_seconds = boot_timeout_seconds
        self.boot_poll_seconds = boot_poll_seconds
        self.boot_wait_retries = boot_wait_retries
        self.network_subnet = network_subnet
        self.runner = runner
        self.sleep = sleep
        self.clock = clock

    def current_state(self) -> VmState:
        return self.backend.state()

    def endpoint(self) -> Endpoint | None:
        host = self.backend.output("vm_ip")
        user = self.backend.output("default_user")
        if not host or not user:
            return None
        return Endpoint(host=host, user=user, key_path=self.backend.ssh_key_path)

    def recorded_resources(self) -> ResourceSpec | None:
        values: dict[str, int] = {}
        for name, variable in RESOURCE_VARIABLES.items():
            raw = self.backend.output(variable)
            if raw is None or not raw.isdigit():
                return None
            values[name] = int(raw)
        return ResourceSpec(**values)

    def status(self) -> VmStatus:
        state = self.backend.state(read_only=True)
        if state is VmState.ABSENT:
            return VmStatus(state=state)
        return VmStatus(state=state, endpoint=self.endpoint(), resources=self.recorded_resources())

    def _override_warning(
        self, overrides: ResourceOverrides | None, recorded: ResourceSpec | None
    ) -> ResourceOverrideIgnored | None:
        if overrides is None or overrides.is_empty():
            return None
        conflicts = overrides.conflicts_with(recorded)
        if not conflicts:
            return None
        current = recorded.describe() if recorded else "unknown"
        warning = ResourceOverrideIgnored(
            f"Resource overrides ignored for existing VM ({', '.join(conflicts)}); current {current}.",
            hint="Resources are fixed at creation. Run `agentvm destroy`, then connect with the new values.",
        )
        logger.warning("%s", warning)
        return warning

    def _require_endpoint(self) -> Endpoint:
        endpoint = self.endpoint()
        if endpoint is None:
            logger.error("Provisioning outputs missing vm_ip/default_user")
            raise ProvisioningFailed(
                "VM endpoint is not available from provisioning outputs.",
                hint="Run `terraform output` to inspect, or `agentvm destroy` and retry creation.",
            )
        return endpoint

    def _wait_window(self, shell: RemoteShell) -> None:
        deadline = self.clock() + self.boot_timeout_seconds
        while True:
            if shell.probe():
                return
            if self.clock() >= deadline:
                raise RecoverableError(
                    f"{shell.endpoint.host} not reachable within {self.boot_timeout_seconds:g}s"
                )
            self.sleep(self.boot_poll_seconds)

    def wait_until_reachable(self, endpoint: Endpoint) -> None:
        shell = self.shell_factory(endpoint)
        policy = RetryPolicy(max_attempts=self.boot_wait_retries, initial_backoff_seconds=self.boot_poll_seconds)
        try:
            run_with_retry(
                lambda: self._wait_window(shell),
                policy=policy,
                sleep=self.sleep,
                description="VM reachability wait",
            )
        except RecoverableError as exc:
            logger.error("VM unreachable after %s boot windows host=%s", self.boot_wait_retries, endpoint.host)
            raise Unreachable(
                f"Cannot connect to VM at {endpoint.host}.",
                hint="Check that the VM is running with `virsh list --all`; if it is stuck, run `agentvm destroy`, then retry creation.",
            ) from exc
        logger.debug("VM reachable host=%s", endpoint.host)

    def _base_variables(self, spec: ResourceSpec) -> dict[str, str]:
        variables = host_identity_variables()
        subnet = self.network_subnet if self.network_subnet is not None else detect_subnet(self.runner)
        variables["network_subnet_third_octet"] = str(subnet)
        variables.update(_resource_variables(spec))
        return variables

    def _create(
        self,
        overrides: ResourceOverrides | None,
        credentials: CredentialMaterial | None,
    ) -> EnsureResult:
        spec = (overrides or ResourceOverrides()).apply_to(self.defaults)
        variables = deliver(credentials, self)
        variables.update(self._base_variables(spec))
        logger.info("Creating VM %s", spec.describe())
        self.backend.apply(variables)

        endpoint = self._require_endpoint()
        forget_host_key(endpoint.host, self.runner)
        self.wait_until_reachable(endpoint)
        return EnsureResult(endpoint=endpoint, created=True)

    def ensure_running(
        self,
        overrides: ResourceOverrides | None = None,
        credentials: CredentialMaterial | None = None,
    ) -> EnsureResult:
        state = self.backend.state()
        logger.debug("ensure_running state=%s", state.value)
        if state is VmState.ABSENT:
            return self._create(overrides, credentials)

        recorded = self.recorded_resources()
        warnings: list[AgentVmError] = []
        warning = self._override_warning(overrides, recorded)
        if warning is not None:
            warnings.append(warning)

        if state is VmState.RUNNING:
            return EnsureResult(endpoint=self._require_endpoint(), created=False, warnings=warnings)

        # Stopped: re-apply with the values the VM was created with.
        spec = recorded or self.defaults
        variables = self._base_variables(spec)
        logger.info("Starting existing VM %s", spec.describe())
        self.backend.apply(variables)
        endpoint = self._require_endpoint()
        self.wait_until_reachable(endpoint)
        return EnsureResult(endpoint=endpoint, created=False, started=True, warnings=warnings)

    def destroy(self, mount: Unmountable | None = None) -> DestroyResult:
        state = self.backend.state()
        if mount is not None:
            mount.unmount()
        if state is VmState.ABSENT:
            logger.info("destroy: no VM recorded; nothing to do")
            return DestroyResult(destroyed=False)
        self.backend.destroy()
        remaining = self.backend.state()
        if remaining is not VmState.ABSENT:
            logger.error("destroy reported success but state=%s remains", remaining.value)
            raise ProvisioningFailed(
                "Destroy finished but the VM is still recorded.",
                hint="Inspect with `terraform state list` and `virsh list --all`, then rerun `agentvm destroy`.",
            )
        logger.info("VM destroyed")
        return DestroyResult(destroyed=True)
