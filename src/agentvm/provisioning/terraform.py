"""Terraform/libvirt provisioning backend for the singleton VM."""

from __future__ import annotations

import logging as py_logging
import subprocess
from collections.abc import Callable, Mapping
from pathlib import Path

from agentvm.errors import AgentVmError, ExitCode, ProvisioningFailed
from agentvm.vm.models import VmState

logger = py_logging.getLogger(__name__)

_UNASSIGNED_OUTPUTS = {"", "IP not yet assigned"}
_RUNNING_DOMAIN_STATES = {"running"}


def _details(result: subprocess.CompletedProcess) -> str:
    stderr = (result.stderr or "").strip()
    if stderr:
        return stderr
    lines = (result.stdout or "").strip().splitlines()
    return "\n".join(lines[-20:])


class TerraformBackend:
    def __init__(
        self,
        directory: str | Path,
        *,
        vm_name: str,
        libvirt_uri: str = "qemu:///system",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.directory = Path(directory).expanduser()
        self.vm_name = vm_name
        self.libvirt_uri = libvirt_uri
        self.runner = runner

    @property
    def ssh_key_path(self) -> Path:
        return self.directory / "vm-ssh-key"

    def _terraform(self, args: list[str]) -> subprocess.CompletedProcess:
        command = ["terraform", f"-chdir={self.directory}", *args]
        logger.debug("Running terraform command=%s", command)
        try:
            return self.runner(command, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            logger.error("terraform executable not found")
            raise AgentVmError(
                "terraform is not installed on the host.",
                code=ExitCode.CONFIG_ERROR,
                hint="Install Terraform and retry.",
            ) from exc

    def ensure_initialized(self) -> None:
        self._require_directory()
        if (self.directory / ".terraform").is_dir():
            return
        logger.info("Terraform not initialized; running terraform init in %s", self.directory)
        result = self._terraform(["init", "-input=false"])
        if result.returncode != 0:
            logger.error("terraform init failed stderr=%s", _details(result))
            raise ProvisioningFailed(
                "terraform init failed.",
                hint=_details(result) or f"Run `terraform -chdir={self.directory} init` manually.",
            )

    def has_state(self) -> bool:
        result = self._terraform(["state", "list"])
        if result.returncode != 0:
            logger.error("terraform state list failed stderr=%s", _details(result))
            raise ProvisioningFailed(
                "Could not read provisioning state.",
                hint=_details(result) or f"Run `terraform -chdir={self.directory} state list` to inspect.",
            )
        return bool((result.stdout or "").strip())

    def domain_state(self) -> str:
        command = ["virsh", "-c", self.libvirt_uri, "domstate", self.vm_name]
        try:
            result = self.runner(command, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            logger.warning("virsh not found; cannot inspect domain %s", self.vm_name)
            return ""
        if result.returncode != 0:
            logger.debug("virsh domstate failed vm=%s stderr=%s", self.vm_name, (result.stderr or "").strip())
            return ""
        return (result.stdout or "").strip().lower()

    def _require_directory(self) -> None:
        if not self.directory.is_dir():
            logger.error("Terraform directory missing path=%s", self.directory)
            raise AgentVmError(
                f"Terraform configuration not found: {self.directory}",
                code=ExitCode.CONFIG_ERROR,
                hint="Set terraform_dir in ~/.config/agentvm/config.toml or AGENTVM_TERRAFORM_DIR.",
            )

    def state(self, *, read_only: bool = False) -> VmState:
        """Derive VM state; ``read_only`` never runs ``terraform init``."""
        if read_only:
            self._require_directory()
            if not (self.directory / ".terraform").is_dir():
                # Nothing can have been applied from an uninitialized directory.
                logger.debug("Terraform not initialized in %s; reporting absent", self.directory)
                return VmState.ABSENT
        else:
            self.ensure_initialized()
        if not self.has_state():
            return VmState.ABSENT
        # A state record without a live domain is treated as stopped so apply can converge it.
        if self.domain_state() in _RUNNING_DOMAIN_STATES:
            return VmState.RUNNING
        return VmState.STOPPED

    def apply(self, variables: Mapping[str, str]) -> None:
        self.ensure_initialized()
        args = ["apply", "-auto-approve", "-input=false"]
        for key, value in sorted(variables.items()):
            args += ["-var", f"{key}={value}"]
        logger.info("Applying provisioning state for vm=%s", self.vm_name)
        result = self._terraform(args)
        if result.returncode != 0:
            logger.error("terraform apply failed stderr=%s", _details(result))
            raise ProvisioningFailed(
                f"Provisioning apply failed for VM '{self.vm_name}'.",
                hint=(
                    f"{_details(result)}\nState was kept for inspection: "
                    f"`terraform -chdir={self.directory} state list`. "
                    "Run `agentvm destroy`, then retry creation."
                ),
            )

    def destroy(self) -> None:
        self.ensure_initialized()
        logger.info("Destroying provisioning state for vm=%s", self.vm_name)
        result = self._terraform(["destroy", "-auto-approve", "-input=false"])
        if result.returncode != 0:
            logger.error("terraform destroy failed stderr=%s", _details(result))
            raise ProvisioningFailed(
                f"Provisioning destroy failed for VM '{self.vm_name}'.",
                hint=(
                    f"{_details(result)}\nInspect with `terraform -chdir={self.directory} state list` "
                    f"and `virsh -c {self.libvirt_uri} list --all`, then rerun `agentvm destroy`."
                ),
            )

    def output(self, key: str) -> str | None:
        result = self._terraform(["output", "-raw", key])
        value = (result.stdout or "").strip()
        if result.returncode != 0 or value in _UNASSIGNED_OUTPUTS:
            logger.debug("terraform output unavailable key=%s", key)
            return None
        return value
