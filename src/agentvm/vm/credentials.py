"""Credential resolution and creation-time delivery to provisioning.

Credentials are resolved once per VM creation and handed to the backend as a
path variable. The backend writes them inside the guest with restrictive
permissions; nothing is copied or cached on the host, and later connects never
re-inject them.
"""

from __future__ import annotations

import logging as py_logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

from agentvm.errors import AgentVmError, CredentialsNotFound, ExitCode
from agentvm.vm.models import VmState

logger = py_logging.getLogger(__name__)

CREDENTIALS_ENV_VARS = ("GOOGLE_APPLICATION_CREDENTIALS", "GCP_CREDENTIALS_PATH")
DEFAULT_CREDENTIALS_PATH = Path("~/.config/gcloud/application_default_credentials.json")
VERTEX_PROJECT_ENV = "ANTHROPIC_VERTEX_PROJECT_ID"
VERTEX_REGION_ENV = "CLOUD_ML_REGION"
DEFAULT_VERTEX_REGION = "us-central1"

CredentialOrigin = Literal["explicit", "environment", "default"]


@dataclass(frozen=True)
class CredentialMaterial:
    source_path: Path
    origin: CredentialOrigin
    vertex_project_id: str | None = None
    vertex_region: str | None = None


class _StatefulController(Protocol):
    def current_state(self) -> VmState: ...


def _readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def _candidates(
    explicit_path: str | Path | None,
    env: Mapping[str, str],
) -> list[tuple[Path, CredentialOrigin]]:
    candidates: list[tuple[Path, CredentialOrigin]] = []
    if explicit_path:
        candidates.append((Path(explicit_path).expanduser(), "explicit"))
    for name in CREDENTIALS_ENV_VARS:
        value = env.get(name, "").strip()
        if value:
            candidates.append((Path(value).expanduser(), "environment"))
    try:
        candidates.append((DEFAULT_CREDENTIALS_PATH.expanduser(), "default"))
    except RuntimeError:
        logger.debug("Home directory unknown; skipping default credentials path")
    return candidates


def resolve(
    explicit_path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    vertex_project_id: str | None = None,
    vertex_region: str | None = None,
) -> CredentialMaterial | None:
    """First readable credentials file; explicit Vertex settings are attached to it."""
    environ = os.environ if env is None else env
    for path, origin in _candidates(explicit_path, environ):
        if _readable_file(path):
            logger.info("Using %s credentials from %s", origin, path)
            return CredentialMaterial(
                source_path=path,
                origin=origin,
                vertex_project_id=vertex_project_id,
                vertex_region=vertex_region,
            )
        if origin == "explicit":
            logger.warning("Explicit credentials path is not a readable file: %s", path)

    notice = CredentialsNotFound(
        "No credentials file found.",
        hint="The VM will rely on API key authentication; pass --gcp-credentials to use Vertex AI.",
    )
    logger.info("%s", notice)
    return None


def deliver(
    material: CredentialMaterial | None,
    controller: _StatefulController,
    *,
    env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Provisioning variables carrying ``material``; only valid while the VM is absent."""
    state = controller.current_state()
    if state is not VmState.ABSENT:
        logger.error("Credential delivery refused for existing VM state=%s", state.value)
        raise AgentVmError(
            "Credentials can only be injected when the VM is created.",
            code=ExitCode.VALIDATION_ERROR,
            hint="Run `agentvm destroy` and connect again to provision with new credentials.",
        )
    if material is None:
        return {}

    environ = os.environ if env is None else env
    variables = {"gcp_service_account_key_path": str(material.source_path)}
    project = material.vertex_project_id or environ.get(VERTEX_PROJECT_ENV, "").strip()
    region = material.vertex_region or environ.get(VERTEX_REGION_ENV, "").strip() or DEFAULT_VERTEX_REGION
    if project:
        logger.info("Configuring Vertex AI project=%s region=%s", project, region)
        variables["vertex_project_id"] = project
        variables["vertex_region"] = region
    else:
        logger.warning(
            "Credentials provided but neither --vertex-project-id nor %s is set; "
            "Vertex AI integration will not work in the VM",
            VERTEX_PROJECT_ENV,
        )
    return variables
