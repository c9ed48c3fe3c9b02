from __future__ import annotations

from pathlib import Path

import pytest

from agentvm.errors import AgentVmError, ExitCode
from agentvm.vm import credentials
from agentvm.vm.credentials import CredentialMaterial, deliver, resolve
from agentvm.vm.models import VmState

pytestmark = pytest.mark.security


class _Controller:
    def __init__(self, state: VmState) -> None:
        self.state = state

    def current_state(self) -> VmState:
        return self.state


def _key(tmp_path: Path, name: str) -> Path:
    path = tmp_path / name
    path.write_text('{"type": "service_account"}', encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _no_default_credentials(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(credentials, "DEFAULT_CREDENTIALS_PATH", tmp_path / "adc" / "missing.json")


def test_explicit_path_wins(tmp_path: Path) -> None:
    explicit = _key(tmp_path, "explicit.json")
    env_key = _key(tmp_path, "env.json")

    material = resolve(explicit, env={"GOOGLE_APPLICATION_CREDENTIALS": str(env_key)})

    assert material == CredentialMaterial(source_path=explicit, origin="explicit")


def test_environment_precedence_order(tmp_path: Path) -> None:
    first = _key(tmp_path, "gac.json")
    second = _key(tmp_path, "gcp.json")

    material = resolve(env={"GOOGLE_APPLICATION_CREDENTIALS": str(first), "GCP_CREDENTIALS_PATH": str(second)})
    assert material is not None
    assert material.source_path == first
    assert material.origin == "environment"

    material = resolve(env={"GCP_CREDENTIALS_PATH": str(second)})
    assert material is not None
    assert material.source_path == second


def test_unreadable_explicit_path_falls_through(tmp_path: Path) -> None:
    env_key = _key(tmp_path, "env.json")

    material = resolve(tmp_path / "does-not-exist.json", env={"GCP_CREDENTIALS_PATH": str(env_key)})

    assert material is not None
    assert material.source_path == env_key


def test_default_path_used_last(monkeypatch, tmp_path: Path) -> None:
    default = _key(tmp_path, "application_default_credentials.json")
    monkeypatch.setattr(credentials, "DEFAULT_CREDENTIALS_PATH", default)

    material = resolve(env={})

    assert material == CredentialMaterial(source_path=default, origin="default")


def test_no_credentials_returns_none() -> None:
    assert resolve(env={}) is None


def test_deliver_refuses_for_existing_vm(tmp_path: Path) -> None:
    material = CredentialMaterial(source_path=_key(tmp_path, "k.json"), origin="explicit")

    for state in (VmState.RUNNING, VmState.STOPPED):
        with pytest.raises(AgentVmError) as exc_info:
            deliver(material, _Controller(state), env={})
        assert exc_info.value.code == ExitCode.VALIDATION_ERROR


def test_deliver_without_material_is_empty() -> None:
    assert deliver(None, _Controller(VmState.ABSENT), env={}) == {}


def test_deliver_passes_path_and_vertex_settings(tmp_path: Path) -> None:
    key = _key(tmp_path, "k.json")
    material = CredentialMaterial(source_path=key, origin="explicit")

    variables = deliver(material, _Controller(VmState.ABSENT), env={"ANTHROPIC_VERTEX_PROJECT_ID": "proj-1"})

    assert variables == {
        "gcp_service_account_key_path": str(key),
        "vertex_project_id": "proj-1",
        "vertex_region": "us-central1",
    }


def test_deliver_honours_region_override(tmp_path: Path) -> None:
    material = CredentialMaterial(source_path=_key(tmp_path, "k.json"), origin="environment")

    variables = deliver(
        material,
        _Controller(VmState.ABSENT),
        env={"ANTHROPIC_VERTEX_PROJECT_ID": "proj-1", "CLOUD_ML_REGION": "europe-west4"},
    )

    assert variables["vertex_region"] == "europe-west4"


def test_deliver_never_copies_the_key(tmp_path: Path) -> None:
    key = _key(tmp_path, "k.json")
    before = sorted(tmp_path.iterdir())

    deliver(CredentialMaterial(source_path=key, origin="explicit"), _Controller(VmState.ABSENT), env={})

    assert sorted(tmp_path.iterdir()) == before


def test_explicit_vertex_settings_beat_the_environment(tmp_path: Path) -> None:
    key = _key(tmp_path, "k.json")

    material = resolve(key, env={}, vertex_project_id="proj-9", vertex_region="asia-east1")
    assert material is not None
    variables = deliver(
        material,
        _Controller(VmState.ABSENT),
        env={"ANTHROPIC_VERTEX_PROJECT_ID": "proj-1", "CLOUD_ML_REGION": "europe-west4"},
    )

    assert variables["vertex_project_id"] == "proj-9"
    assert variables["vertex_region"] == "asia-east1"


def test_explicit_vertex_project_uses_environment_region(tmp_path: Path) -> None:
    material = resolve(_key(tmp_path, "k.json"), env={}, vertex_project_id="proj-9")
    assert material is not None

    variables = deliver(material, _Controller(VmState.ABSENT), env={"CLOUD_ML_REGION": "europe-west4"})

    assert variables["vertex_project_id"] == "proj-9"
    assert variables["vertex_region"] == "europe-west4"
