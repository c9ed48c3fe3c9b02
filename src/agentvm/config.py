"""XDG config loading."""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

DEFAULT_CONFIG_PATH = Path("~/.config/agentvm/config.toml").expanduser()
DEFAULT_TERRAFORM_DIR = "~/.config/agentvm/terraform"
DEFAULT_VM_NAME = "agent-vm"
DEFAULT_MOUNT_POINT = "~/agent-vm"
TERRAFORM_DIR_ENV = "AGENTVM_TERRAFORM_DIR"
NETWORK_SUBNET_ENV = "NETWORK_SUBNET"

_INT_BOUNDS: dict[str, tuple[int, int]] = {
    "memory_mb": (512, 1048576),
    "vcpus": (1, 256),
    "disk_gb": (5, 16384),
    "remote_timeout_seconds": (1, 3600),
    "mount_timeout_seconds": (1, 600),
    "boot_timeout_seconds": (5, 3600),
    "boot_poll_seconds": (1, 60),
    "boot_wait_retries": (1, 10),
}
_STRING_FIELDS = ("vm_name", "terraform_dir", "libvirt_uri", "mount_point")


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    vm_name: str = DEFAULT_VM_NAME
    terraform_dir: str = DEFAULT_TERRAFORM_DIR
    libvirt_uri: str = "qemu:///system"
    memory_mb: int = Field(default=8192, ge=512, le=1048576)
    vcpus: int = Field(default=4, ge=1, le=256)
    disk_gb: int = Field(default=50, ge=5, le=16384)
    mount_point: str = DEFAULT_MOUNT_POINT
    remote_timeout_seconds: int = Field(default=60, ge=1, le=3600)
    mount_timeout_seconds: int = Field(default=30, ge=1, le=600)
    boot_timeout_seconds: int = Field(default=120, ge=5, le=3600)
    boot_poll_seconds: int = Field(default=2, ge=1, le=60)
    boot_wait_retries: int = Field(default=3, ge=1, le=10)
    network_subnet: int | None = Field(default=None, ge=0, le=255)

    @property
    def terraform_path(self) -> Path:
        return Path(self.terraform_dir).expanduser()

    @property
    def mount_path(self) -> Path:
        return Path(self.mount_point).expanduser()


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _parse_subnet(value: object) -> int | None:
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return None
        value = int(value)
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 255:
        return value
    return None


def _sanitize(raw: dict[str, object], env: Mapping[str, str]) -> AppConfig:
    cfg = AppConfig()

    for name in _STRING_FIELDS:
        value = raw.get(name)
        if isinstance(value, str) and value.strip():
            setattr(cfg, name, value.strip())

    for name, (low, high) in _INT_BOUNDS.items():
        value = raw.get(name)
        if isinstance(value, int) and not isinstance(value, bool) and low <= value <= high:
            setattr(cfg, name, value)

    cfg.network_subnet = _parse_subnet(raw.get("network_subnet"))

    env_terraform_dir = env.get(TERRAFORM_DIR_ENV, "").strip()
    if env_terraform_dir:
        cfg.terraform_dir = env_terraform_dir
    env_subnet = _parse_subnet(env.get(NETWORK_SUBNET_ENV, ""))
    if env_subnet is not None:
        cfg.network_subnet = env_subnet

    return cfg


def load_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> AppConfig:
    environ = os.environ if env is None else env
    resolved = get_config_path(path)
    if not resolved.exists():
        return _sanitize({}, environ)
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return _sanitize({}, environ)
    if not isinstance(raw, dict):
        return _sanitize({}, environ)
    return _sanitize(raw, environ)
