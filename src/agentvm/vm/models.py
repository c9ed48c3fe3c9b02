"""VM lifecycle domain models."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path, PurePosixPath

from agentvm.errors import AgentVmError


class VmState(str, Enum):
    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True)
class Endpoint:
    host: str
    user: str
    key_path: Path
    port: int = 22

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    @property
    def workspace_root(self) -> PurePosixPath:
        if self.user == "root":
            return PurePosixPath("/root/workspace")
        return PurePosixPath("/home") / self.user / "workspace"

    def as_user(self, user: str) -> Endpoint:
        return Endpoint(host=self.host, user=user, key_path=self.key_path, port=self.port)


@dataclass(frozen=True)
class ResourceSpec:
    memory_mb: int
    vcpus: int
    disk_gb: int

    def describe(self) -> str:
        return f"memory={self.memory_mb}MB vcpus={self.vcpus} disk={self.disk_gb}GB"


@dataclass(frozen=True)
class ResourceOverrides:
    memory_mb: int | None = None
    vcpus: int | None = None
    disk_gb: int | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, item.name) is None for item in fields(self))

    def apply_to(self, base: ResourceSpec) -> ResourceSpec:
        return ResourceSpec(
            memory_mb=self.memory_mb if self.memory_mb is not None else base.memory_mb,
            vcpus=self.vcpus if self.vcpus is not None else base.vcpus,
            disk_gb=self.disk_gb if self.disk_gb is not None else base.disk_gb,
        )

    def conflicts_with(self, current: ResourceSpec | None) -> list[str]:
        """Names of requested values that differ from (or cannot be compared to) ``current``."""
        conflicts: list[str] = []
        for item in fields(self):
            requested = getattr(self, item.name)
            if requested is None:
                continue
            if current is None or getattr(current, item.name) != requested:
                conflicts.append(item.name)
        return conflicts


@dataclass
class VmStatus:
    state: VmState
    endpoint: Endpoint | None = None
    resources: ResourceSpec | None = None


@dataclass
class EnsureResult:
    endpoint: Endpoint
    created: bool
    started: bool = False
    warnings: list[AgentVmError] = field(default_factory=list)
