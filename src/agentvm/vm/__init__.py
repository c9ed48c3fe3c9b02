"""Singleton VM lifecycle package."""

from .models import EnsureResult, Endpoint, ResourceOverrides, ResourceSpec, VmState, VmStatus

__all__ = [
    "EnsureResult",
    "Endpoint",
    "ResourceOverrides",
    "ResourceSpec",
    "VmState",
    "VmStatus",
]
