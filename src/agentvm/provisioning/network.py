"""Host facts passed to provisioning: uid/gid and nested-VM subnet choice."""

from __future__ import annotations

import logging as py_logging
import os
import re
import subprocess
from collections.abc import Callable

logger = py_logging.getLogger(__name__)

DEFAULT_SUBNET_THIRD_OCTET = 123
NESTED_SUBNET_THIRD_OCTET = 200
_LIBVIRT_DEFAULT_OCTETS = (122, 123)
_PRIVATE_IPV4 = re.compile(r"\binet\s+192\.168\.(\d{1,3})\.\d{1,3}/")


def choose_subnet(ip_addr_output: str) -> int:
    """Pick the third octet of 192.168.X.0/24 that will not clash with the host's own network."""
    match = _PRIVATE_IPV4.search(ip_addr_output)
    if not match:
        return DEFAULT_SUBNET_THIRD_OCTET
    current = int(match.group(1))
    if current in _LIBVIRT_DEFAULT_OCTETS:
        chosen = NESTED_SUBNET_THIRD_OCTET
    else:
        chosen = (current + 1) % 256
    logger.info("Detected outer network 192.168.%s.0/24; using 192.168.%s.0/24", current, chosen)
    return chosen


def detect_subnet(runner: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> int:
    try:
        result = runner(["ip", "-4", "addr", "show"], capture_output=True, text=True, check=False)
    except OSError:
        logger.debug("ip command unavailable; using default subnet")
        return DEFAULT_SUBNET_THIRD_OCTET
    if result.returncode != 0:
        return DEFAULT_SUBNET_THIRD_OCTET
    return choose_subnet(result.stdout or "")


def host_identity_variables() -> dict[str, str]:
    return {"user_uid": str(os.getuid()), "user_gid": str(os.getgid())}
