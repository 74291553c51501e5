"""Role helpers: image derivation, normalisation and live role detection.

Live detection is a best-effort enrichment for the VM dashboard. It is never
consulted by the orchestrators.

Known limitation: detection results are cached by name and IP for a fixed TTL,
so a VM recreated under the same name and address within the TTL reports the
previous instance's detected role until the entry expires.
"""

from __future__ import annotations

import logging
import re
import socket
import threading
import time
from typing import TYPE_CHECKING, Protocol

from hvlab.config import settings

if TYPE_CHECKING:
    from hvlab.schemas import ObservedVM

logger = logging.getLogger(__name__)

SERVER_ROLE_KEYWORDS = (
    "dc", "dhcp", "dns", "ca", "rras", "wsus", "sccm", "sql", "web", "fs", "ms",
)
CLIENT_ROLE_KEYWORDS = ("client", "ws", "workstation", "desktop")

ROLE_ALIASES = {
    "MS": "MemberServer",
    "Member": "MemberServer",
    "Server": "MemberServer",
}

DETECTION_ELIGIBLE_ROLES = {"memberserver", "unknown"}


def _role_tokens(role: str) -> list[str]:
    """Split 'FileServer', 'SQL-Server 2', 'dc_01' into lowercase tokens."""
    spaced = re.sub(r"(?<=[a-z])(?=[A-Z])", " ", role)
    return [t for t in re.split(r"[^A-Za-z]+", spaced.lower()) if t]


def derive_os_image(role: str | None) -> str:
    """Return 'server' or 'client' for a role tag."""
    tokens = _role_tokens(role or "")
    if any(t in CLIENT_ROLE_KEYWORDS for t in tokens):
        return "client"
    if "server" in (role or "").lower() or any(t in SERVER_ROLE_KEYWORDS for t in tokens):
        return "server"
    return "client"


def normalize_role(role: str | None) -> str:
    """Map shorthand role tags onto their canonical names."""
    if not role or not role.strip():
        return "Unknown"
    role = role.strip()
    return ROLE_ALIASES.get(role, role)


def is_tcp_port_open(host: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class RoleDetector(Protocol):
    """Detects a role from live signals; returns None when nothing is found."""

    def detect(self, vm: ObservedVM) -> str | None: ...


class NullRoleDetector:
    """Detector used when live detection is disabled."""

    def detect(self, vm: ObservedVM) -> str | None:
        return None


class PortRoleDetector:
    """Detects WSUS servers by probing their well-known HTTP(S) ports.

    Results (including negative ones) are cached per name|ip for `ttl`
    seconds since probing costs up to one timeout per port.
    """

    def __init__(
        self,
        ports: list[int] | None = None,
        timeout: float | None = None,
        ttl: float | None = None,
        detected_role: str = "WSUS",
    ):
        self.ports = ports if ports is not None else list(settings.role_detector_ports)
        self.timeout = timeout if timeout is not None else settings.role_detector_timeout
        self.ttl = ttl if ttl is not None else settings.role_detector_cache_ttl
        self.detected_role = detected_role
        self._cache: dict[str, tuple[str | None, float]] = {}
        self._lock = threading.Lock()

    def detect(self, vm: ObservedVM) -> str | None:
        from hvlab.schemas import PowerState

        if vm.state != PowerState.RUNNING or not vm.ip_address:
            return None
        if vm.role.lower() not in DETECTION_ELIGIBLE_ROLES:
            return None

        key = f"{vm.name}|{vm.ip_address}"
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and cached[1] > now:
                return cached[0]

        role = None
        if any(is_tcp_port_open(vm.ip_address, port, self.timeout) for port in self.ports):
            role = self.detected_role
            logger.debug(f"Detected {role} on {vm.name} ({vm.ip_address})")

        with self._lock:
            self._cache[key] = (role, now + self.ttl)
        return role

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


def get_role_detector() -> RoleDetector:
    """Return the detector configured by settings."""
    if settings.enable_role_detection:
        return PortRoleDetector()
    return NullRoleDetector()
