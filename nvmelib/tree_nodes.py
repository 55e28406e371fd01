"""Controller, namespace and path objects of the NVMe topology tree."""

from __future__ import annotations

import os
import re
import socket
from dataclasses import dataclass, field
from typing import Any

IDENTIFY_DATA_SIZE = 4096

NIDT_EUI64 = 0x01
NIDT_NGUID = 0x02
NIDT_UUID = 0x03
NIDT_CSI = 0x04

_NS_DESC_HEADER = 4

_PATH_NAME = re.compile(r"nvme([+-]?\d+)c([+-]?\d+)n([+-]?\d+)")
_NS_NAME = re.compile(r"nvme([+-]?\d+)n([+-]?\d+)")


def traddr_is_hostname(transport: str | None, traddr: str | None) -> bool:
    """Return True when ``traddr`` is a host name rather than an IP address."""
    if not traddr or not transport:
        return False
    if traddr == "none":
        return False
    if transport not in ("tcp", "rdma"):
        return False
    for family in (socket.AF_INET, socket.AF_INET6):
        try:
            socket.inet_pton(family, traddr)
        except (OSError, ValueError):
            continue
        return False
    return True


def _resolve_host(hostname: str) -> str | None:
    try:
        infos = socket.getaddrinfo(hostname, None)
    except (OSError, UnicodeError):
        return None
    for info in infos:
        return str(info[4][0])
    return None


def parse_path_name(name: str) -> tuple[int, int, int] | None:
    """Split a path name ``nvme<subsys>c<ctrl>n<nsid>`` into its numbers."""
    match = _PATH_NAME.match(name)
    if not match:
        return None
    subsys, ctrl, nsid = (int(g) for g in match.groups())
    return subsys, ctrl, nsid


def parse_ns_name(name: str) -> tuple[int, int] | None:
    """Split a namespace name ``nvme<instance>n<nsid>`` into its numbers."""
    match = _NS_NAME.match(name)
    if not match:
        return None
    instance, nsid = (int(g) for g in match.groups())
    return instance, nsid


def generic_name(name: str) -> str | None:
    """Return the generic character device name for a namespace name."""
    parsed = parse_ns_name(name)
    if parsed is None:
        return None
    instance, head = parsed
    return f"ng{instance}n{head}"


def bytes_to_lba(offset: int, count: int, lba_shift: int) -> tuple[int, int]:
    """Convert a byte range to a starting LBA and a zero-based block count."""
    block_size = 1 << lba_shift
    if not count or offset & block_size or count & block_size:
        raise ValueError("offset and count must be aligned to the LBA size")
    lba = offset >> lba_shift
    nlb = ((count >> lba_shift) - 1) & 0xFFFF
    return lba, nlb


@dataclass(eq=False)
class Path:
    """A multipath link between a controller and a namespace."""

    name: str
    sysfs_dir: str | None = None
    ana_state: str = "optimized"
    grpid: int = 0
    ctrl: NvmeController | None = field(default=None, repr=False)
    namespace: Namespace | None = field(default=None, repr=False)

    def free(self) -> None:
        """Unlink this path from its controller and namespace."""
        if self.ctrl is not None and self in self.ctrl.paths:
            self.ctrl.paths.remove(self)
        if self.namespace is not None and self in self.namespace.paths:
            self.namespace.paths.remove(self)
        self.namespace = None


@dataclass(eq=False)
class Namespace:
    """An NVMe namespace with its geometry and identifiers."""

    name: str
    sysfs_dir: str | None = None
    nsid: int = 0
    fd: int = -1
    lba_shift: int = 0
    meta_size: int = 0
    lba_count: int = 0
    lba_util: int = 0
    csi: int = 0
    eui64: bytes = bytes(8)
    nguid: bytes = bytes(16)
    uuid: bytes = bytes(16)
    generic_name: str | None = None
    subsystem: Any = field(default=None, repr=False)
    ctrl: NvmeController | None = field(default=None, repr=False)
    paths: list[Path] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if self.generic_name is None:
            self.generic_name = generic_name(self.name)

    @property
    def lba_size(self) -> int:
        return 1 << self.lba_shift

    @property
    def model(self) -> str | None:
        source = self.ctrl if self.ctrl is not None else self.subsystem
        return getattr(source, "model", None)

    @property
    def serial(self) -> str | None:
        source = self.ctrl if self.ctrl is not None else self.subsystem
        return getattr(source, "serial", None)

    @property
    def firmware(self) -> str | None:
        source = self.ctrl if self.ctrl is not None else self.subsystem
        return getattr(source, "firmware", None)

    def lba_range(self, offset: int, count: int) -> tuple[int, int]:
        """Return (starting LBA, zero-based block count) for a byte range."""
        return bytes_to_lba(offset, count, self.lba_shift)

    def parse_descriptors(self, data: bytes) -> None:
        """Take EUI-64, NGUID, UUID and CSI from identify descriptor data."""
        pos = 0
        limit = min(len(data), IDENTIFY_DATA_SIZE)
        while pos + _NS_DESC_HEADER <= limit:
            nidt, nidl = data[pos], data[pos + 1]
            if not nidl:
                break
            nid = bytes(data[pos + _NS_DESC_HEADER:pos + _NS_DESC_HEADER + nidl])
            if nidt == NIDT_EUI64:
                self.eui64 = nid[:8].ljust(8, b"\0")
            elif nidt == NIDT_NGUID:
                self.nguid = nid[:16].ljust(16, b"\0")
            elif nidt == NIDT_UUID:
                self.uuid = nid[:16].ljust(16, b"\0")
            elif nidt == NIDT_CSI:
                self.csi = nid[0] if nid else 0
            pos += nidl + _NS_DESC_HEADER

    def detach_paths(self) -> None:
        """Drop every path's link to this namespace."""
        for path in self.paths:
            path.namespace = None
        self.paths.clear()

    def _release(self) -> None:
        if self.fd >= 0:
            try:
                os.close(self.fd)
            except OSError:
                pass
            self.fd = -1


class NvmeController:
    """An NVMe controller, connected or merely configured."""

    _SYSFS_ATTRS = (
        "name", "sysfs_dir", "firmware", "model", "state", "numa_node",
        "queue_count", "serial", "sqsize", "address", "dctype", "cntrltype",
    )

    def __init__(
        self,
        subsysnqn: str,
        transport: str,
        traddr: str | None = None,
        host_traddr: str | None = None,
        host_iface: str | None = None,
        trsvcid: str | None = None,
    ) -> None:
        self._subsysnqn = subsysnqn
        self.transport: str | None = transport
        self.traddr = traddr
        self.host_traddr = host_traddr
        self.host_iface = host_iface
        self.trsvcid = trsvcid
        self.fd = -1
        self.name: str | None = None
        self.sysfs_dir: str | None = None
        self.firmware: str | None = None
        self.model: str | None = None
        self.state: str | None = None
        self.numa_node: str | None = None
        self.queue_count: str | None = None
        self.serial: str | None = None
        self.sqsize: str | None = None
        self.address: str | None = None
        self.dctype: str | None = None
        self.cntrltype: str | None = None
        self.dhchap_key: str | None = None
        self.discovered = False
        self.persistent = False
        self.discovery_ctrl = False
        self.subsystem: Any = None
        self.namespaces: list[Namespace] = []
        self.paths: list[Path] = []

    def __repr__(self) -> str:
        return (f"NvmeController(name={self.name!r}, "
                f"transport={self.transport!r}, traddr={self.traddr!r})")

    @property
    def subsysnqn(self) -> str | None:
        if self.subsystem is not None:
            return self.subsystem.subsysnqn
        return self._subsysnqn

    def matches(
        self,
        transport: str,
        traddr: str | None = None,
        host_traddr: str | None = None,
        host_iface: str | None = None,
        trsvcid: str | None = None,
    ) -> bool:
        """Return True when the given addressing is compatible with this one."""
        if self.transport != transport:
            return False
        if traddr and self.traddr and self.traddr.lower() != traddr.lower():
            return False
        if host_traddr and self.host_traddr and self.host_traddr != host_traddr:
            return False
        if host_iface and self.host_iface and self.host_iface != host_iface:
            return False
        if trsvcid and self.trsvcid and self.trsvcid != trsvcid:
            return False
        return True

    def add_path(self, path: Path) -> None:
        """Attach ``path`` to this controller."""
        path.ctrl = self
        self.paths.insert(0, path)

    def add_namespace(self, namespace: Namespace) -> None:
        """Attach ``namespace``, replacing any namespace of the same name."""
        if self.subsystem is None:
            raise ValueError(f"no subsystem for {namespace.name}")
        for old in list(self.namespaces):
            if old.name == namespace.name:
                self.namespaces.remove(old)
                old._release()
        namespace.subsystem = self.subsystem
        namespace.ctrl = self
        self.namespaces.insert(0, namespace)

    def deconfigure(self) -> None:
        """Forget the state read from a live controller."""
        if self.fd >= 0:
            try:
                os.close(self.fd)
            except OSError:
                pass
            self.fd = -1
        for attr in self._SYSFS_ATTRS:
            setattr(self, attr, None)

    def unlink(self) -> None:
        """Detach this controller from its subsystem."""
        if self.subsystem is not None:
            ctrls = self.subsystem.controllers
            if self in ctrls:
                ctrls.remove(self)
        self.subsystem = None

    def free(self) -> None:
        """Release the controller along with its paths and namespaces."""
        self.unlink()
        for path in list(self.paths):
            path.free()
        for namespace in list(self.namespaces):
            self.namespaces.remove(namespace)
            namespace._release()
        self.deconfigure()
        self.transport = None
        self._subsysnqn = None
        self.traddr = None
        self.host_traddr = None
        self.host_iface = None
        self.trsvcid = None


def create_ctrl(
    subsysnqn: str | None,
    transport: str | None,
    traddr: str | None = None,
    host_traddr: str | None = None,
    host_iface: str | None = None,
    trsvcid: str | None = None,
) -> NvmeController:
    """Create an unconnected controller, validating the addressing."""
    if not transport:
        raise ValueError("No transport specified")
    if not transport.startswith(("loop", "pcie")) and not traddr:
        raise ValueError(f"No transport address for '{transport}'")
    if not subsysnqn:
        raise ValueError("No subsystem NQN specified")

    resolved = None
    if host_traddr and traddr_is_hostname(transport, host_traddr):
        resolved = _resolve_host(host_traddr)
    return NvmeController(
        subsysnqn,
        transport,
        traddr=traddr,
        host_traddr=resolved or host_traddr,
        host_iface=host_iface,
        trsvcid=trsvcid,
    )