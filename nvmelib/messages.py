"""NVMe-MI message definitions: enums, wire headers, and message integrity."""

from __future__ import annotations

import enum
import errno
import os
import struct
from dataclasses import dataclass, field
from typing import ClassVar

MSGTYPE_NVME = 0x84
"""MCTP message type for NVMe-MI (type 0x4 with the integrity-check bit set)."""

_CRC32C_POLY = 0x82F63B78


class MessageType(enum.IntEnum):
    """NMIMT field of the NMP byte."""

    CONTROL = 0
    MI = 1
    ADMIN = 2
    PCIE = 4


class Ror(enum.IntEnum):
    """Request-or-response bit of the NMP byte."""

    REQ = 0
    RSP = 1


class RespStatus(enum.IntEnum):
    """Values of the response status field."""

    SUCCESS = 0x00
    MPR = 0x01
    INTERNAL_ERR = 0x02
    INVALID_OPCODE = 0x03
    INVALID_PARAM = 0x04
    INVALID_CMD_SIZE = 0x05
    INVALID_INPUT_SIZE = 0x06
    ACCESS_DENIED = 0x07
    VPD_UPDATES_EXCEEDED = 0x20
    PCIE_INACCESSIBLE = 0x21
    MEB_SANITIZED = 0x22
    ENC_SERV_FAILURE = 0x23
    ENC_SERV_XFER_FAILURE = 0x24
    ENC_FAILURE = 0x25
    ENC_XFER_REFUSED = 0x26
    ENC_FUNC_UNSUP = 0x27
    ENC_SERV_UNAVAIL = 0x28
    ENC_DEGRADED = 0x29
    SANITIZE_IN_PROGRESS = 0x2A


class MiOpcode(enum.IntEnum):
    """Opcodes of the NVMe-MI command set."""

    MI_DATA_READ = 0x00
    SUBSYS_HEALTH_STATUS_POLL = 0x01
    CONFIGURATION_SET = 0x03
    CONFIGURATION_GET = 0x04


class DataStructureType(enum.IntEnum):
    """Data structure type for the Read NVMe-MI Data Structure command."""

    SUBSYS_INFO = 0x00
    PORT_INFO = 0x01
    CTRL_LIST = 0x02
    CTRL_INFO = 0x03
    OPT_CMD_SUPPORT = 0x04
    MEB_SUPPORT = 0x05


class ConfigId(enum.IntEnum):
    """Configuration identifiers for MI Configuration Get/Set."""

    SMBUS_FREQ = 0x1
    HEALTH_STATUS_CHANGE = 0x2
    MCTP_MTU = 0x3


class SmbusFreq(enum.IntEnum):
    """SMBus/I2C frequency configuration values."""

    FREQ_100KHZ = 0x1
    FREQ_400KHZ = 0x2
    FREQ_1MHZ = 0x3


class MIError(OSError):
    """Failure communicating with an MI device; carries an errno value."""

    def __init__(self, err: int, message: str | None = None) -> None:
        super().__init__(err, message or os.strerror(err))


class MIStatusError(Exception):
    """Non-zero MI status returned in a response."""

    def __init__(self, status: int) -> None:
        self.status = status
        try:
            label = RespStatus(status).name
        except ValueError:
            label = "vendor specific" if status >= 0xE0 else "reserved"
        super().__init__(f"MI status 0x{status:02x} ({label})")


def _build_table() -> tuple[int, ...]:
    def entry(value: int) -> int:
        for _ in range(8):
            value = (value >> 1) ^ (_CRC32C_POLY if value & 1 else 0)
        return value

    return tuple(entry(b) for b in range(256))


_CRC32C_TABLE = _build_table()


def crc32c_update(crc: int, data: bytes) -> int:
    """Feed ``data`` into a running CRC-32C value, without final inversion."""
    crc &= 0xFFFFFFFF
    for byte in data:
        crc = (crc >> 8) ^ _CRC32C_TABLE[(crc ^ byte) & 0xFF]
    return crc


def message_integrity_check(header: bytes, data: bytes = b"") -> int:
    """Compute the MIC over a message header followed by its payload."""
    crc = crc32c_update(0xFFFFFFFF, header)
    crc = crc32c_update(crc, data)
    return ~crc & 0xFFFFFFFF


def _pack(fmt: struct.Struct, *values: int) -> bytes:
    try:
        return fmt.pack(*values)
    except struct.error as exc:
        raise ValueError(f"header field out of range: {exc}") from exc


def _check_len(data: bytes, size: int, what: str) -> bytes:
    if len(data) < size:
        raise MIError(
            errno.EPROTO, f"{what} needs {size} bytes, got {len(data)}"
        )
    return bytes(data[:size])


@dataclass
class MsgHeader:
    """General MI message header shared by all messages."""

    SIZE: ClassVar[int] = 4
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<4B")

    type: int = MSGTYPE_NVME
    nmp: int = 0
    meb: int = 0

    def pack(self) -> bytes:
        return _pack(self._FORMAT, self.type, self.nmp, self.meb, 0)

    @classmethod
    def unpack(cls, data: bytes) -> MsgHeader:
        raw = _check_len(data, cls.SIZE, "message header")
        msg_type, nmp, meb, _ = cls._FORMAT.unpack(raw)
        return cls(type=msg_type, nmp=nmp, meb=meb)


@dataclass
class MiRequestHeader:
    """MI command request header."""

    SIZE: ClassVar[int] = 16
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<B3xII")

    hdr: MsgHeader = field(default_factory=MsgHeader)
    opcode: int = 0
    cdw0: int = 0
    cdw1: int = 0

    def pack(self) -> bytes:
        return self.hdr.pack() + _pack(
            self._FORMAT, self.opcode, self.cdw0, self.cdw1
        )

    @classmethod
    def unpack(cls, data: bytes) -> MiRequestHeader:
        raw = _check_len(data, cls.SIZE, "MI request header")
        opcode, cdw0, cdw1 = cls._FORMAT.unpack(raw[MsgHeader.SIZE:])
        return cls(MsgHeader.unpack(raw), opcode, cdw0, cdw1)


@dataclass
class MiResponseHeader:
    """MI command response header; ``nmresp`` is the 24-bit NMRESP field."""

    SIZE: ClassVar[int] = 8

    hdr: MsgHeader = field(default_factory=MsgHeader)
    status: int = 0
    nmresp: int = 0

    def pack(self) -> bytes:
        if not 0 <= self.status <= 0xFF:
            raise ValueError("status out of range")
        if not 0 <= self.nmresp <= 0xFFFFFF:
            raise ValueError("nmresp out of range")
        return (
            self.hdr.pack()
            + bytes([self.status])
            + self.nmresp.to_bytes(3, "little")
        )

    @classmethod
    def unpack(cls, data: bytes) -> MiResponseHeader:
        raw = _check_len(data, cls.SIZE, "MI response header")
        return cls(
            MsgHeader.unpack(raw),
            raw[4],
            int.from_bytes(raw[5:8], "little"),
        )


@dataclass
class AdminRequestHeader:
    """Admin command request header."""

    SIZE: ClassVar[int] = 68
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<BBH5III8x6I")

    hdr: MsgHeader = field(default_factory=MsgHeader)
    opcode: int = 0
    flags: int = 0
    ctrl_id: int = 0
    cdw1: int = 0
    cdw2: int = 0
    cdw3: int = 0
    cdw4: int = 0
    cdw5: int = 0
    doff: int = 0
    dlen: int = 0
    cdw10: int = 0
    cdw11: int = 0
    cdw12: int = 0
    cdw13: int = 0
    cdw14: int = 0
    cdw15: int = 0

    def pack(self) -> bytes:
        return self.hdr.pack() + _pack(
            self._FORMAT,
            self.opcode, self.flags, self.ctrl_id,
            self.cdw1, self.cdw2, self.cdw3, self.cdw4, self.cdw5,
            self.doff, self.dlen,
            self.cdw10, self.cdw11, self.cdw12,
            self.cdw13, self.cdw14, self.cdw15,
        )

    @classmethod
    def unpack(cls, data: bytes) -> AdminRequestHeader:
        raw = _check_len(data, cls.SIZE, "Admin request header")
        values = cls._FORMAT.unpack(raw[MsgHeader.SIZE:])
        return cls(MsgHeader.unpack(raw), *values)


@dataclass
class AdminResponseHeader:
    """Admin command response header with completion queue doublewords."""

    SIZE: ClassVar[int] = 20
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<B3xIII")

    hdr: MsgHeader = field(default_factory=MsgHeader)
    status: int = 0
    cdw0: int = 0
    cdw1: int = 0
    cdw3: int = 0

    def pack(self) -> bytes:
        return self.hdr.pack() + _pack(
            self._FORMAT, self.status, self.cdw0, self.cdw1, self.cdw3
        )

    @classmethod
    def unpack(cls, data: bytes) -> AdminResponseHeader:
        raw = _check_len(data, cls.SIZE, "Admin response header")
        status, cdw0, cdw1, cdw3 = cls._FORMAT.unpack(raw[MsgHeader.SIZE:])
        return cls(MsgHeader.unpack(raw), status, cdw0, cdw1, cdw3)


@dataclass
class Request:
    """An outgoing message: packed header, payload and MIC."""

    header: bytes
    data: bytes = b""
    mic: int = 0

    def compute_mic(self) -> int:
        """Set and return the MIC over header and payload."""
        self.mic = message_integrity_check(self.header, self.data)
        return self.mic


@dataclass
class Response:
    """An incoming message buffer.

    ``header_len`` and ``data_len`` give the expected header size and the
    maximum payload size; a transport fills ``header``, ``data`` and ``mic``.
    """

    header_len: int
    data_len: int = 0
    header: bytes = b""
    data: bytes = b""
    mic: int = 0

    def verify_mic(self) -> bool:
        """Return True when the received MIC matches header and payload."""
        return self.mic == message_integrity_check(self.header, self.data)