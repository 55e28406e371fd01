"""NVMe-MI endpoints, the root that owns them, and the transport interface."""

from __future__ import annotations

import abc
import errno
import logging
from typing import Iterator

from .admin import Controller
from .messages import (
    MSGTYPE_NVME,
    ConfigId,
    DataStructureType,
    MessageType,
    MiOpcode,
    MiRequestHeader,
    MiResponseHeader,
    MIError,
    MIStatusError,
    MsgHeader,
    Request,
    Response,
    Ror,
)

DEFAULT_TIMEOUT_MS = 1000
"""Default response timeout; transports may override."""

ID_CTRL_LIST_MAX = 2047
CTRL_LIST_SIZE = 4096
SUBSYS_INFO_SIZE = 32
PORT_INFO_SIZE = 32
CTRL_INFO_SIZE = 32
HEALTH_STATUS_SIZE = 8

_DESC_MAX = 100

_logger = logging.getLogger(__name__)


def _mi_nmp() -> int:
    # command slot 0 is always used
    return (Ror.REQ << 7) | (MessageType.MI << 3)


class Transport(abc.ABC):
    """Carries MI messages between the host and an endpoint."""

    name: str = "transport"
    mic_enabled: bool = True
    details: str | None = None
    closed: bool = False

    @abc.abstractmethod
    def submit(self, endpoint: Endpoint, request: Request,
               response: Response) -> None:
        """Send ``request`` and fill ``response``; raise on failure."""

    def check_timeout(self, endpoint: Endpoint, timeout_ms: int) -> None:
        """Raise if ``timeout_ms`` is not acceptable to this transport."""
        if timeout_ms < 0:
            raise MIError(errno.EINVAL, f"invalid timeout {timeout_ms}")

    def describe(self, endpoint: Endpoint) -> str | None:
        """Return transport-specific details of ``endpoint``, if any."""
        return self.details or None

    def close(self, endpoint: Endpoint) -> None:
        """Release transport resources held for ``endpoint``."""
        self.closed = True


class MIRoot:
    """Top-level object owning a set of MI endpoints."""

    def __init__(self, log_level: int = logging.WARNING) -> None:
        self.log_level = log_level
        self.endpoints: list[Endpoint] = []

    def __iter__(self) -> Iterator[Endpoint]:
        return iter(list(self.endpoints))

    def _log(self, level: int, message: str, *args: object) -> None:
        if level >= self.log_level:
            _logger.log(level, message, *args)

    def init_endpoint(self, transport: Transport) -> Endpoint:
        """Create an endpoint using ``transport`` and register it."""
        endpoint = Endpoint(self, transport)
        self.endpoints.insert(0, endpoint)
        return endpoint

    def close(self) -> None:
        """Close every endpoint under this root."""
        for endpoint in list(self.endpoints):
            endpoint.close()


class Endpoint:
    """An NVMe-MI management endpoint."""

    def __init__(self, root: MIRoot, transport: Transport) -> None:
        self.root = root
        self.transport = transport
        self.controllers: list[Controller] = []
        self.controllers_scanned = False
        self.timeout = DEFAULT_TIMEOUT_MS
        self.mprt_max = 0

    def __iter__(self) -> Iterator[Controller]:
        return iter(list(self.controllers))

    def __repr__(self) -> str:
        return f"Endpoint({self.description()!r})"

    def set_timeout(self, timeout_ms: int) -> None:
        """Set the response timeout, subject to the transport's approval."""
        self.transport.check_timeout(self, timeout_ms)
        self.timeout = timeout_ms

    def set_mprt_max(self, mprt_max_ms: int) -> None:
        """Limit the wait for More Processing Required; zero means no limit."""
        self.mprt_max = mprt_max_ms

    def init_ctrl(self, ctrl_id: int) -> Controller:
        """Create a controller object for ``ctrl_id`` behind this endpoint."""
        ctrl = Controller(self, ctrl_id)
        self.controllers.append(ctrl)
        return ctrl

    def scan(self, force_rescan: bool = False) -> list[Controller]:
        """Query the endpoint's controller list and create controllers."""
        if self.controllers_scanned:
            if not force_rescan:
                return list(self.controllers)
            for ctrl in list(self.controllers):
                ctrl.close()

        data = self.read_mi_data_ctrl_list(0)
        if len(data) < 2:
            raise MIError(errno.EPROTO, "controller list too short")
        count = int.from_bytes(data[0:2], "little")
        if count > ID_CTRL_LIST_MAX:
            raise MIError(errno.EPROTO, f"controller count {count} too large")

        ids = data[2:2 + 2 * count]
        for pos in range(0, len(ids) - 1, 2):
            ctrl_id = int.from_bytes(ids[pos:pos + 2], "little")
            if ctrl_id:
                self.init_ctrl(ctrl_id)

        self.controllers_scanned = True
        return list(self.controllers)

    def submit(self, request: Request, response: Response) -> None:
        """Validate, send and check a request/response exchange."""
        if len(request.header) < MsgHeader.SIZE or len(request.header) & 0x3:
            raise MIError(errno.EINVAL, "invalid request header length")
        if len(request.data) & 0x3:
            raise MIError(errno.EINVAL, "invalid request data length")
        if response.header_len < MsgHeader.SIZE or response.header_len & 0x3:
            raise MIError(errno.EINVAL, "invalid response header length")
        if response.data_len & 0x3:
            raise MIError(errno.EINVAL, "invalid response data length")

        if self.transport.mic_enabled:
            request.compute_mic()

        try:
            self.transport.submit(self, request, response)
        except Exception:
            self.root._log(logging.INFO, "transport failure")
            raise

        if self.transport.mic_enabled and not response.verify_mic():
            self.root._log(logging.WARNING, "crc mismatch")
            raise MIError(errno.EIO, "response MIC mismatch")

        if len(response.header) < MsgHeader.SIZE:
            self.root._log(logging.DEBUG, "Bad response header len: %d",
                           len(response.header))
            raise MIError(errno.EPROTO, "response header too short")

        resp_hdr = MsgHeader.unpack(response.header)
        if resp_hdr.type != MSGTYPE_NVME:
            self.root._log(logging.DEBUG, "Invalid message type 0x%02x",
                           resp_hdr.type)
            raise MIError(errno.EPROTO, "invalid message type")

        if not resp_hdr.nmp & (Ror.RSP << 7):
            self.root._log(logging.DEBUG,
                           "ROR value in response indicates a request")
            raise MIError(errno.EIO, "response marked as a request")

        req_slot = request.header[1] & 0x1
        resp_slot = resp_hdr.nmp & 0x1
        if req_slot != resp_slot:
            self.root._log(logging.WARNING,
                           "Command slot mismatch: req %d, resp %d",
                           req_slot, resp_slot)
            raise MIError(errno.EIO, "command slot mismatch")

    def _mi_command(self, opcode: int, cdw0: int = 0, cdw1: int = 0,
                    data_len: int = 0) -> tuple[MiResponseHeader, bytes]:
        header = MiRequestHeader(
            hdr=MsgHeader(type=MSGTYPE_NVME, nmp=_mi_nmp()),
            opcode=opcode,
            cdw0=cdw0 & 0xFFFFFFFF,
            cdw1=cdw1 & 0xFFFFFFFF,
        )
        request = Request(header=header.pack())
        response = Response(header_len=MiResponseHeader.SIZE,
                            data_len=data_len)
        self.submit(request, response)
        resp_hdr = MiResponseHeader.unpack(response.header)
        if resp_hdr.status:
            raise MIStatusError(resp_hdr.status)
        return resp_hdr, bytes(response.data)

    def _read_data(self, cdw0: int, size: int) -> bytes:
        _, data = self._mi_command(MiOpcode.MI_DATA_READ, cdw0=cdw0,
                                   data_len=size)
        return data

    def read_mi_data_subsys(self) -> bytes:
        """Return the NVM Subsystem Information data structure."""
        data = self._read_data(DataStructureType.SUBSYS_INFO << 24,
                               SUBSYS_INFO_SIZE)
        if len(data) != SUBSYS_INFO_SIZE:
            self.root._log(
                logging.WARNING,
                "MI read data length mismatch: got %d bytes, expected %d",
                len(data), SUBSYS_INFO_SIZE,
            )
            raise MIError(errno.EPROTO, "subsystem info length mismatch")
        return data

    def read_mi_data_port(self, portid: int) -> bytes:
        """Return the Port Information data structure for ``portid``."""
        cdw0 = (DataStructureType.PORT_INFO << 24) | ((portid & 0xFF) << 16)
        data = self._read_data(cdw0, PORT_INFO_SIZE)
        if len(data) != PORT_INFO_SIZE:
            raise MIError(errno.EPROTO, "port info length mismatch")
        return data

    def read_mi_data_ctrl_list(self, start_ctrlid: int = 0) -> bytes:
        """Return the Controller List for IDs >= ``start_ctrlid``."""
        cdw0 = ((DataStructureType.CTRL_LIST << 24)
                | ((start_ctrlid & 0xFF) << 16))
        return self._read_data(cdw0, CTRL_LIST_SIZE)

    def read_mi_data_ctrl(self, ctrl_id: int) -> bytes:
        """Return the Controller Information data structure for ``ctrl_id``."""
        cdw0 = (DataStructureType.CTRL_INFO << 24) | (ctrl_id & 0xFFFF)
        data = self._read_data(cdw0, CTRL_INFO_SIZE)
        if len(data) != CTRL_INFO_SIZE:
            raise MIError(errno.EPROTO, "controller info length mismatch")
        return data

    def subsystem_health_status_poll(self, clear: bool = False) -> bytes:
        """Return the Subsystem Health data structure, optionally clearing CCS."""
        _, data = self._mi_command(
            MiOpcode.SUBSYS_HEALTH_STATUS_POLL,
            cdw1=(1 if clear else 0) << 31,
            data_len=HEALTH_STATUS_SIZE,
        )
        if len(data) != HEALTH_STATUS_SIZE:
            self.root._log(
                logging.WARNING,
                "MI Subsystem Health Status length mismatch: "
                "got %d bytes, expected %d",
                len(data), HEALTH_STATUS_SIZE,
            )
            raise MIError(errno.EPROTO, "health status length mismatch")
        return data

    def config_get(self, dw0: int, dw1: int = 0) -> int:
        """Perform Configuration Get; return the 24-bit NMRESP value."""
        resp_hdr, _ = self._mi_command(MiOpcode.CONFIGURATION_GET,
                                       cdw0=dw0, cdw1=dw1)
        return resp_hdr.nmresp

    def config_set(self, dw0: int, dw1: int = 0) -> None:
        """Perform Configuration Set."""
        self._mi_command(MiOpcode.CONFIGURATION_SET, cdw0=dw0, cdw1=dw1)

    def config_get_smbus_freq(self, port: int) -> int:
        """Return the current SMBus frequency setting of ``port``."""
        dw0 = ((port & 0xFF) << 24) | ConfigId.SMBUS_FREQ
        return self.config_get(dw0, 0) & 0x3

    def config_set_smbus_freq(self, port: int, freq: int) -> None:
        """Set the SMBus frequency of ``port``."""
        dw0 = ((port & 0xFF) << 24) | ((freq & 0x3) << 8) | ConfigId.SMBUS_FREQ
        self.config_set(dw0, 0)

    def config_set_health_status_change(self, mask: int) -> None:
        """Clear the Composite Controller Status bits set in ``mask``."""
        self.config_set(ConfigId.HEALTH_STATUS_CHANGE, mask)

    def config_get_mctp_mtu(self, port: int) -> int:
        """Return the MCTP MTU configured for ``port``."""
        dw0 = ((port & 0xFF) << 24) | ConfigId.MCTP_MTU
        return self.config_get(dw0, 0) & 0xFFFF

    def config_set_mctp_mtu(self, port: int, mtu: int) -> None:
        """Set the MCTP MTU of ``port``."""
        dw0 = ((port & 0xFF) << 24) | ConfigId.MCTP_MTU
        self.config_set(dw0, mtu & 0xFFFF)

    def description(self) -> str:
        """Return a human-readable description of this endpoint."""
        try:
            detail = self.transport.describe(self)
        except Exception:
            detail = None
        if detail:
            detail = detail[:_DESC_MAX]
        if detail:
            return f"{self.transport.name}: {detail}"
        return f"{self.transport.name} endpoint"

    def close(self) -> None:
        """Close the endpoint, its controllers and its transport."""
        # don't look for controllers during destruction
        self.controllers_scanned = True
        for ctrl in list(self.controllers):
            ctrl.close()
        self.transport.close(self)
        if self in self.root.endpoints:
            self.root.endpoints.remove(self)