"""NVMe Admin commands carried over the NVMe-MI Admin channel."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Any

from .messages import (
    MSGTYPE_NVME,
    AdminRequestHeader,
    AdminResponseHeader,
    MessageType,
    MIError,
    MIStatusError,
    MsgHeader,
    Request,
    Response,
    Ror,
)

ADMIN_GET_LOG_PAGE = 0x02
ADMIN_IDENTIFY = 0x06
ADMIN_SECURITY_SEND = 0x81
ADMIN_SECURITY_RECV = 0x82

IDENTIFY_DATA_SIZE = 4096
IDENTIFY_CNS_CTRL = 0x01
IDENTIFY_CNS_CTRL_LIST = 0x13

CSI_NVM = 0
NSID_NONE = 0
CNTLID_NONE = 0
CNSSPECID_NONE = 0
UUID_NONE = 0

MAX_TRANSFER = 4096
"""NVMe-MI limit on the data length field."""

_U32 = 0xFFFFFFFF


@dataclass
class AdminResult:
    """Outcome of an Admin command: completion dword 0 and response data."""

    result: int = 0
    data: bytes = b""


def _admin_nmp() -> int:
    # command slot 0 is always used
    return (Ror.REQ << 7) | (MessageType.ADMIN << 3)


class Controller:
    """An NVMe controller reached through an MI endpoint."""

    def __init__(self, endpoint: Any, ctrl_id: int) -> None:
        self.endpoint = endpoint
        self.id = ctrl_id

    def __repr__(self) -> str:
        return f"Controller(id={self.id})"

    def _new_request(self, opcode: int) -> AdminRequestHeader:
        return AdminRequestHeader(
            hdr=MsgHeader(type=MSGTYPE_NVME, nmp=_admin_nmp()),
            opcode=opcode,
            ctrl_id=self.id,
        )

    def _submit(
        self,
        header: AdminRequestHeader,
        request_data: bytes,
        response_size: int,
    ) -> tuple[AdminResponseHeader, bytes]:
        request = Request(header=header.pack(), data=bytes(request_data))
        request.compute_mic()
        response = Response(
            header_len=AdminResponseHeader.SIZE, data_len=response_size
        )
        self.endpoint.submit(request, response)
        return AdminResponseHeader.unpack(response.header), bytes(response.data)

    def _checked(
        self,
        header: AdminRequestHeader,
        request_data: bytes,
        response_size: int,
    ) -> tuple[AdminResponseHeader, bytes]:
        resp_hdr, data = self._submit(header, request_data, response_size)
        if resp_hdr.status:
            raise MIStatusError(resp_hdr.status)
        return resp_hdr, data

    def xfer(
        self,
        request: AdminRequestHeader,
        request_data: bytes = b"",
        response_size: int = 0,
        response_offset: int = 0,
    ) -> tuple[AdminResponseHeader, bytes]:
        """Send a raw Admin command; return the response header and payload."""
        if response_size > MAX_TRANSFER:
            raise MIError(errno.EINVAL, "response size exceeds 4096 bytes")
        if response_offset > _U32:
            raise MIError(errno.EINVAL, "response offset exceeds 32 bits")
        if response_offset & 0x3:
            raise MIError(errno.EINVAL, "response offset is not aligned")
        if request_data and response_size:
            raise MIError(errno.EINVAL, "bidirectional transfer not permitted")
        if not response_size and response_offset:
            raise MIError(errno.EINVAL, "offset given without a response size")

        request.hdr.type = MSGTYPE_NVME
        request.hdr.nmp = _admin_nmp()
        request.flags = 0x3
        request.dlen = response_size & _U32
        request.doff = response_offset & _U32
        return self._submit(request, request_data, response_size)

    def identify_partial(
        self,
        cns: int,
        offset: int = 0,
        size: int = IDENTIFY_DATA_SIZE,
        nsid: int = NSID_NONE,
        cntid: int = CNTLID_NONE,
        csi: int = CSI_NVM,
        cns_specific_id: int = CNSSPECID_NONE,
        uuidx: int = UUID_NONE,
    ) -> AdminResult:
        """Identify, returning ``size`` bytes starting at ``offset``."""
        if not size or size > _U32:
            raise MIError(errno.EINVAL, "invalid identify size")

        header = self._new_request(ADMIN_IDENTIFY)
        header.cdw1 = nsid & _U32
        header.cdw10 = ((cntid << 16) | cns) & _U32
        header.cdw11 = (((csi & 0xFF) << 24) | cns_specific_id) & _U32
        header.cdw14 = uuidx & _U32
        header.dlen = size & _U32
        header.flags = 0x1
        if offset:
            header.flags |= 0x2
            header.doff = offset & _U32

        resp_hdr, data = self._checked(header, b"", size)
        if len(data) != size:
            raise MIError(
                errno.EPROTO,
                f"identify returned {len(data)} bytes, expected {size}",
            )
        return AdminResult(result=resp_hdr.cdw0, data=data)

    def identify(
        self,
        cns: int,
        nsid: int = NSID_NONE,
        cntid: int = CNTLID_NONE,
        csi: int = CSI_NVM,
        cns_specific_id: int = CNSSPECID_NONE,
        uuidx: int = UUID_NONE,
    ) -> AdminResult:
        """Identify, requiring a full identify data structure."""
        return self.identify_partial(
            cns, 0, IDENTIFY_DATA_SIZE, nsid, cntid, csi, cns_specific_id, uuidx
        )

    def identify_cns_nsid(self, cns: int, nsid: int) -> bytes:
        """Identify with the given CNS and namespace ID; return the data."""
        return self.identify(cns, nsid=nsid).data

    def identify_ctrl(self) -> bytes:
        """Return the Identify Controller data structure."""
        return self.identify_cns_nsid(IDENTIFY_CNS_CTRL, NSID_NONE)

    def identify_ctrl_list(self, cntid: int) -> bytes:
        """Return the controller list starting at IDs >= ``cntid``."""
        return self.identify(IDENTIFY_CNS_CTRL_LIST, cntid=cntid).data

    def _get_log_page_chunk(
        self,
        params: dict[str, Any],
        offset: int,
        length: int,
        final: bool,
    ) -> bytes:
        if not length or length > MAX_TRANSFER or length < 4:
            raise MIError(errno.EINVAL, "invalid log page transfer length")
        if offset < 0 or offset >= length:
            raise MIError(errno.EINVAL, "invalid log page transfer offset")

        ndw = (length >> 2) - 1
        rae = 1 if (not final or params["rae"]) else 0
        lpo = params["lpo"]

        header = self._new_request(ADMIN_GET_LOG_PAGE)
        header.cdw1 = params["nsid"] & _U32
        header.cdw10 = (
            ((ndw & 0xFFFF) << 16)
            | (rae << 15)
            | (params["lsp"] << 8)
            | (params["lid"] & 0xFF)
        ) & _U32
        header.cdw11 = ((params["lsi"] << 16) | (ndw >> 16)) & _U32
        header.cdw12 = lpo & _U32
        header.cdw13 = (lpo >> 32) & _U32
        header.cdw14 = (
            (params["csi"] << 24)
            | ((1 if params["ot"] else 0) << 23)
            | params["uuidx"]
        ) & _U32
        header.flags = 0x1
        header.dlen = length & _U32
        if offset:
            header.flags |= 0x2
            header.doff = offset & _U32

        _, data = self._checked(header, b"", length)
        return data

    def get_log_page(
        self,
        lid: int,
        length: int,
        nsid: int = NSID_NONE,
        lsp: int = 0,
        lsi: int = 0,
        lpo: int = 0,
        rae: bool = False,
        ot: bool = False,
        csi: int = CSI_NVM,
        uuidx: int = UUID_NONE,
    ) -> bytes:
        """Read up to ``length`` bytes of a log page, in MI-sized chunks."""
        params = dict(
            nsid=nsid, lid=lid, lsp=lsp, lsi=lsi, lpo=lpo,
            rae=rae, ot=ot, csi=csi, uuidx=uuidx,
        )
        chunks: list[bytes] = []
        xfer_offset = 0
        while xfer_offset < length:
            cur = min(MAX_TRANSFER, length - xfer_offset)
            final = xfer_offset + cur >= length
            data = self._get_log_page_chunk(params, xfer_offset, cur, final)
            chunks.append(data)
            xfer_offset += len(data)
            # a short chunk marks the end of the log page
            if len(data) != cur:
                break
        return b"".join(chunks)

    def security_send(
        self, secp: int, spsp0: int, spsp1: int, nssf: int, data: bytes
    ) -> int:
        """Send security protocol data; return completion dword 0."""
        if len(data) > MAX_TRANSFER:
            raise MIError(errno.EINVAL, "security send data exceeds 4096 bytes")
        header = self._new_request(ADMIN_SECURITY_SEND)
        header.cdw10 = (
            (secp << 24) | (spsp0 << 16) | (spsp1 << 8) | nssf
        ) & _U32
        header.cdw11 = len(data) & _U32
        header.flags = 0x1
        header.dlen = len(data) & _U32
        resp_hdr, _ = self._checked(header, data, 0)
        return resp_hdr.cdw0

    def security_recv(
        self, secp: int, spsp0: int, spsp1: int, nssf: int, length: int
    ) -> AdminResult:
        """Receive up to ``length`` bytes of security protocol data."""
        if length > MAX_TRANSFER:
            raise MIError(errno.EINVAL, "security receive length exceeds 4096")
        header = self._new_request(ADMIN_SECURITY_RECV)
        header.cdw10 = (
            (secp << 24) | (spsp0 << 16) | (spsp1 << 8) | nssf
        ) & _U32
        header.cdw11 = length & _U32
        header.flags = 0x1
        header.dlen = length & _U32
        resp_hdr, data = self._checked(header, b"", length)
        return AdminResult(result=resp_hdr.cdw0, data=data)

    def close(self) -> None:
        """Detach this controller from its endpoint."""
        controllers = getattr(self.endpoint, "controllers", None)
        if controllers is not None and self in controllers:
            controllers.remove(self)