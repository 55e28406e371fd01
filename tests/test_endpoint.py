import errno

import pytest

from nvmelib.endpoint import (
    DEFAULT_TIMEOUT_MS,
    HEALTH_STATUS_SIZE,
    SUBSYS_INFO_SIZE,
    Endpoint,
    MIRoot,
    Transport,
)
from nvmelib.messages import (
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
    message_integrity_check,
)

RSP_NMP = 0x80 | (MessageType.MI << 3)


def mi_response(status=0, nmresp=0, nmp=RSP_NMP, msg_type=MSGTYPE_NVME):
    return MiResponseHeader(
        hdr=MsgHeader(type=msg_type, nmp=nmp), status=status, nmresp=nmresp
    ).pack()


class FakeTransport(Transport):
    name = "fake"

    def __init__(self, handler=None, mic_enabled=True, detail=None,
                 bad_mic=False, max_timeout=None):
        self.handler = handler or (lambda req: (mi_response(), b""))
        self.mic_enabled = mic_enabled
        self.detail = detail
        self.bad_mic = bad_mic
        self.max_timeout = max_timeout
        self.requests = []
        self.closed = []

    def submit(self, endpoint, request, response):
        self.requests.append(request)
        header, data = self.handler(request)
        response.header = header
        response.data = data
        response.mic = message_integrity_check(header, data)
        if self.bad_mic:
            response.mic ^= 1

    def check_timeout(self, endpoint, timeout_ms):
        if self.max_timeout is not None and timeout_ms > self.max_timeout:
            raise MIError(errno.EINVAL, "timeout too large")

    def describe(self, endpoint):
        return self.detail

    def close(self, endpoint):
        self.closed.append(endpoint)


def make_endpoint(**kwargs):
    root = MIRoot()
    transport = FakeTransport(**kwargs)
    return root, transport, root.init_endpoint(transport)


def ctrl_list(ids, count=None):
    n = len(ids) if count is None else count
    body = n.to_bytes(2, "little") + b"".join(
        i.to_bytes(2, "little") for i in ids
    )
    return body + bytes(4096 - len(body))


def test_endpoint_defaults():
    root, _, ep = make_endpoint()
    assert ep.timeout == DEFAULT_TIMEOUT_MS == 1000
    assert ep.mprt_max == 0
    assert root.endpoints == [ep]
    assert list(ep) == []


def test_set_timeout_and_mprt():
    _, _, ep = make_endpoint(max_timeout=5000)
    ep.set_timeout(2500)
    ep.set_mprt_max(7000)
    assert ep.timeout == 2500
    assert ep.mprt_max == 7000


def test_set_timeout_rejected_by_transport():
    _, _, ep = make_endpoint(max_timeout=5000)
    with pytest.raises(MIError) as exc:
        ep.set_timeout(6000)
    assert exc.value.errno == errno.EINVAL
    assert ep.timeout == DEFAULT_TIMEOUT_MS


def test_submit_rejects_short_request_header():
    _, transport, ep = make_endpoint()
    with pytest.raises(MIError) as exc:
        ep.submit(Request(header=b"\x84\x00"), Response(header_len=8))
    assert exc.value.errno == errno.EINVAL
    assert transport.requests == []


def test_submit_rejects_unaligned_lengths():
    _, _, ep = make_endpoint()
    header = bytes(8)
    with pytest.raises(MIError) as exc:
        ep.submit(Request(header=header, data=b"abc"), Response(header_len=8))
    assert exc.value.errno == errno.EINVAL
    with pytest.raises(MIError) as exc:
        ep.submit(Request(header=header), Response(header_len=6))
    assert exc.value.errno == errno.EINVAL
    with pytest.raises(MIError) as exc:
        ep.submit(Request(header=header), Response(header_len=8, data_len=5))
    assert exc.value.errno == errno.EINVAL


def test_submit_sets_request_mic():
    _, transport, ep = make_endpoint()
    ep.config_set(1, 2)
    req = transport.requests[0]
    assert req.mic == message_integrity_check(req.header, req.data)


def test_submit_mic_mismatch():
    _, _, ep = make_endpoint(bad_mic=True)
    with pytest.raises(MIError) as exc:
        ep.config_set(1, 0)
    assert exc.value.errno == errno.EIO


def test_mic_disabled_ignores_bad_mic():
    _, _, ep = make_endpoint(bad_mic=True, mic_enabled=False,
                             handler=lambda r: (mi_response(nmresp=3), b""))
    assert ep.config_get(1, 0) == 3


def test_submit_wrong_message_type():
    _, _, ep = make_endpoint(
        handler=lambda r: (mi_response(msg_type=0x04), b""))
    with pytest.raises(MIError) as exc:
        ep.config_set(1, 0)
    assert exc.value.errno == errno.EPROTO


def test_submit_response_marked_as_request():
    _, _, ep = make_endpoint(
        handler=lambda r: (mi_response(nmp=MessageType.MI << 3), b""))
    with pytest.raises(MIError) as exc:
        ep.config_set(1, 0)
    assert exc.value.errno == errno.EIO


def test_submit_slot_mismatch():
    _, _, ep = make_endpoint(
        handler=lambda r: (mi_response(nmp=RSP_NMP | 0x1), b""))
    with pytest.raises(MIError) as exc:
        ep.config_set(1, 0)
    assert exc.value.errno == errno.EIO


def test_submit_short_response_header():
    _, _, ep = make_endpoint(handler=lambda r: (b"\x84\x88", b""))
    with pytest.raises(MIError) as exc:
        ep.config_set(1, 0)
    assert exc.value.errno == errno.EPROTO


def test_status_error_raised():
    _, _, ep = make_endpoint(handler=lambda r: (mi_response(status=4), b""))
    with pytest.raises(MIStatusError) as exc:
        ep.config_get(1, 0)
    assert exc.value.status == 4


def test_scan_creates_controllers_skipping_zero():
    _, transport, ep = make_endpoint(
        handler=lambda r: (mi_response(), ctrl_list([1, 0, 5])))
    ctrls = ep.scan()
    assert [c.id for c in ctrls] == [1, 5]
    assert [c.id for c in ep] == [1, 5]
    req = MiRequestHeader.unpack(transport.requests[0].header)
    assert req.opcode == MiOpcode.MI_DATA_READ
    assert req.cdw0 >> 24 == DataStructureType.CTRL_LIST


def test_scan_only_once_unless_forced():
    _, transport, ep = make_endpoint(
        handler=lambda r: (mi_response(), ctrl_list([2, 3])))
    first = ep.scan()
    again = ep.scan()
    assert len(transport.requests) == 1
    assert [c.id for c in again] == [c.id for c in first]
    rescanned = ep.scan(force_rescan=True)
    assert len(transport.requests) == 2
    assert [c.id for c in rescanned] == [2, 3]
    assert all(c not in rescanned for c in first)


def test_scan_rejects_oversized_count():
    _, _, ep = make_endpoint(
        handler=lambda r: (mi_response(), ctrl_list([], count=2048)))
    with pytest.raises(MIError) as exc:
        ep.scan()
    assert exc.value.errno == errno.EPROTO
    assert not ep.controllers_scanned


def test_init_ctrl_and_close_ctrl():
    _, _, ep = make_endpoint()
    a = ep.init_ctrl(7)
    b = ep.init_ctrl(9)
    assert ep.controllers == [a, b]
    a.close()
    assert ep.controllers == [b]


def test_read_mi_data_port_request_bytes():
    _, transport, ep = make_endpoint(
        handler=lambda r: (mi_response(), bytes(32)))
    assert ep.read_mi_data_port(2) == bytes(32)
    header = transport.requests[0].header
    assert header[0] == MSGTYPE_NVME
    assert header[1] == MessageType.MI << 3
    assert header[8:12] == b"\x00\x00\x02\x01"


def test_read_mi_data_ctrl_cdw0():
    _, transport, ep = make_endpoint(
        handler=lambda r: (mi_response(), bytes(32)))
    ep.read_mi_data_ctrl(0x0102)
    req = MiRequestHeader.unpack(transport.requests[0].header)
    assert req.cdw0 >> 24 == DataStructureType.CTRL_INFO
    assert req.cdw0 & 0xFFFF == 0x0102


def test_read_mi_data_subsys_length_mismatch():
    _, _, ep = make_endpoint(handler=lambda r: (mi_response(), bytes(16)))
    with pytest.raises(MIError) as exc:
        ep.read_mi_data_subsys()
    assert exc.value.errno == errno.EPROTO


def test_read_mi_data_subsys_ok():
    payload = bytes([1, 1, 2]) + bytes(SUBSYS_INFO_SIZE - 3)
    _, _, ep = make_endpoint(handler=lambda r: (mi_response(), payload))
    assert ep.read_mi_data_subsys() == payload


def test_health_status_poll_clear_flag():
    payload = bytes(range(HEALTH_STATUS_SIZE))
    _, transport, ep = make_endpoint(
        handler=lambda r: (mi_response(), payload))
    assert ep.subsystem_health_status_poll(clear=True) == payload
    req = MiRequestHeader.unpack(transport.requests[0].header)
    assert req.opcode == MiOpcode.SUBSYS_HEALTH_STATUS_POLL
    assert req.cdw1 == 1 << 31
    ep.subsystem_health_status_poll(clear=False)
    assert MiRequestHeader.unpack(transport.requests[1].header).cdw1 == 0


def test_health_status_poll_length_mismatch():
    _, _, ep = make_endpoint(handler=lambda r: (mi_response(), bytes(4)))
    with pytest.raises(MIError) as exc:
        ep.subsystem_health_status_poll()
    assert exc.value.errno == errno.EPROTO


def test_config_get_returns_nmresp():
    _, transport, ep = make_endpoint(
        handler=lambda r: (mi_response(nmresp=0x123456), b""))
    assert ep.config_get(ConfigId.SMBUS_FREQ, 0) == 0x123456
    req = MiRequestHeader.unpack(transport.requests[0].header)
    assert req.opcode == MiOpcode.CONFIGURATION_GET


def test_config_get_smbus_freq_masks():
    _, transport, ep = make_endpoint(
        handler=lambda r: (mi_response(nmresp=0xFE), b""))
    assert ep.config_get_smbus_freq(1) == 2
    req = MiRequestHeader.unpack(transport.requests[0].header)
    assert req.cdw0 & 0xFF == ConfigId.SMBUS_FREQ
    assert req.cdw0 >> 24 == 1


def test_config_set_smbus_freq_encoding():
    _, transport, ep = make_endpoint()
    ep.config_set_smbus_freq(3, 2)
    req = MiRequestHeader.unpack(transport.requests[0].header)
    assert req.opcode == MiOpcode.CONFIGURATION_SET
    assert req.cdw0 >> 24 == 3
    assert (req.cdw0 >> 8) & 0x3 == 2
    assert req.cdw0 & 0xFF == ConfigId.SMBUS_FREQ


def test_config_mctp_mtu_round():
    _, transport, ep = make_endpoint(
        handler=lambda r: (mi_response(nmresp=0x010040), b""))
    assert ep.config_get_mctp_mtu(0) == 0x0040
    ep.config_set_mctp_mtu(1, 64)
    req = MiRequestHeader.unpack(transport.requests[1].header)
    assert req.cdw0 & 0xFF == ConfigId.MCTP_MTU
    assert req.cdw1 == 64


def test_config_set_health_status_change():
    _, transport, ep = make_endpoint()
    ep.config_set_health_status_change(0x55)
    req = MiRequestHeader.unpack(transport.requests[0].header)
    assert req.cdw0 == ConfigId.HEALTH_STATUS_CHANGE
    assert req.cdw1 == 0x55


def test_description_variants():
    _, _, ep = make_endpoint()
    assert ep.description() == "fake endpoint"
    _, _, ep2 = make_endpoint(detail="net 1 eid 9")
    assert ep2.description() == "fake: net 1 eid 9"
    _, _, ep3 = make_endpoint(detail="x" * 300)
    assert ep3.description() == "fake: " + "x" * 100


def test_close_releases_everything():
    root, transport, ep = make_endpoint()
    ep.init_ctrl(1)
    ep.close()
    assert ep.controllers == []
    assert transport.closed == [ep]
    assert root.endpoints == []


def test_root_close_closes_all_endpoints():
    root = MIRoot()
    transports = [FakeTransport(), FakeTransport()]
    endpoints = [root.init_endpoint(t) for t in transports]
    assert all(isinstance(e, Endpoint) for e in endpoints)
    root.close()
    assert root.endpoints == []
    assert [t.closed for t in transports] == [[endpoints[0]], [endpoints[1]]]