import errno

import pytest

from nvmelib.messages import (
    MSGTYPE_NVME,
    AdminRequestHeader,
    AdminResponseHeader,
    MessageType,
    MIError,
    MiOpcode,
    MiRequestHeader,
    MiResponseHeader,
    MIStatusError,
    MsgHeader,
    Request,
    Response,
    RespStatus,
    Ror,
    crc32c_update,
    message_integrity_check,
)


def test_crc32c_standard_check_value():
    assert message_integrity_check(b"123456789") == 0xE3069283


def test_crc32c_update_empty_is_identity():
    assert crc32c_update(0x12345678, b"") == 0x12345678


def test_mic_split_invariance():
    whole = bytes(range(40))
    assert message_integrity_check(whole[:12], whole[12:]) == (
        message_integrity_check(whole, b"")
    )


def test_crc32c_update_chaining():
    a, b = b"abcd", b"efgh"
    chained = crc32c_update(crc32c_update(0xFFFFFFFF, a), b)
    assert chained == crc32c_update(0xFFFFFFFF, a + b)


def test_msg_header_wire_bytes():
    nmp = (Ror.REQ << 7) | (MessageType.ADMIN << 3)
    packed = MsgHeader(type=MSGTYPE_NVME, nmp=nmp).pack()
    assert packed == bytes([MSGTYPE_NVME, nmp, 0, 0])


def test_msg_header_default_type():
    assert MsgHeader().pack()[0] == MSGTYPE_NVME


def test_msg_header_roundtrip():
    hdr = MsgHeader(type=MSGTYPE_NVME, nmp=0x91, meb=1)
    assert MsgHeader.unpack(hdr.pack()) == hdr


def test_mi_request_roundtrip_and_size():
    hdr = MiRequestHeader(
        MsgHeader(nmp=MessageType.MI << 3),
        opcode=MiOpcode.CONFIGURATION_GET,
        cdw0=0xDEADBEEF,
        cdw1=7,
    )
    packed = hdr.pack()
    assert len(packed) == MiRequestHeader.SIZE
    assert MiRequestHeader.unpack(packed) == hdr
    assert packed[8:12] == (0xDEADBEEF).to_bytes(4, "little")


def test_mi_response_nmresp_little_endian():
    packed = MiResponseHeader(status=0, nmresp=0x030201).pack()
    assert packed[5:8] == bytes([1, 2, 3])
    assert len(packed) == MiResponseHeader.SIZE


def test_mi_response_roundtrip():
    hdr = MiResponseHeader(MsgHeader(nmp=0x88), status=4, nmresp=0xABCDEF)
    assert MiResponseHeader.unpack(hdr.pack()) == hdr


def test_admin_request_size_is_68():
    assert len(AdminRequestHeader().pack()) == 68


def test_admin_request_field_layout():
    hdr = AdminRequestHeader(ctrl_id=0x1234, doff=0x11223344, cdw15=0x55667788)
    packed = hdr.pack()
    assert packed[6:8] == (0x1234).to_bytes(2, "little")
    assert packed[28:32] == (0x11223344).to_bytes(4, "little")
    assert packed[-4:] == (0x55667788).to_bytes(4, "little")


def test_admin_request_roundtrip():
    hdr = AdminRequestHeader(
        MsgHeader(nmp=MessageType.ADMIN << 3),
        opcode=6, flags=3, ctrl_id=2,
        cdw1=1, cdw2=2, cdw3=3, cdw4=4, cdw5=5,
        doff=8, dlen=4096,
        cdw10=10, cdw11=11, cdw12=12, cdw13=13, cdw14=14, cdw15=15,
    )
    assert AdminRequestHeader.unpack(hdr.pack()) == hdr


def test_admin_response_roundtrip_and_size():
    hdr = AdminResponseHeader(MsgHeader(nmp=0x90), status=1, cdw0=9, cdw1=8, cdw3=7)
    packed = hdr.pack()
    assert len(packed) == AdminResponseHeader.SIZE
    assert AdminResponseHeader.unpack(packed) == hdr


def test_unpack_ignores_trailing_bytes():
    hdr = MiResponseHeader(status=2, nmresp=5)
    assert MiResponseHeader.unpack(hdr.pack() + b"\xff" * 4) == hdr


@pytest.mark.parametrize(
    "cls", [MsgHeader, MiRequestHeader, MiResponseHeader,
            AdminRequestHeader, AdminResponseHeader]
)
def test_unpack_short_raises_eproto(cls):
    with pytest.raises(MIError) as info:
        cls.unpack(b"\x84\x00")
    assert info.value.errno == errno.EPROTO


def test_pack_out_of_range_raises():
    with pytest.raises(ValueError):
        AdminRequestHeader(ctrl_id=0x10000).pack()
    with pytest.raises(ValueError):
        MiResponseHeader(nmresp=1 << 24).pack()


def test_request_compute_mic():
    header = MiRequestHeader(opcode=MiOpcode.MI_DATA_READ).pack()
    req = Request(header=header, data=b"\x01\x02\x03\x04")
    mic = req.compute_mic()
    assert mic == req.mic
    assert mic == message_integrity_check(header, b"\x01\x02\x03\x04")


def test_response_verify_mic():
    header = AdminResponseHeader(status=0, cdw0=1).pack()
    data = b"\xaa" * 8
    resp = Response(header_len=len(header), data_len=8, header=header, data=data,
                    mic=message_integrity_check(header, data))
    assert resp.verify_mic() is True
    resp.mic ^= 1
    assert resp.verify_mic() is False


def test_status_error_names():
    err = MIStatusError(RespStatus.INVALID_PARAM)
    assert err.status == RespStatus.INVALID_PARAM
    assert "INVALID_PARAM" in str(err)
    assert "vendor specific" in str(MIStatusError(0xE5))
    assert "reserved" in str(MIStatusError(0x10))


def test_mi_error_carries_errno():
    err = MIError(errno.EINVAL)
    assert err.errno == errno.EINVAL
    assert isinstance(err, OSError)