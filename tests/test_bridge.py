import struct

import pytest

from modbridge.bridge import (
    ANY_FUNCTION_CODE,
    ANY_SERVER,
    ErrorCode,
    ModbusBridge,
    ServerType,
    error_response,
    response_error,
)
from modbridge.rtu import CrcError, ReceiveTimeout

READ_HOLD_REGISTER = 0x03
READ_INPUT_REGISTER = 0x04
WRITE_MULT_REGISTERS = 0x10
MASK_WRITE_REGISTER = 0x16
USER_DEFINED_66 = 0x66

MEMO = [((i * 2) << 8) | (i * 2 + 1) for i in range(32)]


def read_registers(request):
    sid, fc = request[0], request[1]
    addr, words = struct.unpack(">HH", request[2:6])
    if not addr or addr > 32:
        return error_response(sid, fc, ErrorCode.ILLEGAL_DATA_ADDRESS)
    addr -= 1
    if not words or addr + words > 32:
        return error_response(sid, fc, ErrorCode.ILLEGAL_DATA_ADDRESS)
    values = [MEMO[addr + i] if sid == 1 else (~MEMO[addr + i]) & 0xFFFF for i in range(words)]
    return bytes((sid, fc, words * 2)) + struct.pack(f">{words}H", *values)


def request(sid, fc, *params):
    return bytes((sid, fc)) + struct.pack(f">{len(params)}H", *params)


class FakeTcpClient:
    def __init__(self, server):
        self.server = server
        self.targets = []
        self.requests = []

    def sync_request(self, message, host=None, port=None):
        self.targets.append((host, port))
        self.requests.append(message)
        return self.server.local_request(message)


class FakeRtuClient:
    def __init__(self, server, known_ids, failure=ReceiveTimeout):
        self.server = server
        self.known_ids = known_ids
        self.failure = failure

    def sync_request(self, message):
        if message[0] not in self.known_ids:
            raise self.failure("no answer")
        return self.server.local_request(message)


@pytest.fixture
def remote():
    server = ModbusBridge()
    server.register_worker(1, READ_HOLD_REGISTER, read_registers)
    server.register_worker(1, READ_INPUT_REGISTER, read_registers)
    server.register_worker(2, READ_HOLD_REGISTER, read_registers)
    return server


@pytest.fixture
def tcp(remote):
    return FakeTcpClient(remote)


@pytest.fixture
def rtu(remote):
    return FakeRtuClient(remote, {1, 2})


@pytest.fixture
def bridge(tcp):
    b = ModbusBridge()
    b.attach_server(3, 1, ANY_FUNCTION_CODE, tcp, "127.0.0.1", 502)
    b.attach_server(4, 2, ANY_FUNCTION_CODE, tcp, "127.0.0.1", 502)
    b.deny_function_code(4, READ_INPUT_REGISTER)
    return b


def test_regular_request(bridge, tcp):
    response = bridge.local_request(request(3, READ_HOLD_REGISTER, 3, 2))
    assert response == bytes.fromhex("03 03 04 04 05 06 07")
    assert tcp.targets == [("127.0.0.1", 502)]
    assert tcp.requests[0][0] == 1


def test_invalid_server_id(bridge):
    response = bridge.local_request(request(5, READ_HOLD_REGISTER, 3, 2))
    assert response == bytes.fromhex("05 83 E1")


def test_fc_not_supported_by_server(bridge):
    response = bridge.local_request(request(3, MASK_WRITE_REGISTER, 3, 2, 1))
    assert response == bytes.fromhex("03 96 01")


def test_fc_not_supported_by_bridge(bridge, tcp):
    response = bridge.local_request(request(4, READ_INPUT_REGISTER, 3, 2))
    assert response == bytes.fromhex("04 84 01")
    assert tcp.requests == []


def test_rtu_bridge_and_counters(bridge, rtu):
    assert bridge.local_request(request(3, READ_HOLD_REGISTER, 3, 2)) == bytes.fromhex(
        "03 03 04 04 05 06 07"
    )
    assert bridge.local_request(request(5, READ_HOLD_REGISTER, 3, 2)) == bytes.fromhex("05 83 E1")
    assert bridge.local_request(request(3, MASK_WRITE_REGISTER, 3, 2, 1)) == bytes.fromhex(
        "03 96 01"
    )
    assert bridge.local_request(request(4, READ_INPUT_REGISTER, 3, 2)) == bytes.fromhex(
        "04 84 01"
    )

    bridge.attach_server(2, 1, READ_HOLD_REGISTER, rtu)
    bridge.attach_server(6, 9, ANY_FUNCTION_CODE, rtu)
    bridge.add_function_code(2, READ_HOLD_REGISTER)

    assert bridge.servers[2].server_type is ServerType.RTU_SERVER
    assert bridge.local_request(request(2, READ_HOLD_REGISTER, 3, 2)) == bytes.fromhex(
        "02 03 04 04 05 06 07"
    )
    assert bridge.local_request(request(6, READ_HOLD_REGISTER, 3, 2)) == bytes.fromhex("06 83 E0")

    assert (bridge.message_count, bridge.error_count) == (6, 4)


def test_inverted_values_for_other_server(bridge):
    response = bridge.local_request(request(4, READ_HOLD_REGISTER, 28, 4))
    assert response == bytes.fromhex("04 03 08 C9 C8 C7 C6 C5 C4 C3 C2")


def test_client_exception_maps_to_error(remote):
    b = ModbusBridge()
    b.attach_server(7, 9, READ_HOLD_REGISTER, FakeRtuClient(remote, set(), CrcError))
    assert b.local_request(request(7, READ_HOLD_REGISTER, 1, 1)) == bytes.fromhex("07 83 E2")


def test_reattach_keeps_original_target(bridge, rtu, tcp):
    bridge.attach_server(3, 2, READ_INPUT_REGISTER, rtu)
    assert bridge.servers[3].server_id == 1
    assert bridge.servers[3].client is tcp
    response = bridge.local_request(request(3, READ_INPUT_REGISTER, 1, 1))
    assert response == bytes.fromhex("03 04 02 00 01")


@pytest.mark.parametrize(
    "method, args",
    [
        ("add_function_code", (READ_HOLD_REGISTER,)),
        ("deny_function_code", (READ_HOLD_REGISTER,)),
        ("add_request_filter", (lambda m: m,)),
        ("remove_request_filter", ()),
        ("add_response_filter", (lambda m: m,)),
        ("remove_response_filter", ()),
    ],
)
def test_unattached_alias_raises(method, args):
    b = ModbusBridge()
    with pytest.raises(KeyError):
        getattr(b, method)(9, *args)
    assert len(b.servers) == 0
    assert b.get_worker(9, READ_HOLD_REGISTER) is None
    assert b.local_request(request(9, READ_HOLD_REGISTER, 1, 1)) == bytes.fromhex("09 83 E1")


def test_request_filter_and_removal(bridge):
    def shift_address(message):
        return message[:2] + struct.pack(">H", 1) + message[4:]

    bridge.add_request_filter(3, shift_address)
    assert bridge.local_request(request(3, READ_HOLD_REGISTER, 3, 1)) == bytes.fromhex(
        "03 03 02 00 01"
    )
    bridge.remove_request_filter(3)
    assert bridge.local_request(request(3, READ_HOLD_REGISTER, 3, 1)) == bytes.fromhex(
        "03 03 02 04 05"
    )


def test_request_filter_changing_fc_restores_original(bridge):
    bridge.add_request_filter(3, lambda m: m[:1] + bytes((READ_HOLD_REGISTER,)) + m[2:])
    response = bridge.local_request(request(3, READ_INPUT_REGISTER, 3, 1))
    assert response == bytes.fromhex("03 04 02 04 05")


def test_response_filter_and_removal(bridge):
    bridge.add_response_filter(3, lambda r: r[:3] + bytes(len(r) - 3))
    assert bridge.local_request(request(3, READ_HOLD_REGISTER, 3, 1)) == bytes.fromhex(
        "03 03 02 00 00"
    )
    bridge.remove_response_filter(3)
    assert bridge.local_request(request(3, READ_HOLD_REGISTER, 3, 1)) == bytes.fromhex(
        "03 03 02 04 05"
    )


def test_response_filter_turning_into_error(bridge):
    bridge.add_response_filter(3, lambda r: error_response(r[0], r[1], ErrorCode.ILLEGAL_DATA_VALUE))
    assert bridge.local_request(request(3, READ_HOLD_REGISTER, 3, 1)) == bytes.fromhex(
        "03 83 03"
    )
    assert bridge.error_count == 1


def test_get_worker_precedence():
    def fc03(m):
        return m

    def fc_any(m):
        return m

    def sv_any(m):
        return m

    def sv_fc_any(m):
        return m

    server = ModbusBridge()
    server.register_worker(1, READ_HOLD_REGISTER, fc03)
    server.register_worker(2, READ_HOLD_REGISTER, fc03)
    server.register_worker(2, ANY_FUNCTION_CODE, fc_any)
    server.register_worker(ANY_SERVER, READ_HOLD_REGISTER, sv_any)
    server.register_worker(ANY_SERVER, ANY_FUNCTION_CODE, sv_fc_any)

    assert server.get_worker(1, READ_HOLD_REGISTER) is fc03
    assert server.get_worker(2, READ_HOLD_REGISTER) is fc03
    assert server.get_worker(8, READ_HOLD_REGISTER) is sv_any
    assert server.get_worker(2, USER_DEFINED_66) is fc_any
    assert server.get_worker(54, WRITE_MULT_REGISTERS) is sv_fc_any


def test_get_worker_missing_returns_none():
    server = ModbusBridge()
    server.register_worker(1, READ_HOLD_REGISTER, read_registers)
    assert server.get_worker(54, WRITE_MULT_REGISTERS) is None


def test_local_request_unknown_fc_for_known_server(remote):
    assert remote.local_request(request(1, 0x07)) == bytes.fromhex("01 87 01")


def test_local_request_too_short():
    with pytest.raises(ValueError):
        ModbusBridge().local_request(b"\x01")


def test_register_worker_rejects_out_of_range():
    with pytest.raises(ValueError):
        ModbusBridge().register_worker(300, READ_HOLD_REGISTER, read_registers)


@pytest.mark.parametrize(
    "sid, fc, error, expected",
    [
        (0, 0x03, 0x02, "00 83 02"),
        (1, 0x9F, 0x02, "01 9F 02"),
        (1, 0x05, 0xE1, "01 85 E1"),
        (1, 0x05, 0x73, "01 85 73"),
    ],
)
def test_error_response(sid, fc, error, expected):
    assert error_response(sid, fc, error) == bytes.fromhex(expected)


@pytest.mark.parametrize(
    "response, expected",
    [
        ("01 83 02", ErrorCode.ILLEGAL_DATA_ADDRESS),
        ("01 03 02 00 01", ErrorCode.SUCCESS),
        ("E0", ErrorCode.TIMEOUT),
        ("01 87 46", 0x46),
        ("01 07", ErrorCode.SUCCESS),
    ],
)
def test_response_error(response, expected):
    assert response_error(bytes.fromhex(response)) == expected