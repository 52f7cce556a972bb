"""A Modbus server that forwards requests to other servers through clients."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Union

from modbridge.rtu import (
    AsciiCrcError,
    AsciiFrameError,
    AsciiInvalidChar,
    CrcError,
    PacketLengthError,
    ReceiveTimeout,
    RtuError,
)

__all__ = [
    "ANY_SERVER",
    "ANY_FUNCTION_CODE",
    "ErrorCode",
    "ServerType",
    "ServerData",
    "ModbusBridge",
    "error_response",
    "response_error",
]

log = logging.getLogger(__name__)

ANY_SERVER = 0x00
ANY_FUNCTION_CODE = 0x00

Worker = Callable[[bytes], bytes]


class ErrorCode(enum.IntEnum):
    """Modbus exception codes and the library's own error codes."""

    SUCCESS = 0x00
    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SERVER_DEVICE_FAILURE = 0x04
    ACKNOWLEDGE = 0x05
    SERVER_DEVICE_BUSY = 0x06
    NEGATIVE_ACKNOWLEDGE = 0x07
    MEMORY_PARITY_ERROR = 0x08
    GATEWAY_PATH_UNAVAIL = 0x0A
    GATEWAY_TARGET_NO_RESP = 0x0B
    TIMEOUT = 0xE0
    INVALID_SERVER = 0xE1
    CRC_ERROR = 0xE2
    FC_MISMATCH = 0xE3
    SERVER_ID_MISMATCH = 0xE4
    PACKET_LENGTH_ERROR = 0xE5
    PARAMETER_COUNT_ERROR = 0xE6
    PARAMETER_LIMIT_ERROR = 0xE7
    REQUEST_QUEUE_FULL = 0xE8
    ILLEGAL_IP_OR_PORT = 0xE9
    IP_CONNECTION_FAILED = 0xEA
    TCP_HEAD_MISMATCH = 0xEB
    EMPTY_MESSAGE = 0xEC
    ASCII_FRAME_ERR = 0xED
    ASCII_CRC_ERR = 0xEE
    ASCII_INVALID_CHAR = 0xEF
    BROADCAST_ERROR = 0xF0
    UNDEFINED_ERROR = 0xFF


class ServerType(enum.Enum):
    """How an attached server is reached."""

    TCP_SERVER = enum.auto()
    RTU_SERVER = enum.auto()


class ModbusClient(Protocol):
    """A client that sends a request and waits for the response.

    TCP clients are given the target host and port as keyword arguments.
    """

    def sync_request(self, message: bytes, **target: object) -> bytes: ...


def _code(error: int) -> Union[ErrorCode, int]:
    try:
        return ErrorCode(error)
    except ValueError:
        return error


def error_response(server_id: int, function_code: int, error: int) -> bytes:
    """Build an error response: server ID, function code with bit 7 set, error code."""
    return bytes((server_id & 0xFF, (function_code | 0x80) & 0xFF, int(error) & 0xFF))


def response_error(response: bytes) -> Union[ErrorCode, int]:
    """Return the error a response carries, or ErrorCode.SUCCESS."""
    if len(response) > 2:
        if response[1] & 0x80:
            return _code(response[2])
    elif len(response) == 1:
        return _code(response[0])
    return ErrorCode.SUCCESS


_EXCEPTION_CODES: tuple[tuple[type[BaseException], ErrorCode], ...] = (
    (ReceiveTimeout, ErrorCode.TIMEOUT),
    (CrcError, ErrorCode.CRC_ERROR),
    (PacketLengthError, ErrorCode.PACKET_LENGTH_ERROR),
    (AsciiInvalidChar, ErrorCode.ASCII_INVALID_CHAR),
    (AsciiCrcError, ErrorCode.ASCII_CRC_ERR),
    (AsciiFrameError, ErrorCode.ASCII_FRAME_ERR),
    (TimeoutError, ErrorCode.TIMEOUT),
    (ConnectionError, ErrorCode.IP_CONNECTION_FAILED),
)


def _error_for(exc: BaseException) -> ErrorCode:
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return code
    return ErrorCode.UNDEFINED_ERROR


@dataclass
class ServerData:
    """Everything needed to reach one attached server."""

    server_id: int
    client: ModbusClient
    server_type: ServerType = ServerType.RTU_SERVER
    host: str = "0.0.0.0"
    port: int = 0
    request_filter: Optional[Worker] = None
    response_filter: Optional[Worker] = None


def _check_byte(name: str, value: int) -> None:
    if not 0 <= value <= 0xFF:
        raise ValueError(f"{name} must be in 0..255, got {value}")


class ModbusBridge:
    """A Modbus server whose server IDs are aliases for servers reached via clients.

    Workers are looked up by server ID and function code; ANY_SERVER and
    ANY_FUNCTION_CODE act as wildcards, the specific entry taking precedence.
    """

    def __init__(self) -> None:
        self._workers: dict[tuple[int, int], Worker] = {}
        self.servers: dict[int, ServerData] = {}
        self.message_count = 0
        self.error_count = 0

    # --- server side -----------------------------------------------------------------

    def register_worker(self, server_id: int, function_code: int, worker: Worker) -> None:
        """Have *worker* answer requests for *server_id* and *function_code*."""
        _check_byte("server ID", server_id)
        _check_byte("function code", function_code)
        self._workers[(server_id, function_code)] = worker
        log.debug("Registered worker for %02X/%02X", server_id, function_code)

    def get_worker(self, server_id: int, function_code: int) -> Optional[Worker]:
        """Return the worker that would handle the request, or None."""
        for sid in (server_id, ANY_SERVER):
            for fc in (function_code, ANY_FUNCTION_CODE):
                worker = self._workers.get((sid, fc))
                if worker is not None:
                    return worker
        return None

    def _knows_server(self, server_id: int) -> bool:
        return any(sid == server_id for sid, _ in self._workers)

    def local_request(self, message: bytes) -> bytes:
        """Process a request locally and return the response."""
        message = bytes(message)
        if len(message) < 2:
            raise ValueError("a request needs at least a server ID and a function code")
        server_id, function_code = message[0], message[1]
        worker = self.get_worker(server_id, function_code)
        if worker is None:
            error = (
                ErrorCode.ILLEGAL_FUNCTION
                if self._knows_server(server_id)
                else ErrorCode.INVALID_SERVER
            )
            response = error_response(server_id, function_code, error)
        else:
            response = bytes(worker(message))
        self.message_count += 1
        if response_error(response) != ErrorCode.SUCCESS:
            self.error_count += 1
        return response

    # --- bridge side -----------------------------------------------------------------

    def _server(self, alias_id: int) -> ServerData:
        try:
            return self.servers[alias_id]
        except KeyError:
            log.error("Server %d not attached to bridge!", alias_id)
            raise KeyError(f"server {alias_id} not attached to bridge") from None

    def attach_server(
        self,
        alias_id: int,
        server_id: int,
        function_code: int,
        client: ModbusClient,
        host: str = "0.0.0.0",
        port: int = 0,
    ) -> None:
        """Make *server_id*, reached via *client*, answer as *alias_id*.

        A nonzero *port* marks a TCP server at *host*. An alias already
        attached keeps its target; only the function code is added.
        """
        _check_byte("alias ID", alias_id)
        _check_byte("server ID", server_id)
        if alias_id not in self.servers:
            if port:
                self.servers[alias_id] = ServerData(
                    server_id, client, ServerType.TCP_SERVER, host, port
                )
                log.debug("(TCP): %02X->%02X %s:%d", alias_id, server_id, host, port)
            else:
                self.servers[alias_id] = ServerData(server_id, client)
                log.debug("(RTU): %02X->%02X", alias_id, server_id)
        self.add_function_code(alias_id, function_code)

    def add_function_code(self, alias_id: int, function_code: int) -> None:
        """Forward *function_code* requests for *alias_id* to its server."""
        self._server(alias_id)
        self.register_worker(alias_id, function_code, self._bridge_worker)
        log.debug("FC %02X added for server %02X", function_code, alias_id)

    def deny_function_code(self, alias_id: int, function_code: int) -> None:
        """Answer *function_code* requests for *alias_id* with ILLEGAL_FUNCTION."""
        self._server(alias_id)
        self.register_worker(alias_id, function_code, self._deny_worker)
        log.debug("FC %02X blocked for server %02X", function_code, alias_id)

    def add_request_filter(self, alias_id: int, request_filter: Worker) -> None:
        """Pass requests for *alias_id* through *request_filter* before forwarding."""
        self._server(alias_id).request_filter = request_filter

    def remove_request_filter(self, alias_id: int) -> None:
        """Stop filtering requests for *alias_id*."""
        self._server(alias_id).request_filter = None

    def add_response_filter(self, alias_id: int, response_filter: Worker) -> None:
        """Pass responses from *alias_id*'s server through *response_filter*."""
        self._server(alias_id).response_filter = response_filter

    def remove_response_filter(self, alias_id: int) -> None:
        """Stop filtering responses for *alias_id*."""
        self._server(alias_id).response_filter = None

    def _forward(self, server: ServerData, message: bytes) -> bytes:
        try:
            if server.server_type is ServerType.TCP_SERVER:
                return bytes(
                    server.client.sync_request(message, host=server.host, port=server.port)
                )
            return bytes(server.client.sync_request(message))
        except (RtuError, OSError) as exc:
            log.debug("Request failed: %s", exc)
            return error_response(message[0], message[1], _error_for(exc))

    def _bridge_worker(self, message: bytes) -> bytes:
        alias_id, function_code = message[0], message[1]
        server = self.servers.get(alias_id)
        if server is None:
            return error_response(alias_id, function_code, ErrorCode.INVALID_SERVER)

        if server.request_filter is not None:
            message = bytes(server.request_filter(message))
        message = bytes((server.server_id,)) + message[1:]
        log.debug("Request (%02X/%02X) sent", server.server_id, message[1])

        response = self._forward(server, message)
        if server.response_filter is not None:
            response = bytes(server.response_filter(response))

        error = response_error(response)
        if len(response) < 2:
            if error == ErrorCode.SUCCESS:
                error = ErrorCode.EMPTY_MESSAGE
            return error_response(alias_id, function_code, error)
        restored_fc = function_code | 0x80 if error != ErrorCode.SUCCESS else function_code
        return bytes((alias_id, restored_fc & 0xFF)) + response[2:]

    @staticmethod
    def _deny_worker(message: bytes) -> bytes:
        return error_response(message[0], message[1], ErrorCode.ILLEGAL_FUNCTION)