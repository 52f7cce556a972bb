"""Modbus RTU and ASCII framing: CRC, LRC, send and receive over a serial line."""

from __future__ import annotations

import enum
import logging
import time
from typing import Callable, Protocol

__all__ = [
    "RtuError",
    "ReceiveTimeout",
    "CrcError",
    "PacketLengthError",
    "AsciiInvalidChar",
    "AsciiCrcError",
    "AsciiFrameError",
    "calc_crc",
    "valid_crc",
    "add_crc",
    "calculate_interval",
    "encode_ascii",
    "rts_auto",
    "RtuTransport",
]

log = logging.getLogger(__name__)

BUFFER_SIZE = 512
MIN_INTERVAL_US = 1750

RtsCallback = Callable[[bool], None]


class SerialLike(Protocol):
    """The subset of a non-blocking serial port the transport needs."""

    @property
    def in_waiting(self) -> int: ...

    def read(self, size: int = 1) -> bytes: ...

    def write(self, data: bytes) -> object: ...

    def flush(self) -> None: ...


class RtuError(Exception):
    """Base class for serial framing errors."""


class ReceiveTimeout(RtuError):
    """No complete message arrived in time."""


class CrcError(RtuError):
    """The CRC16 of an RTU frame did not match."""


class PacketLengthError(RtuError):
    """A frame was too short, too long or ended in the middle of a byte."""


class AsciiInvalidChar(RtuError):
    """A character outside the Modbus ASCII alphabet was received."""


class AsciiCrcError(RtuError):
    """The LRC of an ASCII frame did not match."""


class AsciiFrameError(RtuError):
    """An ASCII frame's CR was not followed by LF."""


def _build_crc_table() -> tuple[int, ...]:
    table = []
    for value in range(256):
        crc = value
        for _ in range(8):
            crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _build_crc_table()


def calc_crc(data: bytes) -> int:
    """Return the Modbus CRC16 of *data*; the low byte goes on the wire first."""
    crc = 0xFFFF
    for byte in data:
        crc = (crc >> 8) ^ _CRC_TABLE[(crc ^ byte) & 0xFF]
    return crc


def valid_crc(data: bytes, crc: int | None = None) -> bool:
    """Check *data* against *crc*, or against its own trailing two CRC bytes."""
    if crc is None:
        if len(data) < 2:
            return False
        crc = data[-2] | (data[-1] << 8)
        data = data[:-2]
    return calc_crc(data) == crc


def add_crc(data: bytes) -> bytes:
    """Return *data* with its CRC16 appended, low byte first."""
    crc = calc_crc(data)
    return bytes(data) + bytes((crc & 0xFF, (crc >> 8) & 0xFF))


def calculate_interval(baud_rate: int) -> int:
    """Return the minimal silent gap between frames in microseconds."""
    if baud_rate <= 0:
        raise ValueError("baud rate must be positive")
    interval = max(35_000_000 // baud_rate, MIN_INTERVAL_US)
    log.debug("Calc interval(%d)=%d", baud_rate, interval)
    return interval


def _lrc(data: bytes) -> int:
    return (-sum(data)) & 0xFF


def encode_ascii(data: bytes) -> bytes:
    """Frame *data* as a Modbus ASCII message with LRC, lead-in and lead-out."""
    payload = bytes(data) + bytes((_lrc(data),))
    return b":" + payload.hex().upper().encode("ascii") + b"\r\n"


def rts_auto(level: bool) -> None:
    """RTS callback for adapters that switch direction by themselves."""


_LEAD_IN = 0xF0
_CR = 0xF1
_LF = 0xF2

_ASCII_READ: dict[int, int] = {
    **{ord(c): int(c, 16) for c in "0123456789ABCDEFabcdef"},
    ord(":"): _LEAD_IN,
    ord("\r"): _CR,
    ord("\n"): _LF,
}


class _AsciiState(enum.Enum):
    WAIT_DATA = enum.auto()
    DATA = enum.auto()
    WAIT_LEAD_OUT = enum.auto()


def _micros() -> int:
    return time.perf_counter_ns() // 1000


class RtuTransport:
    """Sends and receives Modbus frames over a non-blocking serial port.

    *interval* is the silent gap between frames in microseconds; *rts* is
    called with True before and False after each transmission.
    """

    def __init__(
        self,
        serial: SerialLike,
        interval: int = MIN_INTERVAL_US,
        rts: RtsCallback = rts_auto,
        ascii_mode: bool = False,
    ) -> None:
        self.serial = serial
        self.interval = interval
        self.rts = rts
        self.ascii_mode = ascii_mode
        self._last_micros = 0

    def _drain(self) -> None:
        while self.serial.in_waiting:
            self.serial.read(self.serial.in_waiting)

    def send(self, data: bytes) -> None:
        """Send *data*, adding CRC or ASCII framing as the mode requires."""
        self._drain()
        if self.ascii_mode:
            frame = encode_ascii(data)
        else:
            frame = add_crc(data)
            elapsed = _micros() - self._last_micros
            if elapsed < self.interval:
                time.sleep((self.interval - elapsed) / 1_000_000)
        self.rts(True)
        self.serial.write(frame)
        self.serial.flush()
        self.rts(False)
        log.debug("Sent packet %s", bytes(data).hex(" "))
        self._last_micros = _micros()

    def receive(self, timeout: float = 1.0, skip_leading_zero_bytes: bool = False) -> bytes:
        """Wait up to *timeout* seconds for a frame and return its payload."""
        if self.ascii_mode:
            message = self._receive_ascii(timeout)
        else:
            message = self._receive_rtu(timeout, skip_leading_zero_bytes)
        log.debug("Received packet %s", message.hex(" "))
        return message

    def _receive_rtu(self, timeout: float, skip_leading_zero_bytes: bool) -> bytes:
        start = time.monotonic()
        self._last_micros = _micros()
        buffer = bytearray()

        while True:
            chunk = self.serial.read(1)
            if chunk:
                self._last_micros = _micros()
                if chunk[0] or not skip_leading_zero_bytes:
                    buffer += chunk
                    break
            else:
                if time.monotonic() - start >= timeout:
                    raise ReceiveTimeout("no data received")
                time.sleep(0.001)

        while True:
            while self.serial.in_waiting:
                buffer += self.serial.read(1)
                self._last_micros = _micros()
                if len(buffer) >= BUFFER_SIZE:
                    raise PacketLengthError("frame exceeds buffer size")
            if _micros() - self._last_micros >= self.interval:
                break

        log.debug("Raw buffer received %s", buffer.hex(" "))
        if len(buffer) < 4:
            raise PacketLengthError(f"frame of {len(buffer)} bytes is too short")
        if not valid_crc(bytes(buffer)):
            raise CrcError("CRC mismatch")
        return bytes(buffer[:-2])

    def _receive_ascii(self, timeout: float) -> bytes:
        state = _AsciiState.WAIT_DATA
        buffer = bytearray()
        high_nibble: int | None = None
        last_activity = time.monotonic()

        while True:
            if time.monotonic() - last_activity >= timeout:
                raise ReceiveTimeout("no complete ASCII frame received")
            chunk = self.serial.read(1)
            if not chunk:
                time.sleep(0.001)
                continue
            last_activity = time.monotonic()

            value = _ASCII_READ.get(chunk[0])
            if value is None:
                raise AsciiInvalidChar(f"invalid character {chunk[0]:#04x}")

            if state is _AsciiState.WAIT_DATA:
                if value == _LEAD_IN:
                    state = _AsciiState.DATA
            elif state is _AsciiState.DATA:
                if value == _CR:
                    if high_nibble is not None:
                        raise PacketLengthError("frame ends in the middle of a byte")
                    state = _AsciiState.WAIT_LEAD_OUT
                elif value < 0x10:
                    if high_nibble is None:
                        high_nibble = value
                    else:
                        buffer.append((high_nibble << 4) | value)
                        high_nibble = None
                else:
                    raise AsciiInvalidChar("unexpected control character in data")
            else:
                if value != _LF:
                    raise AsciiFrameError("CR not followed by LF")
                log.debug("Raw buffer received %s", buffer.hex(" "))
                if len(buffer) < 3:
                    raise PacketLengthError(f"frame of {len(buffer)} bytes is too short")
                if sum(buffer) & 0xFF:
                    raise AsciiCrcError("LRC mismatch")
                return bytes(buffer[:-1])