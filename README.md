# modbridge

Modbus serial framing helpers and a bridge that forwards Modbus requests from alias server IDs to real servers.

## `modbridge.rtu`: serial framing

- `calc_crc(data)` returns the Modbus CRC16 of a byte string. On the wire the low byte comes first.
- `valid_crc(data, crc=None)` checks `data` against `crc`. Without `crc`, it checks `data` against its own last two bytes, which hold the CRC low byte first.
- `add_crc(data)` returns `data` with its CRC appended, low byte first.
- `calculate_interval(baud_rate)` returns the silent gap between frames in microseconds. This is 3.5 character times, and never less than 1750. A baud rate of zero or below raises `ValueError`.
- `encode_ascii(data)` builds a Modbus ASCII frame. The frame is `:`, then the upper-case hex digits of the data and its LRC, then `\r\n`.
- `rts_auto(level)` is a no-op RTS callback. Use it for adapters that switch direction by themselves.

`RtuTransport(serial, interval=1750, rts=rts_auto, ascii_mode=False)` sends and receives frames over a non-blocking serial object. That object must have:

- an `in_waiting` count;
- `read(size)`, which returns `b""` when no data is waiting;
- `write(data)`;
- `flush()`.

A pyserial port opened with `timeout=0` meets this.

- `send(data)` works as follows:
  - It first discards any pending input.
  - In RTU mode it appends the CRC and waits out the inter-frame interval.
  - In ASCII mode it frames the data with `encode_ascii`.
  - It calls `rts(True)` before writing and `rts(False)` after flushing.
- `receive(timeout=1.0, skip_leading_zero_bytes=False)` waits up to `timeout` seconds for a frame. It returns the payload without the CRC or LRC. In RTU mode a frame ends after a silent gap of `interval` microseconds.

Receive errors are raised as subclasses of `RtuError`:

| Exception | Raised when |
|---|---|
| `ReceiveTimeout` | nothing, or no complete frame, arrived in time |
| `CrcError` | the RTU CRC did not match |
| `PacketLengthError` | a frame is too short, reaches 512 bytes (RTU), or ends mid-byte (ASCII) |
| `AsciiInvalidChar` | a character outside the ASCII frame alphabet arrived |
| `AsciiCrcError` | the ASCII LRC did not match |
| `AsciiFrameError` | CR was not followed by LF |

```python
from modbridge.rtu import add_crc, valid_crc, calculate_interval, encode_ascii

frame = add_crc(bytes([0x01, 0x03, 0x00, 0x10, 0x00, 0x01]))
assert valid_crc(frame)
print(calculate_interval(9600))   # 3645
print(encode_ascii(b"\x01\x03"))  # b':0103FC\r\n'
```

## `modbridge.bridge`: request bridge

`ModbusBridge` is a Modbus server.

### Workers

Workers are callables that take a request and return a response, both as `bytes`. They are registered per server ID and function code:

- `register_worker(server_id, function_code, worker)` registers a worker.
- `get_worker(server_id, function_code)` finds the worker for a request. `ANY_SERVER` and `ANY_FUNCTION_CODE` act as wildcards, and the specific entry wins.
- `local_request(message)` runs a request through the matching worker and returns the response.
  - If no worker matches, the response carries `ILLEGAL_FUNCTION` when the server ID is known and `INVALID_SERVER` otherwise.
  - Every call raises `message_count` by one.
  - Every error response raises `error_count` by one.

### Attaching servers

Alias IDs are tied to real servers through a client object. That object must offer `sync_request(message, **target)`, which sends a request and returns the response. TCP targets receive `host=` and `port=` keyword arguments.

- `attach_server(alias_id, server_id, function_code, client, host="0.0.0.0", port=0)` records the target and forwards `function_code`. A nonzero port marks a TCP server, and the other entries are RTU servers. If the alias is already attached, only the function code is added.
- `add_function_code(alias_id, function_code)` forwards one more function code.
- `deny_function_code(alias_id, function_code)` answers that function code with `ILLEGAL_FUNCTION`.
- `add_request_filter` and `remove_request_filter` set or clear a callable. It is applied to requests before they are forwarded.
- `add_response_filter` and `remove_response_filter` do the same for responses.
- These methods raise `KeyError` for an alias that is not attached.

### What a forwarded request goes through

1. The server ID is replaced with the real one.
2. The client's answer gets the alias ID back, together with the original function code. Bit 7 of the function code is set if the answer is an error.
3. If the client raises an `RtuError` or `OSError`, the bridge turns it into an error response:
   - `TIMEOUT` for a timeout;
   - `CRC_ERROR` for a CRC mismatch;
   - `IP_CONNECTION_FAILED` for a connection error;
   - the matching code for the other `RtuError` subclasses;
   - `UNDEFINED_ERROR` otherwise.
4. An answer shorter than two bytes becomes an error response. It carries the single byte's error code, or `EMPTY_MESSAGE` if there is none.

### Helpers

- `error_response(server_id, function_code, error)` builds a three-byte error response.
- `response_error(response)` returns the `ErrorCode`, or the raw int for an unknown code, that a response carries. It returns `ErrorCode.SUCCESS` for a normal response.
- `ServerType` and `ServerData` describe the attached servers. They are kept in the `servers` dict.

```python
from modbridge.bridge import ModbusBridge


class EchoClient:
    def sync_request(self, message, **target):
        return bytes([message[0], message[1], 2, 0xBE, 0xEF])


bridge = ModbusBridge()
bridge.attach_server(3, 1, 0x03, EchoClient())
bridge.deny_function_code(3, 0x04)
print(bridge.local_request(bytes([3, 0x03, 0x00, 0x03, 0x00, 0x01])).hex(" "))  # 03 03 02 be ef
print(bridge.local_request(bytes([3, 0x04, 0x00, 0x03, 0x00, 0x01])).hex(" "))  # 03 84 01
print(bridge.local_request(bytes([5, 0x03, 0x00, 0x03, 0x00, 0x01])).hex(" "))  # 05 83 e1
```

## What it does not do

The package provides no Modbus clients, no RTU or TCP server, and no command-line program.

- `ModbusBridge.local_request` is the only way requests enter the bridge. Nothing listens on a serial port or a network socket.
- Clients that reach the attached servers must be supplied by the caller.

## Installing and testing

```
pip install .
pip install .[test]
pytest
```