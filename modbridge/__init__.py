"""Modbus RTU/ASCII serial framing and a bridge forwarding Modbus requests under alias IDs."""

__version__ = "0.1.0"
__all__ = ["bridge", "rtu"]