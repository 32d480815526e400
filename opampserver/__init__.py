"""Asyncio server side of the OpAMP agent management protocol over WebSocket and plain HTTP."""

__version__ = "0.1.0"
__all__ = ["types", "connections", "server"]