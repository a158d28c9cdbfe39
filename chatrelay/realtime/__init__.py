from .connection import Connection, ConnectionId, Transport
from .registry import Registry
from .router import Router
from .server import ChatServer

__all__ = ["ChatServer", "Connection", "ConnectionId", "Registry", "Router", "Transport"]
