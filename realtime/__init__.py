"""
Realtime Package

Keeps every live session of a user in step by pushing jar, transaction and
balance changes as they happen.
"""

from .hub import RealtimeHub, Session
from .websocket import WebSocketSession, serve_connection

__all__ = [
    "RealtimeHub",
    "Session",
    "WebSocketSession",
    "serve_connection",
]
