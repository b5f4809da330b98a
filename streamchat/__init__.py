"""Streaming chat client engine with session history and a websocket front-end."""

__version__ = "0.1.0"
