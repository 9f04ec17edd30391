"""termbridge — serve an interactive program in a PTY over WebSocket."""

__version__ = "0.1.0"
