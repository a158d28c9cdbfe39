"""Real-time one-to-one chat relay over WebSockets."""

__version__ = "1.0.0"
