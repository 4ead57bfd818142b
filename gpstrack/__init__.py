"""GPS tracker gateway: device protocols, subscriber fan-out and live streaming."""

__version__ = "0.1.0"