"""Client-side wire protocol for dqlite clusters: messages, connections and leader discovery."""

__version__ = "0.1.0"

__all__ = [
    "codec",
    "config",
    "connector",
    "constants",
    "errors",
    "log",
    "message",
    "node",
    "protocol",
    "store",
    "tracing",
]