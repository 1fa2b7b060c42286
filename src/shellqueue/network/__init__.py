"""Control socket: wire protocol, authentication and TLS."""

from .protocol import FramedConnection, FrameDecoder
from .gateway import Gateway
from .client import Client, RequestFailed

__all__ = [
    "FramedConnection",
    "FrameDecoder",
    "Gateway",
    "Client",
    "RequestFailed",
]
