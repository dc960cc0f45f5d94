"""IPC between the flow CLI and the daemon over a Unix domain socket."""

from .client import DaemonClient
from .protocol import Request, decode_request, decode_response, encode_message
from .server import DaemonServer, run_daemon

__all__ = [
    "DaemonClient",
    "DaemonServer",
    "Request",
    "decode_request",
    "decode_response",
    "encode_message",
    "run_daemon",
]
