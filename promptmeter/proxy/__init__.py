"""Metering proxy server."""

from .background import TaskScheduler
from .server import MeteringProxy, create_app, run_server
from .stream import SSEFrameDecoder, StreamAccumulator, StreamCapture

__all__ = [
    "MeteringProxy",
    "SSEFrameDecoder",
    "StreamAccumulator",
    "StreamCapture",
    "TaskScheduler",
    "create_app",
    "run_server",
]
