"""web-overlay-stream: Web page → headless browser → FFmpeg rawvideo over TCP."""

from overlay_stream.config import LoggingConfig, NotifierConfig, ServiceConfig, StreamConfig
from overlay_stream.encoder import FFmpegEncoder, ProcessOutcome
from overlay_stream.notifier import StopNotifier
from overlay_stream.ports import PortPool
from overlay_stream.registry import SessionRegistry
from overlay_stream.renderer import PlaywrightRenderer
from overlay_stream.session import SessionState, StreamEndpoint, StreamSession

__all__ = [
    "FFmpegEncoder",
    "LoggingConfig",
    "NotifierConfig",
    "PlaywrightRenderer",
    "PortPool",
    "ProcessOutcome",
    "ServiceConfig",
    "SessionRegistry",
    "SessionState",
    "StopNotifier",
    "StreamConfig",
    "StreamEndpoint",
    "StreamSession",
]
