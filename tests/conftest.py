"""テスト共通のフェイク (レンダラー / エンコーダ / ポートプール)."""

import asyncio
import io
import signal

import pytest
from PIL import Image

from overlay_stream.config import StreamConfig
from overlay_stream.encoder import ProcessOutcome
from overlay_stream.ports import PortPool
from overlay_stream.session import StreamSession


def make_png(width: int = 4, height: int = 2, color=(255, 0, 0, 128)) -> bytes:
    """テスト用 PNG を生成."""
    buf = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeRenderer:
    """PlaywrightRenderer の代わり."""

    def __init__(self, width: int, height: int, *, navigate_error=None, close_error=None):
        self.width = width
        self.height = height
        self.navigate_error = navigate_error
        self.close_error = close_error
        self.capture_error: Exception | None = None
        self.viewport: tuple[int, int] | None = (width, height)
        self.frame = make_png(width, height)
        self.navigated_to: str | None = None
        self.captures = 0
        self.close_count = 0
        # clear するとキャプチャが set まで止まる
        self.hold = asyncio.Event()
        self.hold.set()
        self.capturing = asyncio.Event()
        # clear すると close() が set まで止まる
        self.close_gate = asyncio.Event()
        self.close_gate.set()

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    @property
    def viewport_size(self):
        return self.viewport

    async def navigate(self, url: str) -> None:
        if self.navigate_error:
            raise self.navigate_error
        self.navigated_to = url

    async def capture_frame(self) -> bytes:
        self.capturing.set()
        await self.hold.wait()
        self.captures += 1
        if self.capture_error:
            raise self.capture_error
        return self.frame

    async def close(self) -> None:
        await self.close_gate.wait()
        self.close_count += 1
        if self.close_error:
            raise self.close_error


class FakeEncoder:
    """FFmpegEncoder の代わり."""

    def __init__(self, config, host, port, width, height, *, auto_ready=True, start_error=None):
        self.config = config
        self.host = host
        self.port = port
        self.width = width
        self.height = height
        self.auto_ready = auto_ready
        self.start_error = start_error
        self.block_write = False
        self.frames: list[bytes] = []
        self.started = False
        self.stop_count = 0
        self.outcome: ProcessOutcome | None = None
        self._ready = asyncio.Event()
        self._exited = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self.stop_count > 0

    async def start(self) -> None:
        if self.start_error:
            raise self.start_error
        self.started = True
        if self.auto_ready:
            self._ready.set()

    def signal_ready(self) -> None:
        self._ready.set()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def write(self, data: bytes, *, cancel: asyncio.Event) -> bool:
        self.frames.append(data)
        if self.block_write:
            await cancel.wait()
            return False
        return True

    def exit(self, outcome: ProcessOutcome) -> None:
        if self.outcome is None:
            self.outcome = outcome
        self._exited.set()

    async def wait(self) -> ProcessOutcome:
        await self._exited.wait()
        return self.outcome

    async def stop(self) -> ProcessOutcome | None:
        self.stop_count += 1
        if not self.started:
            return None
        self.exit(ProcessOutcome.signaled(signal.SIGTERM))
        return self.outcome


class StaticPortPool(PortPool):
    """bind 確認をしない PortPool."""

    def _is_free(self, port: int) -> bool:
        return True


class Fakes:
    """フェイクの生成設定と生成済みインスタンス."""

    def __init__(self):
        self.renderers: list[FakeRenderer] = []
        self.encoders: list[FakeEncoder] = []
        self.navigate_error: Exception | None = None
        self.close_error: Exception | None = None
        self.viewport: tuple[int, int] | None = None
        self.auto_ready = True
        self.start_error: Exception | None = None

    async def launch_renderer(self, width: int, height: int) -> FakeRenderer:
        renderer = FakeRenderer(
            width, height, navigate_error=self.navigate_error, close_error=self.close_error
        )
        if self.viewport is not None:
            renderer.viewport = self.viewport
        self.renderers.append(renderer)
        return renderer

    def create_encoder(self, config, host, port, width, height) -> FakeEncoder:
        encoder = FakeEncoder(
            config,
            host,
            port,
            width,
            height,
            auto_ready=self.auto_ready,
            start_error=self.start_error,
        )
        self.encoders.append(encoder)
        return encoder


async def wait_for_condition(predicate, timeout: float = 2.0) -> None:
    """predicate が True になるまで待つ（テスト用）."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return wait_for_condition


@pytest.fixture
def stream_config() -> StreamConfig:
    return StreamConfig(
        width=4,
        height=2,
        frame_interval=0.005,
        launch_timeout=2.0,
        decode_timeout=2.0,
        stop_retry_interval=0.01,
        encoder_stop_timeout=0.5,
    )


@pytest.fixture
def fakes() -> Fakes:
    return Fakes()


@pytest.fixture
def port_pool(stream_config) -> StaticPortPool:
    return StaticPortPool(
        stream_config.listen_host,
        stream_config.port_range_start,
        stream_config.port_range_end,
    )


@pytest.fixture
def make_session(stream_config, fakes, port_pool):
    """フェイク付き StreamSession のファクトリ."""

    def _make(url: str = "https://example.com", corr_id: str = "test", **kwargs):
        config = kwargs.pop("config", stream_config)
        return StreamSession(
            corr_id,
            url,
            config,
            port_pool=kwargs.pop("port_pool", port_pool),
            renderer_launcher=fakes.launch_renderer,
            encoder_factory=fakes.create_encoder,
            **kwargs,
        )

    return _make
