"""SessionRegistry のテスト.

StreamSession はフェイクのレンダラー / エンコーダで動かし、
停止通知は httpx.MockTransport で受ける。
"""

import asyncio
import json

import httpx
import pytest

from overlay_stream.config import NotifierConfig, StreamConfig
from overlay_stream.encoder import ProcessOutcome
from overlay_stream.errors import (
    DuplicateSessionError,
    EncoderProcessError,
    LaunchError,
    SessionRunError,
    SessionStopError,
    TeardownError,
)
from overlay_stream.notifier import StopNotifier
from overlay_stream.registry import SessionRegistry
from overlay_stream.session import SessionState, StreamSession

CALLBACK_URL = "http://callback.test/overlay"


class CallbackRecorder:
    """停止通知の受信側."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"code": 0})

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


async def _no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def callback() -> CallbackRecorder:
    return CallbackRecorder()


@pytest.fixture
def registry(stream_config, fakes, port_pool, make_session, callback):
    notifier = StopNotifier(
        NotifierConfig(url=CALLBACK_URL),
        client=httpx.AsyncClient(transport=httpx.MockTransport(callback)),
        sleep=_no_sleep,
    )
    return SessionRegistry(
        stream_config,
        notifier,
        port_pool=port_pool,
        session_factory=lambda url, corr_id: make_session(url, corr_id),
    )


# ============================================================
# run
# ============================================================


class TestRun:
    """run() のテスト."""

    @pytest.mark.asyncio
    async def test_run_registers_session(self, registry):
        endpoint = await registry.run("https://example.com", "c1")

        assert endpoint.host == "127.0.0.1"
        assert endpoint.port == 10000
        assert "c1" in registry
        assert len(registry) == 1
        assert registry.get("c1").is_ready

        await registry.stop("c1")
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_duplicate_run_rejected(self, registry, fakes, wait_until):
        """1 回目の readiness 待ち中でも 2 回目は即座に拒否される."""
        fakes.auto_ready = False
        first = asyncio.create_task(registry.run("https://example.com", "c1"))
        await wait_until(lambda: fakes.encoders)

        with pytest.raises(DuplicateSessionError) as exc_info:
            await registry.run("https://example.org", "c1")
        assert exc_info.value.corr_id == "c1"

        # 1 回目は影響を受けない
        assert not first.done()
        fakes.encoders[0].signal_ready()
        endpoint = await asyncio.wait_for(first, timeout=1)
        assert endpoint.port == 10000
        assert len(fakes.renderers) == 1

        await registry.stop("c1")
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_run_waits_for_readiness(self, registry, fakes, wait_until):
        fakes.auto_ready = False
        task = asyncio.create_task(registry.run("https://example.com", "c1"))
        await wait_until(lambda: fakes.encoders)
        await asyncio.sleep(0.02)
        assert not task.done()

        fakes.encoders[0].signal_ready()
        await asyncio.wait_for(task, timeout=1)

        await registry.stop("c1")
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_exit_before_ready_rejects(self, registry, fakes, wait_until, callback):
        fakes.auto_ready = False
        task = asyncio.create_task(registry.run("https://example.com", "c1"))
        await wait_until(lambda: fakes.encoders)

        fakes.encoders[0].exit(ProcessOutcome.exited(1))

        with pytest.raises(SessionRunError) as exc_info:
            await asyncio.wait_for(task, timeout=2)
        assert isinstance(exc_info.value.cause, EncoderProcessError)
        assert exc_info.value.url == "https://example.com"
        assert "c1" not in registry

        await registry.aclose()
        assert callback.requests == []

    @pytest.mark.asyncio
    async def test_launch_failure_rejects(self, registry, fakes):
        fakes.navigate_error = RuntimeError("net::ERR_CONNECTION_REFUSED")

        with pytest.raises(SessionRunError, match="ERR_CONNECTION_REFUSED") as exc_info:
            await registry.run("https://example.com", "c1")

        assert isinstance(exc_info.value.__cause__, LaunchError)
        assert "c1" not in registry
        # 同じ id で再度起動できる
        fakes.navigate_error = None
        await registry.run("https://example.com", "c1")
        await registry.stop("c1")
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_list_sessions(self, registry):
        await registry.run("https://example.com", "c1")
        await registry.run("https://example.org", "c2")

        sessions = registry.list_sessions()
        assert [s["corr_id"] for s in sessions] == ["c1", "c2"]
        assert {s["port"] for s in sessions} == {10000, 10001}
        assert all(s["status"] == "streaming" for s in sessions)

        await registry.deinit()
        await registry.aclose()


# ============================================================
# stop / 終了処理
# ============================================================


class TestStop:
    """stop() と終了時処理のテスト."""

    @pytest.mark.asyncio
    async def test_stop_absent_is_noop(self, registry, callback):
        await registry.stop("missing")

        await registry.aclose()
        assert callback.requests == []

    @pytest.mark.asyncio
    async def test_stop_removes_and_notifies_once(self, registry, callback):
        await registry.run("https://example.com", "abc")

        await registry.stop("abc")
        assert "abc" not in registry

        await registry.aclose()
        assert len(callback.requests) == 1
        assert callback.requests[0].method == "DELETE"
        assert str(callback.requests[0].url) == CALLBACK_URL
        assert callback.payloads == [{"corrId": "abc"}]

    @pytest.mark.asyncio
    async def test_spontaneous_exit_removes_and_notifies(
        self, registry, fakes, wait_until, callback
    ):
        await registry.run("https://example.com", "c1")

        fakes.encoders[0].exit(ProcessOutcome.exited(1))
        await wait_until(lambda: "c1" not in registry)

        await registry.aclose()
        assert callback.payloads == [{"corrId": "c1"}]
        assert fakes.renderers[0].closed

    @pytest.mark.asyncio
    async def test_teardown_failure_wrapped(self, registry, fakes, callback):
        fakes.close_error = RuntimeError("browser crashed")
        await registry.run("https://example.com", "c1")

        with pytest.raises(SessionStopError) as exc_info:
            await registry.stop("c1")

        assert isinstance(exc_info.value.cause, TeardownError)
        assert exc_info.value.corr_id == "c1"
        assert "c1" not in registry

        await registry.aclose()
        assert callback.payloads == [{"corrId": "c1"}]

    @pytest.mark.asyncio
    async def test_stop_during_launch(self, registry, fakes, wait_until, callback):
        """readiness 前の stop: run は失敗し、通知は 1 回."""
        fakes.auto_ready = False
        task = asyncio.create_task(registry.run("https://example.com", "c1"))
        await wait_until(lambda: fakes.encoders)

        await registry.stop("c1")

        with pytest.raises(SessionRunError):
            await asyncio.wait_for(task, timeout=1)
        assert "c1" not in registry

        await registry.aclose()
        assert callback.payloads == [{"corrId": "c1"}]

    @pytest.mark.asyncio
    async def test_cancelled_stop_during_launch_still_deregisters(
        self, registry, fakes, wait_until, callback
    ):
        """readiness 前の stop が呼び出し側でキャンセルされても登録は残らない."""
        fakes.auto_ready = False
        run_task = asyncio.create_task(registry.run("https://example.com", "c1"))
        await wait_until(lambda: fakes.encoders)

        # キャプチャを 1 回分止めて、停止処理をポーリング中にする
        renderer = fakes.renderers[0]
        renderer.hold.clear()
        renderer.capturing.clear()
        await wait_until(renderer.capturing.is_set)

        session = registry.get("c1")
        stop_task = asyncio.create_task(registry.stop("c1"))
        await wait_until(lambda: session.state is SessionState.STOPPING)
        assert not stop_task.done()
        stop_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await stop_task

        renderer.hold.set()
        with pytest.raises(SessionRunError):
            await asyncio.wait_for(run_task, timeout=2)
        await wait_until(lambda: "c1" not in registry)

        # 同じ id で再度起動できる
        fakes.auto_ready = True
        await registry.run("https://example.com", "c1")
        await registry.stop("c1")

        await registry.aclose()
        assert callback.payloads == [{"corrId": "c1"}, {"corrId": "c1"}]

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_affect_stop(self, registry, callback):
        callback.status_code = 503
        await registry.run("https://example.com", "c1")

        await registry.stop("c1")
        assert "c1" not in registry

        await registry.aclose()
        assert len(callback.requests) == 10


# ============================================================
# deinit
# ============================================================


class TestDeinit:
    """deinit() のテスト."""

    @pytest.mark.asyncio
    async def test_deinit_stops_all(self, registry, fakes):
        for i in range(3):
            await registry.run("https://example.com", f"c{i}")

        fakes.renderers[1].close_error = RuntimeError("browser crashed")

        await asyncio.wait_for(registry.deinit(), timeout=2)

        assert len(registry) == 0
        assert all(r.closed for r in fakes.renderers)
        assert all(e.stopped for e in fakes.encoders)
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_deinit_stops_concurrently(self, registry, fakes, wait_until):
        """1 つの停止が止まっていても他のセッションは並行に停止する."""
        for i in range(3):
            await registry.run("https://example.com", f"c{i}")

        fakes.renderers[0].close_gate.clear()
        deinit_task = asyncio.create_task(registry.deinit())

        await wait_until(lambda: "c1" not in registry and "c2" not in registry)
        assert fakes.renderers[1].closed and fakes.renderers[2].closed
        assert fakes.encoders[1].stopped and fakes.encoders[2].stopped
        assert "c0" in registry
        assert not deinit_task.done()

        fakes.renderers[0].close_gate.set()
        await asyncio.wait_for(deinit_task, timeout=2)
        assert len(registry) == 0
        assert fakes.renderers[0].closed
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_deinit_empty(self, registry):
        await registry.deinit()
        await registry.aclose()


class TestScenario:
    """デフォルト設定 (1280x720) でのシナリオ."""

    @pytest.mark.asyncio
    async def test_run_then_stop(self, fakes, port_pool, callback):
        config = StreamConfig(frame_interval=0.05, stop_retry_interval=0.01)
        notifier = StopNotifier(
            NotifierConfig(url=CALLBACK_URL),
            client=httpx.AsyncClient(transport=httpx.MockTransport(callback)),
            sleep=_no_sleep,
        )
        registry = SessionRegistry(
            config,
            notifier,
            port_pool=port_pool,
            session_factory=lambda url, corr_id: StreamSession(
                corr_id,
                url,
                config,
                port_pool=port_pool,
                renderer_launcher=fakes.launch_renderer,
                encoder_factory=fakes.create_encoder,
            ),
        )

        endpoint = await registry.run("https://example.com", "abc")

        assert endpoint.as_dict() == {
            "host": "127.0.0.1",
            "port": endpoint.port,
            "width": 1280,
            "height": 720,
        }
        assert 10000 <= endpoint.port <= 20000

        await registry.stop("abc")
        assert "abc" not in registry

        await registry.aclose()
        assert callback.payloads == [{"corrId": "abc"}]
