"""ブラウザ → FFmpeg ストリーミングセッション.

1 セッション = 1 レンダラー (Playwright) + 1 エンコーダ (FFmpeg)。
キャプチャループで PNG スクリーンショットを raw フレームに変換し、
FFmpeg の stdin に書き込む。FFmpeg は TCP listener で rawvideo を配信する。

状態遷移:
    launching → streaming → stopping → stopped
    launching / streaming → failed
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum

from overlay_stream.config import StreamConfig
from overlay_stream.encoder import FFmpegEncoder
from overlay_stream.errors import (
    EncoderProcessError,
    LaunchError,
    ReadinessTimeoutError,
    TeardownError,
)
from overlay_stream.frames import decode_frame_async
from overlay_stream.ports import PortPool
from overlay_stream.renderer import PlaywrightRenderer, Renderer
from overlay_stream.retry import SleepFunc, poll_until

logger = logging.getLogger(__name__)

RendererLauncher = Callable[[int, int], Awaitable[Renderer]]
EncoderFactory = Callable[[StreamConfig, str, int, int, int], FFmpegEncoder]


class SessionState(str, Enum):
    LAUNCHING = "launching"
    STREAMING = "streaming"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamEndpoint:
    """下流の consumer が接続する TCP エンドポイント."""

    host: str
    port: int
    width: int
    height: int

    def as_dict(self) -> dict:
        return asdict(self)


class StreamSession:
    """1つのブラウザ → rawvideo ストリーミングセッション.

    start() でリソースを確保してキャプチャループを開始し、
    stop() で進行中のキャプチャ/書き込みの完了を待ってから解放する。
    終了は wait_exited() / exit_error で通知する (ユーザー停止・異常終了とも)。
    """

    def __init__(
        self,
        session_id: str,
        url: str,
        config: StreamConfig,
        *,
        port_pool: PortPool,
        renderer_launcher: RendererLauncher | None = None,
        encoder_factory: EncoderFactory | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self._session_id = session_id
        self._url = url
        self._config = config
        self._port_pool = port_pool
        self._renderer_launcher = renderer_launcher or PlaywrightRenderer.launch
        self._encoder_factory = encoder_factory or FFmpegEncoder
        self._sleep = sleep
        self._created_at = time.time()
        self._state = SessionState.LAUNCHING

        self._port: int | None = None
        self._port_released = False
        self._width = config.width
        self._height = config.height
        self._endpoint: StreamEndpoint | None = None
        self._renderer: Renderer | None = None
        self._encoder: FFmpegEncoder | None = None

        # キャプチャループとの協調停止フラグ
        self._stopped = False
        self._ready_to_stop = True
        self._stop_event = asyncio.Event()
        self._stop_requested = False
        self._observers_detached = False

        # one-shot シグナル
        self._ready = asyncio.Event()
        self._exited = asyncio.Event()
        self._exit_error: BaseException | None = None

        self._capture_task: asyncio.Task | None = None
        self._readiness_task: asyncio.Task | None = None
        self._exit_watch_task: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def endpoint(self) -> StreamEndpoint | None:
        return self._endpoint

    @property
    def created_at(self) -> float:
        """作成時刻 (Unix timestamp)."""
        return self._created_at

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    @property
    def exit_error(self) -> BaseException | None:
        """終了時のエラー (正常終了または未終了なら None)."""
        return self._exit_error

    @property
    def stop_requested(self) -> bool:
        """stop() が呼ばれたか."""
        return self._stop_requested

    @property
    def ready_to_stop(self) -> bool:
        """進行中のキャプチャ/書き込みがなければ True."""
        return self._ready_to_stop

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def wait_exited(self) -> BaseException | None:
        """終了を待ち、終了エラーを返す."""
        await self._exited.wait()
        return self._exit_error

    def info(self) -> dict:
        """一覧表示用のメタデータ."""
        return {
            "session_id": self._session_id,
            "status": self._state.value,
            "url": self._url,
            "host": self._config.listen_host,
            "port": self._port,
            "resolution": f"{self._width}x{self._height}",
            "created_at": self._created_at,
        }

    async def start(self) -> StreamEndpoint:
        """セッション開始: ポート確保 → ブラウザ起動 → FFmpeg 起動 → キャプチャ開始.

        FFmpeg の起動成功は readiness を意味しない。呼び出し側は
        wait_ready() / wait_exited() で結果を待つこと。

        Returns:
            ストリームのエンドポイント

        Raises:
            LaunchError: ポート確保・ブラウザ起動・ナビゲーションの失敗
            EncoderProcessError: FFmpeg の起動失敗
        """
        if self._state is not SessionState.LAUNCHING or self._port is not None:
            raise RuntimeError(f"Cannot start session in {self._state.value} state")

        c = self._config
        logger.info("Starting session %s (url=%s)", self._session_id, self._url)

        # 1. ポート確保
        try:
            self._port = self._port_pool.acquire()
        except LaunchError as e:
            self._emit_exit(e)
            raise

        # 2. ブラウザ起動 + ナビゲーション
        try:
            self._renderer = await self._renderer_launcher(c.width, c.height)
            self._check_not_stopped()
            await self._renderer.navigate(self._url)
            self._check_not_stopped()
        except Exception as e:
            await self._abort_launch()
            error = e if isinstance(e, LaunchError) else LaunchError(
                f"Failed to open '{self._url}': {e}"
            )
            logger.error("Session %s launch failed: %s", self._session_id, error)
            self._emit_exit(error)
            if error is e:
                raise
            raise error from e

        # 3. 起動タイムアウトの期限
        deadline = asyncio.get_running_loop().time() + c.launch_timeout

        # 4. フレームサイズ
        self._width, self._height = self._renderer.viewport_size or (c.width, c.height)

        # 5. FFmpeg 起動
        self._encoder = self._encoder_factory(
            c, c.listen_host, self._port, self._width, self._height
        )
        try:
            await self._encoder.start()
            self._check_not_stopped()
        except Exception as e:
            await self._abort_launch()
            if isinstance(e, (EncoderProcessError, LaunchError)):
                error = e
            else:
                error = EncoderProcessError(f"Failed to start encoder: {e}")
            logger.error("Session %s encoder start failed: %s", self._session_id, error)
            self._emit_exit(error)
            if error is e:
                raise
            raise error from e

        self._exit_watch_task = asyncio.create_task(
            self._watch_encoder_exit(), name=f"encoder-exit-{self._session_id}"
        )
        # 6. readiness 監視 (期限切れで強制停止)
        self._readiness_task = asyncio.create_task(
            self._watch_readiness(deadline), name=f"readiness-{self._session_id}"
        )
        # 7. キャプチャループ
        self._capture_task = asyncio.create_task(
            self._capture_loop(), name=f"capture-{self._session_id}"
        )

        self._endpoint = StreamEndpoint(
            host=c.listen_host, port=self._port, width=self._width, height=self._height
        )
        logger.info(
            "Session %s encoder spawned (%s:%d, %dx%d)",
            self._session_id,
            c.listen_host,
            self._port,
            self._width,
            self._height,
        )
        return self._endpoint

    async def stop(self) -> None:
        """セッション停止.

        キャプチャループに停止を通知し、進行中の処理が終わるのを
        最大 stop_max_attempts 回 (stop_retry_interval 秒間隔) 待ってから
        ブラウザ → FFmpeg の順に解放する。
        異常終了などで停止処理が既に始まっている場合はその完了を待つ。

        Raises:
            TeardownError: 解放処理に失敗した場合
        """
        self._stop_requested = True
        if self._shutdown_task is None and self._exited.is_set():
            logger.debug("Session %s already exited", self._session_id)
            return

        logger.info("Stopping session %s", self._session_id)
        await asyncio.shield(self._begin_shutdown(None))

    def _check_not_stopped(self) -> None:
        if self._stopped:
            raise LaunchError(f"Session {self._session_id} stopped during launch")

    def _begin_shutdown(self, error: BaseException | None) -> asyncio.Task:
        """停止処理を開始する (既に開始済みなら同じタスクを返す)."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(
                self._shutdown(error), name=f"shutdown-{self._session_id}"
            )
            self._shutdown_task.add_done_callback(self._on_shutdown_done)
        return self._shutdown_task

    def _on_shutdown_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Session %s shutdown failed: %s", self._session_id, error)

    async def _shutdown(self, error: BaseException | None) -> None:
        """解放処理を行い、終了を通知する."""
        try:
            await self._teardown()
        except TeardownError as e:
            self._emit_exit(error or e)
            raise
        self._emit_exit(error)
        logger.info("Session %s stopped", self._session_id)

    async def _teardown(self) -> None:
        """リソース解放本体.

        Raises:
            TeardownError: ブラウザまたは FFmpeg の解放に失敗した場合
        """
        c = self._config

        # 1. 終了/readiness 監視を切り離す
        self._detach_observers()

        # 2. キャプチャループに停止を通知 (drain 待ちも打ち切る)
        self._stopped = True
        self._state = SessionState.STOPPING
        self._stop_event.set()

        # 3. 進行中のキャプチャ/書き込みの完了待ち
        quiescent = await poll_until(
            lambda: self._ready_to_stop,
            attempts=c.stop_max_attempts,
            interval=c.stop_retry_interval,
            sleep=self._sleep,
        )
        if not quiescent:
            logger.warning(
                "Session %s: capture still in flight after %d tries, tearing down anyway",
                self._session_id,
                c.stop_max_attempts,
            )

        errors: list[Exception] = []

        # 4. ブラウザ終了
        if self._renderer is not None:
            try:
                await self._renderer.close()
            except Exception as e:
                logger.exception("Error closing renderer for session %s", self._session_id)
                errors.append(e)
            self._renderer = None

        # 5. FFmpeg 停止 + パイプ解放
        if self._encoder is not None:
            try:
                outcome = await self._encoder.stop()
                if outcome is not None and not outcome.is_clean:
                    logger.warning(
                        "Session %s: encoder stopped with %s", self._session_id, outcome
                    )
            except Exception as e:
                logger.exception("Error stopping encoder for session %s", self._session_id)
                errors.append(e)

        if self._capture_task is not None and not self._capture_task.done():
            self._capture_task.cancel()
            try:
                await self._capture_task
            except asyncio.CancelledError:
                pass

        self._release_port()

        if errors:
            raise TeardownError(
                f"Error during stopping session {self._session_id}: {errors[0]}"
            ) from errors[0]

    async def _abort_launch(self) -> None:
        """起動途中で確保したリソースを逆順に解放する."""
        if self._encoder is not None:
            try:
                await self._encoder.stop()
            except Exception:
                logger.exception("Cleanup: error stopping encoder for %s", self._session_id)
            self._encoder = None
        if self._renderer is not None:
            try:
                await self._renderer.close()
            except Exception:
                logger.exception("Cleanup: error closing renderer for %s", self._session_id)
            self._renderer = None
        self._release_port()

    def _release_port(self) -> None:
        # 返却は 1 回のみ (返却後は他セッションに再割り当てされうる)
        if self._port is not None and not self._port_released:
            self._port_pool.release(self._port)
            self._port_released = True

    def _detach_observers(self) -> None:
        self._observers_detached = True
        task = self._readiness_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _emit_exit(self, error: BaseException | None) -> None:
        """終了シグナルを 1 回だけ発火する."""
        if self._exited.is_set():
            return
        self._exit_error = error
        self._state = SessionState.FAILED if error is not None else SessionState.STOPPED
        self._exited.set()

    async def _watch_readiness(self, deadline: float) -> None:
        """FFmpeg の入力ストリーム認識を待つ. 期限切れなら強制停止."""
        try:
            async with asyncio.timeout_at(deadline):
                await self._encoder.wait_ready()
        except TimeoutError:
            if self._observers_detached:
                return
            error = ReadinessTimeoutError(
                f"Launch timeout ({self._config.launch_timeout:.0f}s) "
                f"for session {self._session_id}"
            )
            logger.error("%s", error)
            self._begin_shutdown(error)
            return

        if self._observers_detached:
            return
        self._state = SessionState.STREAMING
        self._ready.set()
        logger.info("Session %s is now streaming", self._session_id)

    async def _watch_encoder_exit(self) -> None:
        """FFmpeg の終了を監視し、自発的な終了なら停止処理を行う."""
        outcome = await self._encoder.wait()
        if self._observers_detached:
            return

        error = outcome.to_error()
        if error is not None:
            logger.error("Session %s: %s", self._session_id, error)
        else:
            logger.info("Session %s: encoder exited normally", self._session_id)
        self._begin_shutdown(error)

    async def _capture_loop(self) -> None:
        """スクリーンショット → raw 変換 → FFmpeg 書き込みのループ.

        1 イテレーション (drain 待ちを含む) が完了するまで
        ready_to_stop を False に保つ。
        """
        logger.debug("Capture loop started for session %s", self._session_id)
        try:
            while not self._stopped:
                self._ready_to_stop = False
                try:
                    await self._capture_once()
                except Exception as e:
                    logger.error(
                        "Error updating stream for session %s: %s", self._session_id, e
                    )
                finally:
                    self._ready_to_stop = True
                await asyncio.sleep(self._config.frame_interval)
        finally:
            logger.debug("Capture loop ended for session %s", self._session_id)

    async def _capture_once(self) -> None:
        frame = await self._renderer.capture_frame()
        if self._stopped:
            return

        pixels = await decode_frame_async(
            frame,
            (self._width, self._height),
            pix_fmt=self._config.input_pix_fmt,
            timeout=self._config.decode_timeout,
        )
        if self._stopped:
            return

        if not await self._encoder.write(pixels, cancel=self._stop_event):
            logger.debug("Frame write interrupted by stop for session %s", self._session_id)
