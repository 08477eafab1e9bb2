"""ストリーミングセッションのレジストリ.

correlation id → StreamSession の対応を管理する。
同じ id のセッションは同時に 1 つまで。セッション終了時に
id を削除し、停止通知をバックグラウンドで送る。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from overlay_stream.config import StreamConfig
from overlay_stream.errors import (
    DuplicateSessionError,
    EncoderProcessError,
    SessionRunError,
    SessionStopError,
)
from overlay_stream.notifier import StopNotifier
from overlay_stream.ports import PortPool
from overlay_stream.session import StreamEndpoint, StreamSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, str], StreamSession]


class SessionRegistry:
    """StreamSession の起動・停止・監視.

    run() はセッションを readiness 待ちの前に登録するため、
    同じ corr_id の同時リクエストは即座に DuplicateSessionError になる。
    """

    def __init__(
        self,
        config: StreamConfig,
        notifier: StopNotifier,
        *,
        port_pool: PortPool | None = None,
        session_factory: SessionFactory | None = None,
    ):
        self._config = config
        self._notifier = notifier
        self._port_pool = port_pool or PortPool(
            config.listen_host, config.port_range_start, config.port_range_end
        )
        self._session_factory = session_factory or self._create_session
        self._sessions: dict[str, StreamSession] = {}
        self._tasks: set[asyncio.Task] = set()

    def __contains__(self, corr_id: object) -> bool:
        return corr_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def port_pool(self) -> PortPool:
        return self._port_pool

    def get(self, corr_id: str) -> StreamSession | None:
        """セッション取得."""
        return self._sessions.get(corr_id)

    def list_sessions(self) -> list[dict]:
        """アクティブセッション一覧（メタデータ付き）."""
        return [
            {"corr_id": corr_id, **session.info()}
            for corr_id, session in self._sessions.items()
        ]

    async def run(self, url: str, corr_id: str) -> StreamEndpoint:
        """セッションを起動し、FFmpeg の readiness を待つ.

        Args:
            url: 表示する URL
            corr_id: correlation id

        Returns:
            ストリームのエンドポイント

        Raises:
            DuplicateSessionError: 同じ corr_id のセッションが存在する場合
            SessionRunError: 起動失敗 (原因は __cause__)
        """
        if corr_id in self._sessions:
            raise DuplicateSessionError(
                f"Already running overlay for this corrId: {corr_id}",
                corr_id=corr_id,
                url=url,
            )

        logger.debug("Start running overlay %s (url=%s)", corr_id, url)
        session = self._session_factory(url, corr_id)
        self._sessions[corr_id] = session

        try:
            endpoint = await session.start()
            await self._wait_ready_or_exit(session)
        except Exception as e:
            # 明示的な stop() 中なら終了時に登録解除 + 通知する
            # (stop() の呼び出し側がキャンセルされても残らないように監視を付ける)
            if session.stop_requested:
                self._spawn(self._supervise(corr_id, session), name=f"supervise-{corr_id}")
            else:
                self._discard(corr_id, session)
            logger.error("Error during running overlay %s: %s", corr_id, e)
            raise SessionRunError(
                f"Error during running overlay for {url}: {e}",
                corr_id=corr_id,
                url=url,
            ) from e

        self._spawn(self._supervise(corr_id, session), name=f"supervise-{corr_id}")
        logger.info("Overlay %s for %s has been started on port %d", corr_id, url, endpoint.port)
        return endpoint

    async def stop(self, corr_id: str) -> None:
        """セッションを停止する (存在しなければ何もしない).

        Raises:
            SessionStopError: 停止処理に失敗した場合 (原因は __cause__)
        """
        session = self._sessions.get(corr_id)
        if session is None:
            logger.info("No overlay for %s", corr_id)
            return

        try:
            await session.stop()
        except Exception as e:
            raise SessionStopError(
                f"Error during stopping overlay {corr_id}: {e}",
                corr_id=corr_id,
                url=session.url,
            ) from e
        finally:
            if session.has_exited:
                self._on_exit(corr_id, session, session.exit_error)

        logger.debug("Overlay %s has been correctly stopped", corr_id)

    async def deinit(self) -> None:
        """全セッションを並行に停止する (失敗はログのみ)."""
        corr_ids = list(self._sessions)
        if not corr_ids:
            return

        logger.info("Stopping %d overlay(s)", len(corr_ids))
        results = await asyncio.gather(
            *(self.stop(corr_id) for corr_id in corr_ids), return_exceptions=True
        )
        for corr_id, result in zip(corr_ids, results):
            if isinstance(result, BaseException):
                logger.error("Error on deinit overlay %s: %s", corr_id, result)

    async def aclose(self, timeout: float = 5.0) -> None:
        """送信中の停止通知を timeout 秒まで待ち、残りはキャンセルする."""
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            _, not_done = await asyncio.wait(pending, timeout=timeout)
            for task in not_done:
                task.cancel()
            if not_done:
                logger.warning("Cancelled %d pending background task(s)", len(not_done))
                await asyncio.gather(*not_done, return_exceptions=True)
        await self._notifier.aclose()

    def _create_session(self, url: str, corr_id: str) -> StreamSession:
        return StreamSession(corr_id, url, self._config, port_pool=self._port_pool)

    async def _wait_ready_or_exit(self, session: StreamSession) -> None:
        """readiness と終了のどちらか早い方を待つ.

        Raises:
            Exception: readiness 前に終了した場合、その終了エラー
        """
        ready = asyncio.ensure_future(session.wait_ready())
        exited = asyncio.ensure_future(session.wait_exited())
        try:
            await asyncio.wait({ready, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (ready, exited):
                if not fut.done():
                    fut.cancel()

        if session.has_exited:
            error = session.exit_error
            if error is None:
                error = EncoderProcessError("Cannot start overlay instance")
            raise error

    async def _supervise(self, corr_id: str, session: StreamSession) -> None:
        error = await session.wait_exited()
        self._on_exit(corr_id, session, error)

    def _on_exit(
        self, corr_id: str, session: StreamSession, error: BaseException | None
    ) -> None:
        """セッション終了時の処理 (セッションごとに 1 回だけ実行される)."""
        if not self._discard(corr_id, session):
            return
        if error is not None:
            logger.warning("Overlay %s exited with error: %s", corr_id, error)
        else:
            logger.info("Overlay %s exited", corr_id)
        self._spawn(self._notifier.notify(corr_id), name=f"notify-{corr_id}")

    def _discard(self, corr_id: str, session: StreamSession) -> bool:
        if self._sessions.get(corr_id) is not session:
            return False
        del self._sessions[corr_id]
        return True

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task %s failed: %s", task.get_name(), error)
