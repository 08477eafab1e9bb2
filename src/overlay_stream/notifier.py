"""セッション停止通知.

セッション終了時に設定されたコールバック URL へ
DELETE {"corrId": ...} を送る。失敗時は線形バックオフでリトライする。
"""

import asyncio
import logging

import httpx

from overlay_stream.config import NotifierConfig
from overlay_stream.errors import NotificationDeliveryError
from overlay_stream.retry import SleepFunc, retry_with_linear_backoff

logger = logging.getLogger(__name__)


class StopNotifier:
    """停止通知の送信クライアント.

    通知の成否は run/stop の呼び出し元に影響しない。
    全試行が失敗した場合はログを出して諦める。
    """

    def __init__(
        self,
        config: NotifierConfig,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout)
        self._sleep = sleep

    @property
    def url(self) -> str | None:
        return self._config.url

    async def deliver(self, corr_id: str) -> None:
        """通知を 1 回送信する.

        Raises:
            NotificationDeliveryError: 送信失敗または非 2xx 応答
        """
        try:
            response = await self._client.request(
                "DELETE", self._config.url, json={"corrId": corr_id}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(
                f"Failed to notify stop of {corr_id}: {e}"
            ) from e
        logger.debug("Stop notification delivered for %s", corr_id)

    async def notify(self, corr_id: str) -> bool:
        """停止通知を送る (リトライ付き).

        Args:
            corr_id: 停止したセッションの correlation id

        Returns:
            送信できれば True、URL 未設定または全試行失敗なら False
        """
        if not self._config.url:
            logger.debug("No callback URL configured, skipping notification for %s", corr_id)
            return False

        logger.info("Notifying stop of %s to %s", corr_id, self._config.url)
        try:
            await retry_with_linear_backoff(
                lambda: self.deliver(corr_id),
                attempts=self._config.max_attempts,
                step=self._config.backoff_step,
                sleep=self._sleep,
                description=f"Stop notification for {corr_id}",
            )
        except NotificationDeliveryError:
            logger.error("Giving up stop notification for %s", corr_id)
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
