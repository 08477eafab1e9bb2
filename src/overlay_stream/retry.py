"""有限回リトライ / ポーリングのヘルパー.

再帰ではなく明示的なループで回数を制限する。
sleep は差し替え可能（テストで待機時間を記録するため）。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


async def poll_until(
    predicate: Callable[[], bool],
    *,
    attempts: int,
    interval: float,
    sleep: SleepFunc = asyncio.sleep,
) -> bool:
    """predicate が True になるまで interval 秒間隔で最大 attempts 回待つ.

    Args:
        predicate: 判定関数
        attempts: 待機の最大回数
        interval: 待機間隔 (秒)
        sleep: 待機関数

    Returns:
        predicate が True になれば True、回数を使い切れば False
    """
    for _ in range(attempts):
        if predicate():
            return True
        await sleep(interval)
    return predicate()


async def retry_with_linear_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    step: float,
    sleep: SleepFunc = asyncio.sleep,
    description: str = "operation",
) -> T:
    """func を最大 attempts 回実行する.

    n 回目の試行の前に n * step 秒待機する (1 * step, 2 * step, ...)。

    Args:
        func: 実行するコルーチン関数
        attempts: 最大実行回数 (1 以上)
        step: バックオフ単位 (秒)
        sleep: 待機関数
        description: ログ用の名前

    Returns:
        func の戻り値

    Raises:
        Exception: 全試行が失敗した場合、最後の例外
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        await sleep(attempt * step)
        try:
            return await func()
        except Exception as e:
            if attempt == attempts:
                logger.error(
                    "%s failed after %d attempts: %s", description, attempts, e
                )
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                attempts,
                e,
                (attempt + 1) * step,
            )

    raise AssertionError("unreachable")
