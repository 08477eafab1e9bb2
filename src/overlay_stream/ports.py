"""TCP ポートプール.

FFmpeg の listen 用ポートをセッションごとに 1 つ割り当てる。
プロセス内の全セッションで共有する。
"""

import logging
import socket

from overlay_stream.errors import PortUnavailableError

logger = logging.getLogger(__name__)


class PortPool:
    """設定範囲から空きポートを割り当てる.

    割り当て済みポートは release() されるまで再利用しない。
    未割り当てでも他プロセスが bind 済みのポートはスキップする。

    Usage:
        pool = PortPool("127.0.0.1", 10000, 20000)
        port = pool.acquire()
        ...
        pool.release(port)
    """

    def __init__(self, host: str, start: int, end: int):
        """PortPool を初期化する.

        Args:
            host: bind 確認に使うホスト
            start: 範囲の先頭
            end: 範囲の末尾 (含む)
        """
        if start > end:
            raise ValueError(f"Invalid port range: {start}-{end}")
        self._host = host
        self._start = start
        self._end = end
        self._in_use: set[int] = set()

    @property
    def in_use(self) -> frozenset[int]:
        """割り当て中のポート."""
        return frozenset(self._in_use)

    @property
    def capacity(self) -> int:
        """範囲内のポート数."""
        return self._end - self._start + 1

    def acquire(self) -> int:
        """空きポートを 1 つ割り当てる.

        Returns:
            ポート番号

        Raises:
            PortUnavailableError: 範囲内に空きがない場合
        """
        for port in range(self._start, self._end + 1):
            if port in self._in_use:
                continue
            if not self._is_free(port):
                logger.debug("Port %d is busy, skipping", port)
                continue
            self._in_use.add(port)
            logger.debug("Port %d acquired", port)
            return port
        raise PortUnavailableError(
            f"No free port in range {self._start}-{self._end}"
        )

    def release(self, port: int) -> None:
        """ポートを返却する (未割り当てなら何もしない)."""
        if port in self._in_use:
            self._in_use.discard(port)
            logger.debug("Port %d released", port)

    def _is_free(self, port: int) -> bool:
        """ポートに bind できるか確認する."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self._host, port))
            except OSError:
                return False
        return True
