"""raw RGBA → FFmpeg → TCP rawvideo エンコーダ.

stdin パイプに raw フレームを書き込み、FFmpeg が
tcp://host:port?listen=1 で rawvideo を配信する。
stderr の診断出力から入力ストリーム認識 (readiness) を検出する。
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from enum import Enum

from overlay_stream.config import StreamConfig
from overlay_stream.errors import EncoderProcessError

logger = logging.getLogger(__name__)

# FFmpeg stderr 読み取りチャンクサイズ
READ_CHUNK_SIZE = 4 * 1024

# 正常終了とみなすシグナル
CLEAN_SIGNALS = frozenset({signal.SIGINT, signal.SIGTERM})


class OutcomeKind(str, Enum):
    EXITED = "exited"
    SIGNALED = "signaled"
    ERRORED = "errored"


@dataclass(frozen=True)
class ProcessOutcome:
    """プロセス終了結果.

    Exited(code) / Signaled(signal) / Errored(cause) のいずれか。
    """

    kind: OutcomeKind
    code: int | None = None
    signal: int | None = None
    cause: BaseException | None = None

    @classmethod
    def exited(cls, code: int) -> ProcessOutcome:
        return cls(OutcomeKind.EXITED, code=code)

    @classmethod
    def signaled(cls, signum: int) -> ProcessOutcome:
        return cls(OutcomeKind.SIGNALED, signal=signum)

    @classmethod
    def errored(cls, cause: BaseException) -> ProcessOutcome:
        return cls(OutcomeKind.ERRORED, cause=cause)

    @classmethod
    def from_returncode(cls, returncode: int) -> ProcessOutcome:
        """asyncio の returncode (負数はシグナル) から変換する."""
        if returncode < 0:
            return cls.signaled(-returncode)
        return cls.exited(returncode)

    @property
    def is_clean(self) -> bool:
        """exit code 0 または SIGINT/SIGTERM による終了なら True."""
        if self.kind is OutcomeKind.EXITED:
            return self.code == 0
        if self.kind is OutcomeKind.SIGNALED:
            return self.signal in CLEAN_SIGNALS
        return False

    def to_error(self) -> EncoderProcessError | None:
        """異常終了なら EncoderProcessError、正常終了なら None を返す."""
        if self.is_clean:
            return None
        if self.kind is OutcomeKind.ERRORED:
            error = EncoderProcessError(f"Encoder process error: {self.cause}")
            error.__cause__ = self.cause
            return error
        if self.kind is OutcomeKind.SIGNALED:
            try:
                name = signal.Signals(self.signal).name
            except ValueError:
                name = str(self.signal)
            return EncoderProcessError(f"Abnormal exit: signal {name}")
        return EncoderProcessError(f"Abnormal exit: code {self.code}")


class FFmpegEncoder:
    """FFmpeg プロセスを管理し、raw フレームを TCP rawvideo に変換する.

    Usage:
        encoder = FFmpegEncoder(config, "127.0.0.1", 10000, 1280, 720)
        await encoder.start()
        await encoder.wait_ready()
        await encoder.write(pixels, cancel=stop_event)
        outcome = await encoder.stop()
    """

    def __init__(
        self,
        config: StreamConfig,
        host: str,
        port: int,
        width: int,
        height: int,
    ):
        self._config = config
        self._host = host
        self._port = port
        self._width = width
        self._height = height
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._outcome: ProcessOutcome | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def url(self) -> str:
        """FFmpeg の出力先 URL."""
        return f"tcp://{self._host}:{self._port}?listen=1"

    def build_command(self) -> list[str]:
        """FFmpeg コマンドを構築する."""
        c = self._config
        return [
            c.ffmpeg_path,
            "-s", f"{self._width}x{self._height}",
            "-f", "rawvideo",
            "-pix_fmt", c.input_pix_fmt,
            "-i", "-",
            "-f", "rawvideo",
            "-r", str(c.framerate),
            "-s", f"{self._width}x{self._height}",
            "-pix_fmt", c.output_pix_fmt,
            self.url,
        ]

    async def start(self) -> None:
        """FFmpeg プロセスを起動する.

        Raises:
            RuntimeError: 既に起動済みの場合
            EncoderProcessError: プロセス起動に失敗した場合
        """
        if self._process is not None:
            raise RuntimeError("FFmpegEncoder is already started")

        cmd = self.build_command()
        logger.info("Starting FFmpeg: %s", " ".join(cmd))

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._outcome = ProcessOutcome.errored(e)
            raise EncoderProcessError(f"Failed to spawn FFmpeg: {e}") from e

        logger.info("FFmpeg started (PID=%d, output=%s)", self._process.pid, self.url)

        self._stderr_task = asyncio.create_task(
            self._scan_stderr(self._process.stderr),
            name=f"ffmpeg-stderr-{self._process.pid}",
        )

    async def wait_ready(self) -> None:
        """入力ストリーム認識 (readiness) を待つ."""
        await self._ready.wait()

    async def _scan_stderr(self, stream: asyncio.StreamReader | None) -> None:
        """FFmpeg stderr をログに出力し、readiness マーカーを検出する.

        進捗出力は \\r 区切りのためチャンク単位で読み取る。
        マーカーがチャンク境界をまたぐ場合に備えて末尾を保持する。
        """
        if stream is None:
            return
        marker = self._config.ready_marker
        tail = ""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            for line in text.replace("\r", "\n").splitlines():
                if line.strip():
                    logger.debug("FFmpeg: %s", line)

            if not self._ready.is_set():
                if marker in tail + text:
                    logger.info("FFmpeg recognized input stream (PID=%s)", self.pid)
                    self._ready.set()
                tail = (tail + text)[-len(marker):]

    async def write(self, data: bytes, *, cancel: asyncio.Event) -> bool:
        """raw フレームを stdin に書き込む.

        バッファが high-water mark を超えた場合は drain と cancel の
        どちらか早い方まで待つ。

        Args:
            data: raw フレーム
            cancel: セットされたら drain 待ちを打ち切るイベント

        Returns:
            drain まで完了すれば True、cancel で打ち切った場合 False

        Raises:
            EncoderProcessError: 未起動、または stdin が閉じている場合
        """
        if not self._process or not self._process.stdin:
            raise EncoderProcessError("FFmpegEncoder is not started")

        stdin = self._process.stdin
        if stdin.is_closing():
            raise EncoderProcessError("FFmpeg stdin is closed")

        stdin.write(data)

        drain = asyncio.ensure_future(stdin.drain())
        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {drain, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for fut in (drain, cancelled):
                if not fut.done():
                    fut.cancel()

        if drain in done:
            try:
                drain.result()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise EncoderProcessError(f"FFmpeg stdin write failed: {e}") from e
            return True

        logger.debug("Drain wait cancelled (PID=%s)", self.pid)
        return False

    async def wait(self) -> ProcessOutcome:
        """プロセス終了を待ち、終了結果を返す."""
        if self._outcome is not None:
            return self._outcome
        if not self._process:
            raise RuntimeError("FFmpegEncoder is not started")

        try:
            returncode = await self._process.wait()
        except Exception as e:
            outcome = ProcessOutcome.errored(e)
        else:
            outcome = ProcessOutcome.from_returncode(returncode)

        if self._outcome is None:
            self._outcome = outcome
        return self._outcome

    async def stop(self) -> ProcessOutcome | None:
        """FFmpeg プロセスを停止し、パイプを解放する.

        stdin を閉じてから SIGTERM、タイムアウトしたら SIGKILL。

        Returns:
            終了結果 (未起動の場合は None)
        """
        if not self._process:
            return self._outcome

        process = self._process
        pid = process.pid
        logger.info("Stopping FFmpeg (PID=%d)", pid)

        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()

        try:
            process.send_signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(
                    process.wait(), timeout=self._config.encoder_stop_timeout
                )
                logger.info("FFmpeg exited gracefully (PID=%d)", pid)
            except asyncio.TimeoutError:
                logger.warning(
                    "FFmpeg did not exit in %.1fs, sending SIGKILL (PID=%d)",
                    self._config.encoder_stop_timeout,
                    pid,
                )
                process.kill()
                await process.wait()
        except ProcessLookupError:
            logger.debug("FFmpeg already exited (PID=%d)", pid)

        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass

        return await self.wait()
