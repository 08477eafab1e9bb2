"""オーバーレイストリーミング設定.

環境変数 (OVERLAY_*) から ServiceConfig を構築する。
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass
class StreamConfig:
    """ブラウザ → FFmpeg → TCP ストリーミング設定.

    Attributes:
        width: デフォルトビューポート幅 (px)
        height: デフォルトビューポート高さ (px)
        framerate: FFmpeg 出力フレームレート (fps)
        input_pix_fmt: FFmpeg stdin に書き込む raw フレームのピクセル形式
        output_pix_fmt: TCP に出力する rawvideo のピクセル形式
        ffmpeg_path: FFmpeg 実行ファイル
        ready_marker: stderr 上で入力ストリーム認識を示す文字列
        listen_host: FFmpeg が listen するホスト
        port_range_start: 割り当てポート範囲の先頭
        port_range_end: 割り当てポート範囲の末尾 (含む)
        launch_timeout: 起動 (readiness) タイムアウト (秒)
        decode_timeout: PNG → raw 変換タイムアウト (秒)
        frame_interval: キャプチャループの待機間隔 (秒)
        stop_max_attempts: 停止時に ready_to_stop を確認する最大回数
        stop_retry_interval: 停止確認の間隔 (秒)
        encoder_stop_timeout: SIGTERM 後 SIGKILL までの猶予 (秒)
    """

    width: int = 1280
    height: int = 720
    framerate: int = 30
    input_pix_fmt: str = "rgba"
    output_pix_fmt: str = "yuva420p"
    ffmpeg_path: str = "ffmpeg"
    ready_marker: str = " rawvideo"
    listen_host: str = "127.0.0.1"
    port_range_start: int = 10000
    port_range_end: int = 20000
    launch_timeout: float = 60.0
    decode_timeout: float = 5.0
    frame_interval: float = 0.01
    stop_max_attempts: int = 10
    stop_retry_interval: float = 1.0
    encoder_stop_timeout: float = 5.0

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(
                f"Invalid viewport size: {self.width}x{self.height}"
            )
        if not 0 < self.port_range_start <= self.port_range_end <= 65535:
            raise ValueError(
                "Invalid port range: "
                f"{self.port_range_start}-{self.port_range_end}"
            )
        if self.stop_max_attempts < 0:
            raise ValueError("stop_max_attempts must be >= 0")


@dataclass
class NotifierConfig:
    """停止通知コールバック設定.

    Attributes:
        url: 通知先 URL (None の場合は通知しない)
        max_attempts: 最大送信回数
        backoff_step: 線形バックオフの単位 (秒, n 回目失敗後に n * step 待機)
        timeout: 1 リクエストのタイムアウト (秒)
    """

    url: str | None = None
    max_attempts: int = 10
    backoff_step: float = 1.0
    timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass
class LoggingConfig:
    """ログ設定.

    Attributes:
        level: ログレベル名 (例: "INFO")
        path: ローテーションログの出力ディレクトリ (None ならコンソールのみ)
    """

    level: str = "INFO"
    path: str | None = None


@dataclass
class ServiceConfig:
    """アプリケーション全体の設定."""

    name: str = "web-overlay-stream"
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    stream: StreamConfig = field(default_factory=StreamConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServiceConfig":
        """環境変数から設定を構築する.

        未設定の項目はデフォルト値を使う。

        Args:
            environ: 参照する環境変数 (省略時は os.environ)

        Returns:
            構築した ServiceConfig

        Raises:
            ValueError: 値が不正な場合
        """
        env = os.environ if environ is None else environ

        def _int(key: str, default: int) -> int:
            return int(env.get(key, default))

        def _float(key: str, default: float) -> float:
            return float(env.get(key, default))

        s = StreamConfig()
        stream = StreamConfig(
            width=_int("OVERLAY_WIDTH", s.width),
            height=_int("OVERLAY_HEIGHT", s.height),
            framerate=_int("OVERLAY_FRAMERATE", s.framerate),
            ffmpeg_path=env.get("OVERLAY_FFMPEG_PATH", s.ffmpeg_path),
            listen_host=env.get("OVERLAY_LISTEN_HOST", s.listen_host),
            port_range_start=_int("OVERLAY_PORT_RANGE_START", s.port_range_start),
            port_range_end=_int("OVERLAY_PORT_RANGE_END", s.port_range_end),
            launch_timeout=_float("OVERLAY_LAUNCH_TIMEOUT", s.launch_timeout),
            decode_timeout=_float("OVERLAY_DECODE_TIMEOUT", s.decode_timeout),
        )

        n = NotifierConfig()
        notifier = NotifierConfig(
            url=env.get("OVERLAY_CALLBACK_URL") or None,
            max_attempts=_int("OVERLAY_CALLBACK_MAX_ATTEMPTS", n.max_attempts),
            backoff_step=_float("OVERLAY_CALLBACK_BACKOFF", n.backoff_step),
            timeout=_float("OVERLAY_CALLBACK_TIMEOUT", n.timeout),
        )

        log_config = LoggingConfig(
            level=env.get("OVERLAY_LOG_LEVEL", "INFO"),
            path=env.get("OVERLAY_LOG_PATH") or None,
        )

        return cls(
            name=env.get("OVERLAY_APP_NAME", cls.name),
            http_host=env.get("OVERLAY_HTTP_HOST", cls.http_host),
            http_port=_int("OVERLAY_HTTP_PORT", cls.http_port),
            stream=stream,
            notifier=notifier,
            logging=log_config,
        )
