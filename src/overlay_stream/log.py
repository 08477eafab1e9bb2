"""ログ設定.

コンソール出力に加え、path が設定されていれば
1 時間ごとにローテーションするファイルへ出力する。
"""

import logging
import logging.handlers
import os

from overlay_stream.config import LoggingConfig

LOG_FORMAT = "%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s"


def configure_logging(config: LoggingConfig, app_name: str = "web-overlay-stream") -> None:
    """ルートロガーを設定する.

    Args:
        config: ログ設定
        app_name: ログファイル名のプレフィックス

    Raises:
        ValueError: ログレベルが不正、またはログディレクトリに書き込めない場合
    """
    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {config.level}")

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if config.path:
        if not os.access(config.path, os.W_OK):
            raise ValueError(f"Cannot write to logger dir: {config.path}")
        filename = os.path.join(config.path, f"{app_name}-{os.getpid()}.log")
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(filename, when="H")
        )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)
