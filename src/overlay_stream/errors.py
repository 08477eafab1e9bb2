"""例外定義.

セッション層の例外は原因 (cause) を ``raise ... from`` で保持する。
レジストリ層の例外は corr_id / url を属性として持つ。
"""


class OverlayStreamError(Exception):
    """web-overlay-stream の基底例外."""


class LaunchError(OverlayStreamError):
    """ブラウザ起動またはナビゲーションの失敗."""


class PortUnavailableError(LaunchError):
    """ポート範囲に空きがない."""


class ReadinessTimeoutError(OverlayStreamError):
    """FFmpeg が起動タイムアウト内に入力ストリームを認識しなかった."""


class DecodeTimeoutError(OverlayStreamError):
    """フレーム変換 (PNG → raw) がタイムアウトした."""


class EncoderProcessError(OverlayStreamError):
    """FFmpeg プロセスのエラーまたは異常終了."""


class TeardownError(OverlayStreamError):
    """停止処理中の失敗."""


class NotificationDeliveryError(OverlayStreamError):
    """停止通知の送信失敗 (内部でリトライ・ログ出力のみ)."""


class RegistryError(OverlayStreamError):
    """SessionRegistry が呼び出し元に返す例外.

    Attributes:
        corr_id: 対象セッションの correlation id
        url: 対象 URL (不明な場合は None)
    """

    def __init__(self, message: str, *, corr_id: str, url: str | None = None):
        super().__init__(message)
        self.corr_id = corr_id
        self.url = url

    @property
    def cause(self) -> BaseException | None:
        """元の例外."""
        return self.__cause__


class DuplicateSessionError(RegistryError):
    """同じ corr_id のセッションが既に存在する."""


class SessionRunError(RegistryError):
    """セッション起動の失敗."""


class SessionStopError(RegistryError):
    """セッション停止の失敗."""
