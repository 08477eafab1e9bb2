"""Playwright Chromium レンダラー.

ヘッドレスブラウザで URL を開き、PNG スクリーンショットを
フレームとして返す。
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from playwright.async_api import async_playwright

logger = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
]


class Renderer(Protocol):
    """StreamSession が使うレンダラーのインターフェース."""

    @property
    def viewport_size(self) -> tuple[int, int] | None: ...

    async def navigate(self, url: str) -> None: ...

    async def capture_frame(self) -> bytes: ...

    async def close(self) -> None: ...


class PlaywrightRenderer:
    """Playwright の (playwright_instance, browser, page) をまとめて管理する.

    Usage:
        renderer = await PlaywrightRenderer.launch(1280, 720)
        await renderer.navigate("https://example.com")
        png = await renderer.capture_frame()
        await renderer.close()
    """

    def __init__(self, pw: Any, browser: Any, page: Any):
        self._pw = pw
        self._browser = browser
        self._page = page

    @classmethod
    async def launch(cls, width: int, height: int) -> PlaywrightRenderer:
        """ヘッドレス Chromium を起動し、固定ビューポートのページを開く.

        Args:
            width: ビューポート幅 (px)
            height: ビューポート高さ (px)
        """
        pw = await async_playwright().start()
        try:
            browser = await pw.chromium.launch(headless=True, args=CHROMIUM_ARGS)
            page = await browser.new_page(
                viewport={"width": width, "height": height},
                is_mobile=False,
            )
        except Exception:
            await pw.stop()
            raise

        logger.info("Browser launched (%dx%d)", width, height)
        return cls(pw, browser, page)

    @property
    def viewport_size(self) -> tuple[int, int] | None:
        """ページのビューポートサイズ (未設定なら None)."""
        viewport = self._page.viewport_size if self._page else None
        if not viewport:
            return None
        return (viewport["width"], viewport["height"])

    async def navigate(self, url: str) -> None:
        """URL を開く (ナビゲーション失敗時は例外)."""
        await self._page.goto(url)
        logger.info("Navigated to %s", url)

    async def capture_frame(self) -> bytes:
        """背景を省略した PNG スクリーンショットを返す."""
        return await self._page.screenshot(type="png", omit_background=True)

    async def close(self) -> None:
        """ブラウザと Playwright を終了する.

        両方の終了を試み、最初の例外を送出する。
        """
        first_error: Exception | None = None
        if self._browser is not None:
            try:
                await self._browser.close()
                logger.info("Browser closed")
            except Exception as e:
                logger.exception("Error closing browser")
                first_error = e
            self._browser = None
            self._page = None
        if self._pw is not None:
            try:
                await self._pw.stop()
            except Exception as e:
                logger.exception("Error stopping playwright")
                first_error = first_error or e
            self._pw = None
        if first_error is not None:
            raise first_error
