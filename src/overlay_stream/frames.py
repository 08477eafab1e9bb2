"""PNG スクリーンショット → raw ピクセル変換.

Pillow でデコードし、FFmpeg の入力形式 (rgba) に合わせた
raw バイト列を返す。デコードはワーカースレッドで実行する。
"""

import asyncio
import io
import logging

from PIL import Image

from overlay_stream.errors import DecodeTimeoutError

logger = logging.getLogger(__name__)

# FFmpeg -pix_fmt → Pillow mode
PIXEL_MODES = {
    "rgba": "RGBA",
    "rgb24": "RGB",
}


def decode_frame(data: bytes, size: tuple[int, int], pix_fmt: str = "rgba") -> bytes:
    """PNG バイト列を raw ピクセルに変換する.

    サイズが異なる場合は size にリサイズする
    (FFmpeg は固定サイズのフレームを期待するため)。

    Args:
        data: PNG バイト列
        size: (width, height)
        pix_fmt: 出力ピクセル形式 (FFmpeg の -pix_fmt 名)

    Returns:
        width * height * bytes_per_pixel の raw バイト列
    """
    mode = PIXEL_MODES.get(pix_fmt)
    if mode is None:
        raise ValueError(f"Unsupported pixel format: {pix_fmt}")

    with Image.open(io.BytesIO(data)) as image:
        frame = image.convert(mode)
    if frame.size != size:
        logger.debug("Resizing frame %s -> %s", frame.size, size)
        frame = frame.resize(size)
    return frame.tobytes()


async def decode_frame_async(
    data: bytes,
    size: tuple[int, int],
    *,
    pix_fmt: str = "rgba",
    timeout: float = 5.0,
) -> bytes:
    """decode_frame をワーカースレッドで実行する.

    Raises:
        DecodeTimeoutError: timeout 秒以内に終わらなかった場合
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(decode_frame, data, size, pix_fmt), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise DecodeTimeoutError(
            f"Timeout for frame decode ({timeout:.1f}s)"
        ) from e
