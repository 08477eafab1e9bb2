"""FastAPI application for the overlay control surface.

REST API で Web ページ → rawvideo TCP ストリームのセッションを起動・停止する。
セッションは corrId ごとに 1 つ。内部エラーの詳細はログにのみ出力する。
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from overlay_stream.config import ServiceConfig
from overlay_stream.errors import RegistryError
from overlay_stream.log import configure_logging
from overlay_stream.notifier import StopNotifier
from overlay_stream.registry import SessionRegistry

logger = logging.getLogger(__name__)

# レスポンスコード
CODE_OK = 0
CODE_INTERNAL_ERROR = 1000
CODE_NOT_FOUND = 1004


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションのライフサイクル管理."""
    config = ServiceConfig.from_env()
    configure_logging(config.logging, config.name)

    registry = SessionRegistry(config.stream, StopNotifier(config.notifier))
    app.state.registry = registry
    logger.info(
        "%s server starting (ports=%d-%d, callback=%s)",
        config.name,
        config.stream.port_range_start,
        config.stream.port_range_end,
        config.notifier.url,
    )
    yield
    logger.info("%s server shutting down", config.name)
    await registry.deinit()
    await registry.aclose()


app = FastAPI(
    title="web-overlay-stream",
    description="Web page rendering to raw video over TCP via headless browser + FFmpeg",
    version="0.1.0",
    lifespan=lifespan,
)


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _error(status_code: int, code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": code, "message": message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.debug("Invalid request %s %s: %s", request.method, request.url.path, exc.errors())
    return _error(400, CODE_INTERNAL_ERROR, "Invalid request")


# ============================================================
# ヘルスチェック
# ============================================================


@app.get("/api/healthz")
async def healthz(request: Request) -> dict:
    """ヘルスチェック."""
    return {"status": "healthy", "active_sessions": len(_registry(request))}


# ============================================================
# REST API: オーバーレイ管理
# ============================================================


class RunOverlayRequest(BaseModel):
    """オーバーレイ起動リクエスト."""

    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(min_length=1)
    corr_id: str = Field(alias="corrId", min_length=1)


class StopOverlayRequest(BaseModel):
    """オーバーレイ停止リクエスト."""

    model_config = ConfigDict(populate_by_name=True)

    corr_id: str = Field(alias="corrId", min_length=1)


@app.post("/api/v1/overlay")
async def run_overlay(req: RunOverlayRequest, request: Request):
    """オーバーレイ起動: ブラウザ + FFmpeg 起動、readiness まで待つ."""
    try:
        endpoint = await _registry(request).run(req.url, req.corr_id)
    except RegistryError as e:
        logger.error("Error during running overlay %s: %s", req.corr_id, e)
        return _error(400, CODE_INTERNAL_ERROR, "Internal error")
    except Exception:
        logger.exception("Unexpected error running overlay %s", req.corr_id)
        return _error(400, CODE_INTERNAL_ERROR, "Internal error")
    return {"code": CODE_OK, "data": endpoint.as_dict()}


@app.delete("/api/v1/overlay")
async def stop_overlay(req: StopOverlayRequest, request: Request):
    """オーバーレイ停止 (存在しない corrId も成功扱い)."""
    try:
        await _registry(request).stop(req.corr_id)
    except RegistryError as e:
        logger.error("Error during stopping overlay %s: %s", req.corr_id, e)
        return _error(400, CODE_INTERNAL_ERROR, "Internal error")
    except Exception:
        logger.exception("Unexpected error stopping overlay %s", req.corr_id)
        return _error(400, CODE_INTERNAL_ERROR, "Internal error")
    return {"code": CODE_OK}


@app.get("/api/v1/overlay")
async def list_overlays(request: Request) -> dict:
    """アクティブオーバーレイ一覧."""
    return {"code": CODE_OK, "data": _registry(request).list_sessions()}


@app.get("/api/v1/overlay/{corr_id}")
async def get_overlay(corr_id: str, request: Request):
    """オーバーレイ情報取得."""
    session = _registry(request).get(corr_id)
    if session is None:
        return _error(404, CODE_NOT_FOUND, "Session not found")
    return {"code": CODE_OK, "data": {"corr_id": corr_id, **session.info()}}


def main() -> None:
    """uvicorn でサーバーを起動する (python -m app.main)."""
    config = ServiceConfig.from_env()
    uvicorn.run(app, host=config.http_host, port=config.http_port)


if __name__ == "__main__":
    main()
