import asyncio
from typing import Awaitable, Callable

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from pagecapture.browser.backend import PageBackend
from pagecapture.browser.playwright_backend import PlaywrightBrowser
from pagecapture.config import settings
from pagecapture.devices import list_device_presets
from pagecapture.logger import setup_logger
from pagecapture.pipeline.capture import CaptureContext, CaptureResult, run_capture, run_extract
from pagecapture.pipeline.errors import ErrorCode
from pagecapture.pipeline.models import CaptureRequest, ExtractRequest
from pagecapture.storage import LocalStorageTarget
from pagecapture.telemetry import TelemetryHub

log = logger.bind(module="main")

SessionFactory = Callable[[], Awaitable[PageBackend]]

_STATUS_BY_CODE = {
    ErrorCode.INVALID_URL: 400,
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.NAVIGATION_TIMEOUT: 504,
    ErrorCode.NAVIGATION_FAILED: 502,
    ErrorCode.CAPTURE_FAILED: 500,
}

app = FastAPI(title="pagecapture")
telemetry = TelemetryHub()

_browser: PlaywrightBrowser | None = None
_browser_lock = asyncio.Lock()

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def _ensure_browser() -> PlaywrightBrowser:
    global _browser
    async with _browser_lock:
        if _browser is None:
            browser = PlaywrightBrowser(settings)
            await browser.start()
            _browser = browser
            telemetry.emit("browser.launched", {"headless": settings.playwright_headless})
    return _browser


async def open_playwright_session() -> PageBackend:
    browser = await _ensure_browser()
    return await browser.new_session()


def get_session_factory() -> SessionFactory:
    return open_playwright_session


def _context(backend: PageBackend | None) -> CaptureContext:
    storage = LocalStorageTarget(settings.storage_dir) if settings.persist_captures else None
    return CaptureContext(backend=backend, settings=settings, telemetry=telemetry, storage=storage)


def _respond(result: CaptureResult) -> JSONResponse:
    status = 200 if result.success else _STATUS_BY_CODE.get(result.error.error.code, 422)
    return JSONResponse(result.to_wire(), status_code=status)


async def _close(backend: PageBackend) -> None:
    close = getattr(backend, "close", None)
    if close is not None:
        await close()


@app.on_event("startup")
async def startup_event():
    """Configure logging; the browser starts on first use."""
    setup_logger(settings.log_level, settings.log_path)
    log.info("startup: headless={} timeout={}ms", settings.playwright_headless, settings.capture_timeout_ms)


@app.on_event("shutdown")
async def shutdown_event():
    global _browser
    if _browser is not None:
        await _browser.stop()
        _browser = None
        telemetry.emit("browser.closed", {})
    await telemetry.flush()


@app.get("/health")
async def health():
    return {"status": "ok", "browser": _browser is not None}


@app.get("/devices")
async def devices():
    return {"devices": list_device_presets()}


@app.post("/capture")
async def capture(request: CaptureRequest, open_session: SessionFactory = Depends(get_session_factory)):
    if request.validate_only:
        # validate mode never touches a browser
        return _respond(await run_capture(request, _context(None)))
    backend = await open_session()
    try:
        result = await run_capture(request, _context(backend))
    finally:
        await _close(backend)
    return _respond(result)


@app.post("/extract")
async def extract(request: ExtractRequest, open_session: SessionFactory = Depends(get_session_factory)):
    backend = await open_session()
    try:
        result = await run_extract(request, _context(backend))
    finally:
        await _close(backend)
    return _respond(result)


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await telemetry.connect(ws)
    await ws.send_json({"type": "LOG", "level": "info", "message": "Connected"})

    try:
        while True:
            message = await ws.receive_json()
            msg_type = message.get("type")
            if msg_type == "PING":
                await ws.send_json({"type": "PONG"})
            else:
                await ws.send_json({"type": "LOG", "level": "warn", "message": f"Unknown message: {msg_type}"})
    except WebSocketDisconnect:
        await telemetry.disconnect(ws)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
