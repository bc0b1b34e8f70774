import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from flowmonitor.errors import MonitorError
from flowmonitor.routes import api
from flowmonitor.routes import dashboard as dashboard_ui
from flowmonitor.services import streamer as streamer_service

LOGGER = logging.getLogger("flowmonitor.main")

STATIC_DIR = Path(__file__).resolve().parent / "static"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    active = streamer_service._streamer
    if active is not None:
        active.close_all()


app = FastAPI(title="Flow Monitor", lifespan=lifespan)
app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
app.include_router(api.router)
app.include_router(dashboard_ui.router)


@app.exception_handler(MonitorError)
async def monitor_error_handler(request: Request, exc: MonitorError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        LOGGER.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)
