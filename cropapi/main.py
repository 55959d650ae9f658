from __future__ import annotations

import asyncio
import json
import logging
import logging.config
import os
from datetime import datetime
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from cropapi.deps.auth import require_api_key
from cropapi.routes.health import router as health_router
from cropapi.routes.recommend import router as recommend_router
from cropapi.services.recommender import CropRecommender
from cropapi.utils.request_id import new_rid

load_dotenv()

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8080"))
APP_VERSION = os.getenv("APP_VERSION", datetime.utcnow().strftime("%Y.%m.%d"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DATASET_PATH = os.getenv("DATASET_PATH")
TRAIN_ON_STARTUP = os.getenv("TRAIN_ON_STARTUP", "false").strip().lower() in ("1", "true", "yes")

logger = logging.getLogger("cropapi")


def _split_env(name: str, default: str) -> List[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


def _configure_logging() -> None:
    cfg_path = Path(__file__).resolve().parent.parent / "config" / "logging.json"
    if cfg_path.exists():
        with open(cfg_path, "r", encoding="utf-8") as f:
            logging.config.dictConfig(json.load(f))
    else:
        logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("cropapi").setLevel(LOG_LEVEL)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or new_rid()
        request.state.request_id = rid
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response


app = FastAPI(title="Crop Recommendation API", version=APP_VERSION)

# CORS configuration from environment
allow_origins = _split_env("CORS_ALLOW_ORIGINS", "*")
allow_methods = _split_env("CORS_ALLOW_METHODS", "GET,POST,OPTIONS")
allow_headers = _split_env("CORS_ALLOW_HEADERS", "X-Api-Key,Content-Type,Accept")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_methods=allow_methods,
    allow_headers=allow_headers,
)
app.add_middleware(RequestIdMiddleware)

# API key protection
app.include_router(health_router, prefix="/api", dependencies=[Depends(require_api_key)])
app.include_router(recommend_router, prefix="/api", dependencies=[Depends(require_api_key)])


@app.on_event("startup")
async def on_startup() -> None:
    _configure_logging()
    logger.info("[CONFIG] API_HOST           = %s", API_HOST)
    logger.info("[CONFIG] API_PORT           = %s", API_PORT)
    logger.info("[CONFIG] DATASET_PATH       = %s", DATASET_PATH or "<bundled>")
    logger.info("[CONFIG] TRAIN_ON_STARTUP   = %s", TRAIN_ON_STARTUP)
    logger.info("[CONFIG] LOG_LEVEL          = %s", LOG_LEVEL)
    logger.info("[CONFIG] APP_VERSION        = %s", APP_VERSION)

    if getattr(app.state, "recommender", None) is None:
        app.state.recommender = CropRecommender.from_env()
    if TRAIN_ON_STARTUP:
        app.state.warmup_task = asyncio.create_task(_warm_up(app.state.recommender))


async def _warm_up(rec: CropRecommender) -> None:
    try:
        state = await rec.warm_up()
    except Exception:
        logger.exception("[TRAIN] startup warm-up failed")
        return
    if rec.trainer.load_error is not None:
        logger.error("[TRAIN] startup warm-up could not load the dataset; the next /recommend reports it")
    else:
        logger.info("[TRAIN] startup warm-up finished: %s", state.value)


@app.get("/healthz")
async def healthz() -> dict:
    return {"ok": True}


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    rid = getattr(request.state, "request_id", new_rid())
    detail = exc.detail
    if isinstance(detail, dict):
        code = detail.get("code", exc.status_code)
        message = detail.get("message", "")
    else:
        code = exc.status_code
        message = str(detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": code, "message": message}, "request_id": rid},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    rid = getattr(request.state, "request_id", new_rid())
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {"code": 422, "message": jsonable_errors(exc)},
            "request_id": rid,
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold exception objects that JSONResponse cannot encode
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("cropapi.main:app", host=API_HOST, port=API_PORT)
