"""FastAPI application exposing generation, cache bust and health."""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agent.runtime import AppRuntime
from agent.service import ServiceSettings, SqlGenerationService
from common.config.env import get_env_str
from common.errors import ErrorCode, http_status_for

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ADMIN_KEY_HEADER = "X-Admin-Api-Key"


class GenerateRequest(BaseModel):
    """Body of ``POST /api/sql-generator``."""

    question: Optional[str] = None
    user_identifier: Optional[str] = None
    model: Optional[str] = None


def _error(code: ErrorCode, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=http_status_for(code),
        content={"ok": False, "error": {"code": code.value, "message": message}},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime unless a test already injected one."""
    runtime: Optional[AppRuntime] = getattr(app.state, "runtime", None)
    owned = runtime is None
    if owned:
        runtime = AppRuntime.create()
        app.state.runtime = runtime
        await runtime.start()
    if getattr(app.state, "service", None) is None:
        app.state.service = SqlGenerationService(runtime, ServiceSettings.from_env())
    yield
    if owned:
        await runtime.shutdown()
        app.state.runtime = None
        app.state.service = None


app = FastAPI(title="Text2SQL SQL Generator", lifespan=lifespan)


@app.post("/api/sql-generator")
async def generate_sql(payload: GenerateRequest, request: Request) -> JSONResponse:
    """Turn one question into one validated read-only query."""
    service: SqlGenerationService = request.app.state.service
    response = await service.generate(
        payload.question,
        user_identifier=payload.user_identifier,
        model=payload.model,
    )
    return JSONResponse(status_code=response.status_code, content=response.body)


@app.post("/api/sql-generator/admin/cache/bust")
async def bust_schema_cache(request: Request) -> JSONResponse:
    """Rebuild the schema snapshot now and tell other instances to do the same."""
    expected = get_env_str("ADMIN_API_KEY")
    provided = request.headers.get(ADMIN_KEY_HEADER) or ""
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("schema_cache_bust_forbidden")
        return _error(ErrorCode.FORBIDDEN, "Invalid or missing admin API key.")

    runtime: AppRuntime = request.app.state.runtime
    try:
        result = await runtime.snapshot_cache.bust(reason="admin")
    except Exception as exc:
        logger.error("schema_cache_bust_failed error=%s", exc)
        return _error(ErrorCode.CACHE_BUST_FAILED, "Schema cache refresh failed.")

    logger.info(
        "schema_cache_busted snapshot_id=%s tables=%d propagation=%s",
        result.manifest.snapshot_id[:12],
        len(result.manifest.tables),
        result.propagation.value,
    )
    return JSONResponse(
        content={
            "ok": True,
            "snapshot_id": result.manifest.snapshot_id,
            "tables_count": len(result.manifest.tables),
            "propagation": result.propagation.value,
        }
    )


@app.get("/healthz")
async def healthz(request: Request) -> dict:
    """Liveness plus the snapshot currently served."""
    runtime: Optional[AppRuntime] = getattr(request.app.state, "runtime", None)
    manifest = runtime.snapshot_cache.current if runtime is not None else None
    return {
        "status": "ok",
        "snapshot_id": manifest.snapshot_id if manifest else None,
        "subscription": runtime.snapshot_cache.subscription_status.value if runtime else None,
    }
