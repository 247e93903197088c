"""Trusthash sidecar HTTP API (FastAPI application).

Endpoints:
    GET  /                                  Service info
    GET  /health                            Database status and index size
    GET  /webhook                           Webhook readiness
    POST /webhook                           Ingest one or a batch of notifications
    GET  /v1/search-similar                 pHash similarity search
    GET  /v1/search-similar/stats           Index statistics
    GET  /v1/matches/byBinding              Exact binding lookup (query params)
    POST /v1/matches/byBinding              Exact binding lookup (JSON body)
    POST /v1/matches/byContent              Lookup by uploaded image bytes
    POST /v1/matches/byReference            Lookup by image URL
    GET  /v1/manifests/{manifestId}         Manifest redirect or bytes
    GET  /v1/services/supportedAlgorithms   Algorithm registry

Usage:
    from trusthash.server import create_app

    app = create_app(config)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from . import __version__
from .config import SidecarConfig, load_or_create_config
from .context import SidecarContext
from .errors import InternalError, SidecarError, SizeLimitExceeded, ValidationError, log_exception
from .ingest import split_payload
from .locator import MANIFEST_MEDIA_TYPE, RESOLUTION_HEADER
from .manifest_store import DEFAULT_LIMIT, DEFAULT_THRESHOLD, MAX_LIMIT, MAX_THRESHOLD
from .models import ByBindingRequest, ByReferenceRequest, ErrorResponse
from .resolution import require_image_type
from .search import get_search_stats, search_similar
from .streams import aread_with_limit, parse_content_length

logger = logging.getLogger(__name__)

SERVICE_NAME = "Trusthash Sidecar"


def _parse_bounded_int(raw: Optional[str], default: int, low: int, high: int, name: str) -> int:
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        value = None
    if value is None or not low <= value <= high:
        raise ValidationError(f"{name} must be an integer between {low} and {high}")
    return value


def _parse_flag(raw: Optional[str], name: str) -> bool:
    if raw is None or raw == "" or raw.lower() == "false":
        return False
    if raw.lower() == "true":
        return True
    raise ValidationError(f"{name} must be true or false")


def _context(request: Request) -> SidecarContext:
    return request.app.state.context


def create_app(
    config: Optional[SidecarConfig] = None,
    context: Optional[SidecarContext] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Parameters
    ----------
    config:
        Sidecar configuration. If None, loaded from the environment.
    context:
        Prebuilt service container (tests). If None, one is built from
        ``config`` at startup, running schema migrations first.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = False
        if app.state.context is None:
            app.state.context = SidecarContext.from_config(app.state.config)
            owned = True
        ctx = app.state.context
        logger.info("%s %s started: gateway=%s db=%s manifests=%d",
                    SERVICE_NAME, __version__, ctx.config.gateway_url,
                    ctx.config.db_path, ctx.store.count())
        yield
        if owned:
            ctx.close()
            app.state.context = None
        logger.info("%s stopped", SERVICE_NAME)

    app = FastAPI(
        title=SERVICE_NAME,
        description="C2PA manifest repository, soft binding resolution and pHash similarity search",
        version=__version__,
        lifespan=lifespan,
    )
    if config is None:
        config = context.config if context is not None else load_or_create_config()
    app.state.config = config
    app.state.context = context

    # ── Exception handlers ──────────────────────────────────────────
    @app.exception_handler(SidecarError)
    async def _sidecar_error_handler(request: Request, exc: SidecarError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.debug("%s %s rejected: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error=f"Invalid request: {message}", code="validation_error").model_dump(),
        )

    @app.exception_handler(Exception)
    async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log_exception(exc, f"{request.method} {request.url.path}")
        logger.exception("Unhandled API error: %s", exc)
        error = InternalError("Internal server error")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    # ── Service info & health ───────────────────────────────────────
    @app.get("/")
    def service_info():
        return {
            "name": SERVICE_NAME,
            "version": __version__,
            "description": "C2PA manifest repository, soft binding API, and pHash similarity search",
            "endpoints": {
                "health": "GET /health",
                "search": "GET /v1/search-similar",
                "matches": "GET/POST /v1/matches/*",
                "manifests": "GET /v1/manifests/:manifestId",
                "services": "GET /v1/services/supportedAlgorithms",
                "webhook": "POST /webhook",
            },
        }

    @app.get("/health")
    def health(request: Request):
        store = _context(request).store
        healthy = store.ping()
        indexed = store.count() if healthy else 0
        body = {
            "success": healthy,
            "data": {
                "status": "ok" if healthy else "error",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "version": __version__,
                "services": {"database": "healthy" if healthy else "unhealthy"},
                "stats": {"indexedManifests": indexed},
            },
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    # ── Webhook ─────────────────────────────────────────────────────
    @app.get("/webhook")
    def webhook_ready():
        return {
            "status": "ready",
            "endpoint": "/webhook",
            "accepts": ["POST"],
            "description": "Gateway webhook receiver for manifest transactions",
        }

    @app.post("/webhook")
    def webhook(request: Request, payload: Any = Body(...)):
        is_batch, items = split_payload(payload)
        processor = _context(request).webhooks
        if is_batch:
            return processor.process_batch(items).to_dict()
        result = processor.process(items[0])
        return {"success": result.success, "data": result.to_dict()}

    # ── Similarity search ───────────────────────────────────────────
    @app.get("/v1/search-similar")
    def search(
        request: Request,
        phash: Optional[str] = Query(default=None),
        txId: Optional[str] = Query(default=None),
        threshold: Optional[str] = Query(default=None),
        limit: Optional[str] = Query(default=None),
    ):
        if not phash and not txId:
            raise ValidationError("Either phash or txId query parameter is required")
        threshold_value = _parse_bounded_int(threshold, DEFAULT_THRESHOLD, 0, MAX_THRESHOLD, "threshold")
        limit_value = _parse_bounded_int(limit, DEFAULT_LIMIT, 1, MAX_LIMIT, "limit")
        result = search_similar(_context(request).store, phash=phash, tx_id=txId,
                                threshold=threshold_value, limit=limit_value)
        return {"success": True, "data": result.to_dict()}

    @app.get("/v1/search-similar/stats")
    def search_stats(request: Request):
        return {"success": True, "data": get_search_stats(_context(request).store)}

    # ── Soft binding resolution ─────────────────────────────────────
    @app.get("/v1/matches/byBinding")
    def by_binding_query(
        request: Request,
        alg: Optional[str] = Query(default=None),
        value: Optional[str] = Query(default=None),
        maxResults: Optional[str] = Query(default=None),
    ):
        if not alg or not value:
            raise ValidationError("alg and value query parameters are required")
        return _context(request).resolution.by_binding(alg, value, maxResults)

    @app.post("/v1/matches/byBinding")
    def by_binding_body(
        request: Request,
        body: ByBindingRequest,
        maxResults: Optional[str] = Query(default=None),
    ):
        if not body.alg or not body.value:
            raise ValidationError("alg and value are required in the request body")
        return _context(request).resolution.by_binding(body.alg, body.value, maxResults)

    @app.post("/v1/matches/byContent")
    async def by_content(
        request: Request,
        alg: Optional[str] = Query(default=None),
        maxResults: Optional[str] = Query(default=None),
        hintAlg: Optional[str] = Query(default=None),
        hintValue: Optional[str] = Query(default=None),
    ):
        resolution = _context(request).resolution
        content_type = request.headers.get("content-type", "application/octet-stream")
        require_image_type(content_type, "Unsupported content type. Only images are supported.")

        declared = parse_content_length(request.headers.get("content-length"))
        if declared is not None and declared > resolution.max_image_bytes:
            raise SizeLimitExceeded(resolution.size_limit_message())
        data = await aread_with_limit(
            request.stream(), resolution.max_image_bytes, resolution.size_limit_message(),
        )
        return await run_in_threadpool(
            resolution.by_content, data, content_type,
            alg=alg, max_results=maxResults, hint_alg=hintAlg, hint_value=hintValue,
        )

    @app.post("/v1/matches/byReference")
    def by_reference(
        request: Request,
        body: Optional[ByReferenceRequest] = None,
        alg: Optional[str] = Query(default=None),
        maxResults: Optional[str] = Query(default=None),
    ):
        body = body or ByReferenceRequest()
        return _context(request).resolution.by_reference(
            body.referenceUrl, body.assetLength, body.assetType,
            alg=alg, max_results=maxResults,
        )

    # ── Manifests & services ────────────────────────────────────────
    @app.get("/v1/manifests/{manifest_id}")
    def get_manifest(
        request: Request,
        manifest_id: str,
        returnActiveManifest: Optional[str] = Query(default=None),
    ):
        active = _parse_flag(returnActiveManifest, "returnActiveManifest")
        result = _context(request).locator.locate(manifest_id, return_active_manifest=active)
        headers = {RESOLUTION_HEADER: result.method}
        if result.is_redirect:
            return RedirectResponse(result.redirect_url, status_code=302, headers=headers)
        return Response(content=result.content, media_type=MANIFEST_MEDIA_TYPE, headers=headers)

    @app.get("/v1/services/supportedAlgorithms")
    def supported_algorithms(request: Request):
        return _context(request).resolution.supported_algorithms()

    return app


def run_server(config: SidecarConfig) -> None:
    """Run the API with uvicorn (blocking)."""
    import uvicorn

    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level)
