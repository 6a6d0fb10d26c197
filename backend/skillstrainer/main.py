import json
import logging
import threading
import time
import uuid
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from skillstrainer.core.config import settings
from skillstrainer.routers import health, quizzes
from skillstrainer.services import stale_generation_jobs


def _parse_csv(value: str) -> list[str]:
    return [x.strip() for x in str(value or "").split(",") if x.strip()]


def create_app() -> FastAPI:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app = FastAPI(title="Skills Trainer Quiz API", version="1.0.0")

    logger = logging.getLogger("skillstrainer")
    logging.getLogger("httpx").setLevel(logging.WARNING)

    allow_origins = _parse_csv(settings.cors_allow_origins)
    if "*" in allow_origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not include '*' when allow_credentials=true")

    is_prod = (settings.app_env or "").strip().lower() in {"prod", "production"}

    allow_methods_raw = str(settings.cors_allow_methods or "*").strip()
    allow_headers_raw = str(settings.cors_allow_headers or "*").strip()
    if is_prod:
        allow_methods = ["GET", "POST", "PATCH", "OPTIONS"] if allow_methods_raw == "*" else _parse_csv(allow_methods_raw)
        allow_headers = (
            ["authorization", "content-type", "x-request-id"] if allow_headers_raw == "*" else _parse_csv(allow_headers_raw)
        )
    else:
        allow_methods = ["*"] if allow_methods_raw == "*" else _parse_csv(allow_methods_raw)
        allow_headers = ["*"] if allow_headers_raw == "*" else _parse_csv(allow_headers_raw)

    def _request_id(request: Request) -> str | None:
        rid = getattr(getattr(request, "state", None), "request_id", None)
        rid = str(rid or "").strip()
        return rid or None

    def _error_response(request: Request, status_code: int, error_code: str, error_message: str, headers=None):
        return JSONResponse(
            status_code=int(status_code),
            content={
                "ok": False,
                "error_code": error_code,
                "error_message": error_message,
                "request_id": _request_id(request),
            },
            headers=headers,
        )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        t0 = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        status_code: int | None = None
        try:
            if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
                origin = (request.headers.get("origin") or "").strip()
                if origin and origin not in allow_origins:
                    status_code = 403
                    response = _error_response(request, 403, "forbidden", "invalid origin")
                    response.headers["X-Request-ID"] = rid
                    return response
            response = await call_next(request)
            status_code = int(getattr(response, "status_code", 0) or 0)
        except Exception:
            status_code = 500
            raise
        finally:
            path = request.url.path
            if not path.startswith("/health"):
                logger.info(
                    json.dumps(
                        {
                            "ts": datetime.utcnow().isoformat(),
                            "rid": rid,
                            "user_id": getattr(request.state, "user_id", None),
                            "method": request.method,
                            "path": path,
                            "status": status_code,
                            "duration_ms": int((time.perf_counter() - t0) * 1000),
                        },
                        ensure_ascii=False,
                    )
                )

        response.headers["X-Request-ID"] = rid
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if is_prod:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict):
            error_code = str(detail.get("error_code") or "http_error")
            error_message = str(detail.get("error_message") or detail.get("detail") or "request failed")
        else:
            status = int(exc.status_code)
            error_code = {401: "unauthorized", 403: "forbidden", 404: "not_found", 503: "unavailable"}.get(
                status, "http_error"
            )
            error_message = str(detail or "request failed")
        return _error_response(request, exc.status_code, error_code, error_message, getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled exception rid=%s", _request_id(request))
        return _error_response(request, 500, "internal_error", "internal server error")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=allow_methods,
        allow_headers=allow_headers,
    )

    app.include_router(health.router)
    app.include_router(quizzes.session_router)
    app.include_router(quizzes.router)

    def _start_stale_generation_scheduler() -> None:
        interval_seconds = stale_generation_jobs.sweep_interval_seconds()

        def _tick() -> None:
            try:
                stale_generation_jobs.enqueue_stale_sweep(lock_ttl_seconds=max(60, interval_seconds - 5))
            except Exception:
                logger.warning("stale generation sweep could not be scheduled", exc_info=True)
            finally:
                t = threading.Timer(interval_seconds, _tick)
                t.daemon = True
                t.start()

        t0 = threading.Timer(10, _tick)
        t0.daemon = True
        t0.start()

    @app.on_event("startup")
    async def _startup_tasks() -> None:
        if bool(settings.enable_inprocess_scheduler):
            _start_stale_generation_scheduler()

    return app


app = create_app()
