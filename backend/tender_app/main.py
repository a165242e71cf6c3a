"""
Tender Taking-Off API
FastAPI backend with async PostgreSQL and JWT auth: NRM2 rule browser and
admin CMS, BQ items, dimension sheets and section roll-ups.
"""
import os
import logging
import time
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from dotenv import load_dotenv

load_dotenv()

from tender_app.services.logging_config import setup_logging
from tender_app.services.middleware import RequestTimingMiddleware, SecurityHeadersMiddleware
from tender_app.services.errors import TakingOffError

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)

logger = logging.getLogger("tender-api")

APP_VERSION = "1.0.0"
_PROCESS_START = time.monotonic()

for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var}; running in dev mode")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        from tender_app.db import init_db
        await init_db()
    except Exception as e:
        logger.warning(f"Table init warning (OK if using Alembic): {e}")
    yield
    from tender_app.db import engine
    await engine.dispose()


app = FastAPI(
    title="Tender Taking-Off API",
    version=APP_VERSION,
    description="NRM2 measurement: dimension sheets, bill of quantities and rule hierarchy",
    lifespan=lifespan,
)


@app.exception_handler(TakingOffError)
async def taking_off_error_handler(request: Request, exc: TakingOffError):
    logger.warning(
        "%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message,
        extra={"http_status": exc.status_code, "request_id": getattr(request.state, "request_id", None)},
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
)
app.add_middleware(SecurityHeadersMiddleware)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

from tender_app.api.rule_routes import router as rule_router
from tender_app.api.admin_rule_routes import router as admin_rule_router
from tender_app.api.bq_routes import router as bq_router
from tender_app.api.dimension_routes import router as dimension_router
from tender_app.api.section_routes import router as section_router

app.include_router(rule_router)
app.include_router(admin_rule_router)
app.include_router(bq_router)
app.include_router(dimension_router)
app.include_router(section_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": APP_VERSION,
        "db_configured": bool(os.getenv("DATABASE_URL")),
        "uptime_seconds": round(time.monotonic() - _PROCESS_START, 1),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("tender_app.main:app", host="0.0.0.0", port=8000, reload=True)
