import redis
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api import router
from .config import settings
from .core.logging_config import setup_logging
from .core.middleware import DistributedTracingMiddleware, SecurityHeadersMiddleware
from .db import SessionLocal, init_db

setup_logging()
if settings.DATABASE_URL.startswith("sqlite") or settings.DB_AUTO_CREATE_ALL:
    init_db()

app = FastAPI(
    title="slotkeeper",
    description="Slot availability, reservation locks and booking commits",
    version="0.1.0",
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(DistributedTracingMiddleware)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    checks = {"db": "ok", "redis": "skipped"}
    db_ok = True
    redis_ok = True

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        checks["db"] = "error"
        db_ok = False

    if settings.EVENT_BUS_ENABLED and settings.REDIS_URL:
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            client.ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"
            redis_ok = False

    if db_ok and redis_ok:
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


app.include_router(router)
