"""Health endpoints for load balancers and uptime checks."""
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response

from db import engine
from eventlens.core.settings import settings

router = APIRouter()


@router.get("/health")
def health_check():
    # Check required settings presence (don't leak values)
    missing = []
    if not settings.DATABASE_URL and not settings.DB_SERVER:
        missing.append("DB_SERVER")
    if settings.SECRET_KEY == "CHANGE_THIS_TO_A_SECRET_KEY" or not settings.SECRET_KEY:
        missing.append("SECRET_KEY")

    # Check DB connectivity best-effort
    db_ok = False
    db_error = None
    try:
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        db_ok = True
    except Exception as e:
        db_error = str(e)

    status = "ok" if db_ok and not missing else ("degraded" if db_ok else "error")
    payload = {
        "status": status,
        "time": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "config": {
            "frontend_url_set": bool(settings.FRONTEND_URL),
            "stripe_configured": bool(settings.STRIPE_SECRET_KEY),
            "paypal_configured": bool(settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET),
            "paypal_mode": settings.PAYPAL_MODE,
            "revenuecat_configured": bool(settings.REVENUECAT_SECRET_KEY),
            "s3_bucket_set": bool(settings.S3_UPLOADS_BUCKET),
        },
        "missing": missing,
        "db": {"ok": db_ok, "error": db_error},
    }
    # Always 200; status is in the payload
    return JSONResponse(content=payload, status_code=200)


@router.get("/health.txt")
def health_text():
    return Response(content="OK", media_type="text/plain")
