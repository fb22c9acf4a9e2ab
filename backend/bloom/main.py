import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bloom.core.settings import settings, validate_settings
from bloom.db.session import engine
from bloom.models import Base
from bloom.routers.halaxy import router as halaxy_router
from bloom.services.halaxy.client import reset_halaxy_client
from bloom.services.halaxy.errors import ConfigurationError

app = FastAPI(title="Bloom Halaxy Sync API", version="0.1.0")
logger = logging.getLogger("bloom.startup")


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.warning("Halaxy configuration error: %s", exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = request.headers.get("x-request-id")
    logger.exception("Unhandled server error", extra={"request_id": request_id})
    payload = {"detail": "Internal server error"}
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=500, content=payload)


@app.on_event("startup")
def startup():
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)
    logger.info("Halaxy credentials configured: %s", settings.has_halaxy_credentials())


@app.on_event("shutdown")
def shutdown():
    reset_halaxy_client()


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(halaxy_router)
