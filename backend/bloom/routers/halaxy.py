import json
import logging
import time
from dataclasses import asdict

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from bloom.core.settings import Settings, settings
from bloom.db.session import get_db
from bloom.models.practitioner import Practitioner
from bloom.schemas.halaxy import SyncStatusOut, TokenStatusOut, WebhookResultOut
from bloom.services.halaxy.client import HalaxyClient, get_halaxy_client
from bloom.services.halaxy.errors import HalaxyError, describe_error
from bloom.services.halaxy.sync_service import HalaxySyncService
from bloom.services.halaxy.triggers import run_sync_for_all_practitioners
from bloom.services.halaxy.webhooks import SIGNATURE_HEADERS, verify_signature

router = APIRouter(prefix="/api/halaxy", tags=["halaxy"])
logger = logging.getLogger(__name__)


def get_app_settings() -> Settings:
    return settings


def get_client(app_settings: Settings = Depends(get_app_settings)) -> HalaxyClient | None:
    if not app_settings.has_halaxy_credentials():
        return None
    return get_halaxy_client(app_settings)


def _not_configured(app_settings: Settings) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={
            "error": "Halaxy credentials not configured",
            "configured": {
                "HALAXY_CLIENT_ID": bool(app_settings.halaxy_client_id),
                "HALAXY_CLIENT_SECRET": bool(app_settings.halaxy_client_secret),
            },
        },
    )


@router.post("/sync")
def trigger_sync(
    practitioner_id: str | None = Query(default=None, alias="practitionerId"),
    include_slots: bool = Query(default=False, alias="includeSlots"),
    db: Session = Depends(get_db),
    client: HalaxyClient | None = Depends(get_client),
    app_settings: Settings = Depends(get_app_settings),
):
    if client is None:
        return _not_configured(app_settings)
    logger.info("Manual Halaxy sync triggered")
    try:
        return run_sync_for_all_practitioners(
            db,
            client,
            app_settings,
            practitioner_ids=[practitioner_id] if practitioner_id else None,
            include_slots=include_slots,
        )
    except (HalaxyError, httpx.HTTPError, SQLAlchemyError) as exc:
        logger.exception("Manual Halaxy sync failed")
        return JSONResponse(
            status_code=500, content={"error": "Sync failed", "message": describe_error(exc)}
        )


@router.get("/status", response_model=TokenStatusOut)
def halaxy_status(client: HalaxyClient | None = Depends(get_client)):
    if client is None:
        return TokenStatusOut(configured=False, has_token=False, is_expired=True)
    token = client.token_manager.get_token_status()
    return TokenStatusOut(
        configured=True,
        has_token=token.has_token,
        expires_at=token.expires_at,
        is_expired=token.is_expired,
    )


@router.get("/practitioners/{practitioner_id}/sync-status", response_model=SyncStatusOut)
def practitioner_sync_status(
    practitioner_id: str,
    db: Session = Depends(get_db),
    client: HalaxyClient | None = Depends(get_client),
    app_settings: Settings = Depends(get_app_settings),
):
    practitioner = db.scalar(
        select(Practitioner).where(
            or_(
                Practitioner.id == practitioner_id,
                Practitioner.halaxy_practitioner_id == practitioner_id,
            )
        )
    )
    if practitioner is None:
        raise HTTPException(status_code=404, detail="Practitioner not found")
    service = HalaxySyncService(db, client, app_settings)
    return SyncStatusOut(**asdict(service.get_sync_status(practitioner.id)))


@router.post("/webhook", response_model=WebhookResultOut)
async def halaxy_webhook(
    request: Request,
    db: Session = Depends(get_db),
    client: HalaxyClient | None = Depends(get_client),
    app_settings: Settings = Depends(get_app_settings),
):
    started = time.perf_counter()
    body = await request.body()

    secret = app_settings.halaxy_webhook_secret
    if secret:
        signature = next(
            (request.headers[name] for name in SIGNATURE_HEADERS if name in request.headers),
            None,
        )
        if not verify_signature(signature, body, secret):
            logger.warning("Invalid Halaxy webhook signature")
            return JSONResponse(
                status_code=401,
                content={"success": False, "error": "Invalid webhook signature"},
            )

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Failed to parse Halaxy webhook body")
        return JSONResponse(
            status_code=400, content={"success": False, "error": "Invalid JSON payload"}
        )
    if not isinstance(payload, dict) or not payload.get("event") or not isinstance(
        payload.get("data"), dict
    ):
        return JSONResponse(
            status_code=400, content={"success": False, "error": "Missing event or data"}
        )
    if client is None:
        return _not_configured(app_settings)

    event = payload["event"]
    logger.info("Processing Halaxy webhook event %s", event)
    service = HalaxySyncService(db, client, app_settings)
    result = await run_in_threadpool(service.incremental_sync, event, payload["data"])
    duration = int((time.perf_counter() - started) * 1000)
    logger.info(
        "Halaxy webhook %s processed in %sms, success=%s records=%s",
        event,
        duration,
        result.success,
        result.records_processed,
    )
    return WebhookResultOut(
        success=result.success,
        event=event,
        records_processed=result.records_processed,
        duration=duration,
    )
