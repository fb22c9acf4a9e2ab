from __future__ import annotations

import logging
import time
from typing import Any, Iterable

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bloom.core.settings import Settings
from bloom.services.halaxy.client import HalaxyClient
from bloom.services.halaxy.errors import HalaxyError, describe_error
from bloom.services.halaxy.sync_service import HalaxySyncService

logger = logging.getLogger(__name__)


def practitioner_name(resource: dict[str, Any]) -> str:
    names = resource.get("name") or []
    if not names:
        return resource.get("id") or "Unknown"
    name = names[0] or {}
    given = " ".join(name.get("given") or [])
    full = f"{given} {name.get('family') or ''}".strip()
    return full or resource.get("id") or "Unknown"


def run_sync_for_all_practitioners(
    db: Session,
    client: HalaxyClient,
    app_settings: Settings | None = None,
    *,
    practitioner_ids: Iterable[str] | None = None,
    include_slots: bool = False,
) -> dict[str, Any]:
    """Run a full sync for every upstream practitioner, one after another.

    A failure for one practitioner is recorded in its entry and never stops
    the remaining practitioners. Errors fetching the practitioner list itself
    propagate to the caller.
    """
    started = time.perf_counter()
    service = HalaxySyncService(db, client, app_settings)

    wanted = set(practitioner_ids or [])
    if wanted:
        practitioners = [client.get_practitioner(practitioner_id) for practitioner_id in sorted(wanted)]
    else:
        practitioners = client.get_all_practitioners()
    logger.info("Found %s Halaxy practitioner(s) to sync", len(practitioners))

    if not practitioners:
        return {
            "message": "No practitioners found in Halaxy",
            "practitioners": 0,
            "duration": _elapsed_ms(started),
        }

    results: list[dict[str, Any]] = []
    for resource in practitioners:
        practitioner_id = resource.get("id")
        name = practitioner_name(resource)
        logger.info("Syncing practitioner %s (%s)", name, practitioner_id)
        try:
            result = service.full_sync(practitioner_id, resource, include_slots=include_slots)
        except (HalaxyError, httpx.HTTPError, SQLAlchemyError) as exc:
            logger.exception("Failed to sync practitioner %s", practitioner_id)
            db.rollback()
            results.append(
                {
                    "practitionerId": practitioner_id,
                    "name": name,
                    "success": False,
                    "error": describe_error(exc),
                }
            )
            continue

        entry: dict[str, Any] = {
            "practitionerId": practitioner_id,
            "name": name,
            "success": result.success,
            "recordsProcessed": result.records_processed,
            "duration": result.duration_ms,
        }
        if result.errors:
            entry["errors"] = [
                {"entityType": error.entity_type, "message": error.message}
                for error in result.errors
            ]
        results.append(entry)
        logger.info(
            "Synced %s: %s records in %sms", name, result.records_processed, result.duration_ms
        )

    successes = sum(1 for entry in results if entry["success"])
    return {
        "message": f"Sync completed: {successes}/{len(practitioners)} successful",
        "totalDuration": _elapsed_ms(started),
        "practitioners": results,
    }


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
