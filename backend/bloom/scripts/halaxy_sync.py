from __future__ import annotations

import argparse
import json
import logging
import time
from typing import Any, Callable

import httpx
from sqlalchemy.exc import SQLAlchemyError

from bloom.core.settings import Settings, settings, validate_settings
from bloom.db.session import SessionLocal
from bloom.services.halaxy.client import HalaxyClient, get_halaxy_client, reset_halaxy_client
from bloom.services.halaxy.errors import HalaxyError, describe_error
from bloom.services.halaxy.triggers import run_sync_for_all_practitioners

logger = logging.getLogger("bloom.scripts.halaxy_sync")


def build_parser(app_settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync Halaxy practitioners, clients and sessions.")
    parser.add_argument(
        "--practitioner",
        action="append",
        dest="practitioners",
        default=None,
        help="Halaxy practitioner id to sync (repeatable; default: all active practitioners).",
    )
    parser.add_argument(
        "--include-slots",
        action="store_true",
        help="Also sync availability slots for the next 90 days.",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running, one pass every --interval-minutes.",
    )
    parser.add_argument(
        "--interval-minutes",
        type=int,
        default=app_settings.halaxy_sync_interval_minutes,
        help="Minutes between passes in --loop mode (default: HALAXY_SYNC_INTERVAL_MINUTES).",
    )
    parser.add_argument(
        "--max-runs",
        type=int,
        default=None,
        help=argparse.SUPPRESS,
    )
    return parser


def run_once(
    client: HalaxyClient,
    app_settings: Settings,
    *,
    practitioner_ids: list[str] | None = None,
    include_slots: bool = False,
    session_factory: Callable = SessionLocal,
) -> dict[str, Any]:
    session = session_factory()
    try:
        return run_sync_for_all_practitioners(
            session,
            client,
            app_settings,
            practitioner_ids=practitioner_ids,
            include_slots=include_slots,
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def main(
    argv: list[str] | None = None,
    *,
    app_settings: Settings | None = None,
    client: HalaxyClient | None = None,
    session_factory: Callable = SessionLocal,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    app_settings = app_settings or settings
    args = build_parser(app_settings).parse_args(argv)
    if args.interval_minutes < 1:
        print("--interval-minutes must be a positive integer.")
        return 2

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    validate_settings(app_settings)
    if client is None and not app_settings.has_halaxy_credentials():
        print("HALAXY_CLIENT_ID and HALAXY_CLIENT_SECRET must be set.")
        return 2
    client = client or get_halaxy_client(app_settings)

    runs = 0
    exit_code = 0
    try:
        while True:
            try:
                summary = run_once(
                    client,
                    app_settings,
                    practitioner_ids=args.practitioners,
                    include_slots=args.include_slots,
                    session_factory=session_factory,
                )
                print(json.dumps(summary, indent=2, sort_keys=True))
                exit_code = 0
            except (HalaxyError, httpx.HTTPError, SQLAlchemyError) as exc:
                if not args.loop:
                    raise
                logger.error("Halaxy sync pass failed: %s", describe_error(exc))
                exit_code = 1
            runs += 1
            if not args.loop or (args.max_runs is not None and runs >= args.max_runs):
                return exit_code
            logger.info("Next Halaxy sync in %s minute(s)", args.interval_minutes)
            sleep(args.interval_minutes * 60)
    finally:
        reset_halaxy_client()


if __name__ == "__main__":
    raise SystemExit(main())
