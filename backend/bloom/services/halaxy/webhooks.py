from __future__ import annotations

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-halaxy-signature", "x-webhook-signature")


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(signature: str | None, body: bytes, secret: str | None) -> bool:
    if not signature or not secret:
        logger.warning("Halaxy webhook is missing a signature or secret")
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected.encode("ascii"))
