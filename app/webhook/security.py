"""
Webhook Security Module

Verifies GitHub webhook signatures before a payload is trusted.

Design Decisions:
- HMAC-SHA256 (``X-Hub-Signature-256``) preferred, SHA-1 accepted
- Constant-time comparison
- With no secret configured, verification is skipped and a warning logged
  (local development and test setups)
"""

import hashlib
import hmac
from typing import Optional

from fastapi import HTTPException, Request, status

from app.logging_config import get_logger

logger = get_logger(__name__)

HANDLED_EVENTS = {"pull_request"}
HANDLED_ACTIONS = {"opened", "synchronize", "reopened"}


def compute_signature(secret: str, raw_body: bytes, algorithm: str = "sha256") -> str:
    """Signature header value GitHub would send for ``raw_body``."""
    hash_func = hashlib.sha256 if algorithm == "sha256" else hashlib.sha1
    digest = hmac.new(secret.encode(), raw_body, hash_func).hexdigest()
    return f"{algorithm}={digest}"


def verify_webhook_signature(request: Request, raw_body: bytes, secret: str) -> bool:
    """
    Verify the signature headers against ``raw_body``.

    Returns:
        True if verified, False if skipped because no secret is configured

    Raises:
        HTTPException: 401 if the signature is missing or invalid
    """
    remote_addr = request.client.host if request.client else "unknown"

    if not secret:
        logger.warning("No webhook secret configured, skipping signature verification")
        return False

    signature_header = request.headers.get("X-Hub-Signature-256")
    algorithm = "sha256"
    if not signature_header:
        signature_header = request.headers.get("X-Hub-Signature")
        algorithm = "sha1"

    if not signature_header:
        logger.warning("Missing webhook signature header", remote_addr=remote_addr)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing webhook signature",
        )

    prefix, _, signature = signature_header.partition("=")
    if prefix != algorithm or not signature:
        logger.warning("Invalid signature format", signature_header=signature_header[:50])
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature format",
        )

    expected = compute_signature(secret, raw_body, algorithm)
    if not hmac.compare_digest(signature_header, expected):
        logger.warning("Webhook signature mismatch", remote_addr=remote_addr, algorithm=algorithm)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    logger.debug("Webhook signature verified", algorithm=algorithm)
    return True


def validate_webhook_event(event_type: Optional[str], action: Optional[str]) -> bool:
    """
    Whether this event should be queued.

    Raises:
        HTTPException: 400 if the event type header is missing
    """
    if not event_type:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-GitHub-Event header",
        )
    if event_type not in HANDLED_EVENTS:
        logger.debug("Ignoring non-PR event", event_type=event_type)
        return False
    if action not in HANDLED_ACTIONS:
        logger.debug("Ignoring PR action", action=action)
        return False
    return True


def extract_delivery_id(request: Request) -> Optional[str]:
    return request.headers.get("X-GitHub-Delivery")
