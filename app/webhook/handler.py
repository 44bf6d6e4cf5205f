"""
Webhook Handler Module

FastAPI endpoints receiving GitHub pull request webhooks.

Design Decisions:
- Verify, validate and enqueue, then return immediately (GitHub times out
  webhooks after 10 seconds); the review itself runs on queue workers
- New and reopened pull requests are queued at high priority, pushes to an
  open pull request at normal priority
- The delivery id becomes the job id, so a redelivered webhook is not queued
  twice
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import ValidationError

from app.logging_config import get_logger
from app.models import JobOptions, JobPriority, PRAction, PullRequestWebhookPayload
from app.webhook.security import (
    extract_delivery_id,
    validate_webhook_event,
    verify_webhook_signature,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])

ACTION_PRIORITY = {
    PRAction.OPENED: JobPriority.HIGH,
    PRAction.REOPENED: JobPriority.HIGH,
    PRAction.SYNCHRONIZE: JobPriority.NORMAL,
}


@router.post("/github", status_code=status.HTTP_200_OK)
async def github_webhook(
    request: Request,
    priority: Optional[JobPriority] = Query(default=None),
) -> Dict[str, Any]:
    """
    Verify a GitHub webhook and queue a review job for it.

    Returns:
        JSON response with status, job id and delivery id
    """
    runtime = request.app.state.runtime
    delivery_id = extract_delivery_id(request)

    logger.info(
        "Received GitHub webhook",
        delivery_id=delivery_id,
        remote_addr=request.client.host if request.client else "unknown",
    )

    raw_body = await request.body()
    verify_webhook_signature(request, raw_body, runtime.settings.github_webhook_secret)

    try:
        payload_dict = await request.json() if raw_body else {}
    except ValueError as e:
        logger.error("Failed to parse webhook payload", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )
    if not isinstance(payload_dict, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )

    event_type = request.headers.get("X-GitHub-Event")
    action = payload_dict.get("action")
    if not validate_webhook_event(event_type, action):
        return {
            "status": "ignored",
            "reason": f"Event type '{event_type}' with action '{action}' not processed",
            "delivery_id": delivery_id,
        }

    try:
        payload = PullRequestWebhookPayload(**payload_dict)
    except ValidationError as e:
        logger.error("Invalid webhook payload", error=str(e), delivery_id=delivery_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid payload: {e}",
        )

    if payload.pull_request.draft:
        logger.info(
            "Skipping draft PR",
            pull_number=payload.number,
            repo=payload.repository.full_name,
        )
        return {"status": "ignored", "reason": "Draft PR", "delivery_id": delivery_id}

    job_payload = {
        "owner": payload.repository.owner.login,
        "repo": payload.repository.name,
        "pullNumber": payload.number,
        "headSha": payload.pull_request.head.sha,
        "baseSha": payload.pull_request.base.sha,
        "installationId": payload.installation.id if payload.installation else None,
        "deliveryId": delivery_id,
    }
    job_priority = priority or ACTION_PRIORITY[PRAction(payload.action)]
    options = JobOptions(job_id=f"delivery-{delivery_id}") if delivery_id else None

    job_id = await runtime.enqueue_review(job_payload, job_priority, options)

    logger.info(
        "Queued PR review",
        job_id=job_id,
        repo=payload.repository.full_name,
        pull_number=payload.number,
        action=action,
        priority=job_priority.value,
        delivery_id=delivery_id,
    )

    return {
        "status": "queued",
        "message": "PR review has been queued for processing",
        "job_id": job_id,
        "priority": job_priority.value,
        "delivery_id": delivery_id,
        "pr": {
            "owner": job_payload["owner"],
            "repo": job_payload["repo"],
            "number": payload.number,
        },
    }


@router.get("/health")
async def webhook_health() -> Dict[str, str]:
    return {"status": "healthy", "service": "webhook"}
