"""
Stats Endpoints

Operator-facing view of review totals, queue counts and derived health.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Query, Request, status

from app.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/stats", tags=["stats"])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("")
async def get_stats(request: Request) -> Dict[str, Any]:
    runtime = request.app.state.runtime
    reviews = await runtime.reviews.get_stats()
    queue = await runtime.get_queue_stats()
    return {
        "reviews": reviews.model_dump(by_alias=True),
        "queue": queue.model_dump(),
        "timestamp": _now_iso(),
    }


@router.get("/health")
async def get_health(request: Request) -> Dict[str, Any]:
    snapshot = await request.app.state.runtime.get_health_snapshot()
    return {
        "status": snapshot.classification.value,
        "service": "code-review-queue",
        **snapshot.model_dump(mode="json"),
    }


@router.get("/reviews/recent")
async def get_recent_reviews(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
) -> List[Dict[str, Any]]:
    reviews = await request.app.state.runtime.reviews.get_recent_reviews(limit)
    return [review.model_dump(mode="json") for review in reviews]


@router.get("/reviews/{owner}/{repo}/{pull_number}")
async def get_pull_request_review(
    request: Request,
    owner: str,
    repo: str,
    pull_number: int,
) -> Dict[str, Any]:
    review = await request.app.state.runtime.reviews.get_review_by_pull_request(
        owner, repo, pull_number
    )
    if review is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No review found for {owner}/{repo}#{pull_number}",
        )
    return review.model_dump(mode="json")
