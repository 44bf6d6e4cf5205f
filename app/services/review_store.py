"""
Review Repository

Review history kept in the shared Redis store, CRUD only:

    {prefix}:review:{id}                 JSON ReviewRecord (without comments)
    {prefix}:review:{id}:comments        list of JSON ReviewCommentRecord
    {prefix}:reviews                     zset of review ids by created_at
    {prefix}:reviews:pr:{owner}/{repo}:N zset of review ids for one pull request
    {prefix}:reviews:status:{status}     set of review ids per status

A review is keyed by the id of the job that produced it, so a retried job
updates its own record instead of creating a new one.
"""

from typing import Any, Dict, List, Optional
from uuid import uuid4

from redis.asyncio import Redis

from app.logging_config import get_logger
from app.models import (
    CodeIssue,
    ReviewCommentRecord,
    ReviewRecord,
    ReviewStats,
    ReviewStatus,
    now_ms,
)
from app.store import KeySpace

logger = get_logger(__name__)


class ReviewRepository:
    """
    Usage:
        reviews = ReviewRepository(redis, keys)
        await reviews.create_review("42", "octo", "repo", 7, "abc123")
        await reviews.update_status("42", ReviewStatus.COMPLETED)
    """

    def __init__(self, redis: Redis, keys: KeySpace):
        self.redis = redis
        self.keys = keys

    async def create_review(
        self,
        review_id: str,
        owner: str,
        repo: str,
        pull_number: int,
        commit_sha: str,
        summary: str = "Processing...",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ReviewRecord:
        """Create the record, or reset it to pending if it already exists."""
        existing = await self._load(review_id)
        record = ReviewRecord(
            id=review_id,
            owner=owner,
            repo=repo,
            pull_number=pull_number,
            commit_sha=commit_sha,
            summary=summary,
            metadata=metadata or {},
        )
        if existing is not None:
            record.created_at = existing.created_at

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self.keys.review(review_id), record.model_dump_json(exclude={"comments"}))
            pipe.delete(self.keys.review_comments(review_id))
            pipe.zadd(self.keys.review_index(), {review_id: record.created_at})
            pipe.zadd(self.keys.review_by_pr(owner, repo, pull_number), {review_id: record.created_at})
            for status in ReviewStatus:
                pipe.srem(self.keys.review_status(status.value), review_id)
            pipe.sadd(self.keys.review_status(record.status.value), review_id)
            await pipe.execute()

        logger.debug("Review record saved", review_id=review_id, created=existing is None)
        return record

    async def update_status(self, review_id: str, status: ReviewStatus) -> bool:
        """Returns False when no such review exists."""
        record = await self._load(review_id)
        if record is None:
            return False
        previous = record.status
        record.status = ReviewStatus(status)
        record.updated_at = now_ms()

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self.keys.review(review_id), record.model_dump_json(exclude={"comments"}))
            pipe.srem(self.keys.review_status(previous.value), review_id)
            pipe.sadd(self.keys.review_status(record.status.value), review_id)
            await pipe.execute()

        logger.debug("Review status updated", review_id=review_id, status=record.status.value)
        return True

    async def update_summary(self, review_id: str, summary: str) -> bool:
        record = await self._load(review_id)
        if record is None:
            return False
        record.summary = summary
        record.updated_at = now_ms()
        await self.redis.set(self.keys.review(review_id), record.model_dump_json(exclude={"comments"}))
        return True

    async def add_comments(self, review_id: str, issues: List[CodeIssue]) -> List[ReviewCommentRecord]:
        comments = [
            ReviewCommentRecord(
                id=uuid4().hex,
                review_id=review_id,
                file_path=issue.file or "unknown",
                line_number=issue.line,
                issue_type=str(issue.type),
                severity=str(issue.severity),
                message=issue.message,
                suggestion=issue.suggestion,
            )
            for issue in issues
        ]
        if comments:
            await self.redis.rpush(
                self.keys.review_comments(review_id),
                *[comment.model_dump_json() for comment in comments],
            )
        return comments

    async def _load(self, review_id: str) -> Optional[ReviewRecord]:
        raw = await self.redis.get(self.keys.review(review_id))
        if raw is None:
            return None
        return ReviewRecord.model_validate_json(raw)

    async def get_review(self, review_id: str) -> Optional[ReviewRecord]:
        record = await self._load(review_id)
        if record is None:
            return None
        raw_comments = await self.redis.lrange(self.keys.review_comments(review_id), 0, -1)
        record.comments = [ReviewCommentRecord.model_validate_json(c) for c in raw_comments]
        return record

    async def get_review_by_pull_request(
        self,
        owner: str,
        repo: str,
        pull_number: int,
    ) -> Optional[ReviewRecord]:
        """Most recent review of a pull request."""
        ids = await self.redis.zrevrange(self.keys.review_by_pr(owner, repo, pull_number), 0, 0)
        if not ids:
            return None
        return await self.get_review(ids[0])

    async def get_recent_reviews(self, limit: int = 10) -> List[ReviewRecord]:
        ids = await self.redis.zrevrange(self.keys.review_index(), 0, max(limit, 1) - 1)
        reviews = []
        for review_id in ids:
            review = await self.get_review(review_id)
            if review is not None:
                reviews.append(review)
        return reviews

    async def get_stats(self) -> ReviewStats:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self.keys.review_index())
            pipe.scard(self.keys.review_status(ReviewStatus.COMPLETED.value))
            pipe.scard(self.keys.review_status(ReviewStatus.FAILED.value))
            total, completed, failed = await pipe.execute()

        return ReviewStats(
            total=total,
            completed=completed,
            failed=failed,
            success_rate=(completed / total * 100) if total > 0 else 0.0,
        )
