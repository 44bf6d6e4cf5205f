"""
GitHub API Client Module

Fetches pull request diffs and publishes review results.

Design Decisions:
- Use httpx for async HTTP requests, one pooled client per process
- Token authentication (``GITHUB_TOKEN``)
- Transport errors are retried with tenacity; HTTP errors are surfaced
  immediately so the job queue's backoff decides when to try again
- Inline comments are only posted on lines present in the diff
"""

from typing import Dict, List, Optional

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import Settings
from app.logging_config import get_logger
from app.models import AnalysisResult, CodeIssue, IssueCategory, ReviewComment, ReviewState, Severity
from app.services.diff_parser import DiffParser, DiffParserError

logger = get_logger(__name__)

DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"
JSON_MEDIA_TYPE = "application/vnd.github+json"


class GitHubAPIError(Exception):
    """Non-success response from the GitHub API."""
    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class FetchError(Exception):
    """The pull request diff could not be fetched."""
    pass


class PublishError(Exception):
    """Review comments or the summary could not be posted."""
    pass


class GitHubClient:
    """
    Async GitHub API client.

    Usage:
        client = GitHubClient(settings)
        diff = await client.get_diff("octo", "repo", 7)
        await client.post_summary("octo", "repo", 7, head_sha, analysis)
        await client.close()
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        diff_parser: Optional[DiffParser] = None,
    ):
        self.settings = settings
        self.diff_parser = diff_parser or DiffParser()
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.github_api_url,
            timeout=30.0,
        )
        self._rate_limiter = AsyncLimiter(
            max_rate=settings.github_rate_limit,
            time_period=3600,
        )
        if not settings.github_token:
            logger.warning("No GitHub token configured, API calls will be unauthenticated")

    def _headers(self, accept: str) -> Dict[str, str]:
        headers = {
            "Accept": accept,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.settings.github_token:
            headers["Authorization"] = f"token {self.settings.github_token}"
        return headers

    def _check_rate_limit(self, response: httpx.Response) -> None:
        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is not None and remaining.isdigit() and int(remaining) < 100:
            logger.warning(
                "GitHub API rate limit running low",
                remaining=int(remaining),
                reset_at=response.headers.get("x-ratelimit-reset"),
            )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        endpoint: str,
        accept: str = JSON_MEDIA_TYPE,
        **kwargs,
    ) -> httpx.Response:
        async with self._rate_limiter:
            response = await self._client.request(
                method,
                endpoint,
                headers=self._headers(accept),
                **kwargs,
            )

        self._check_rate_limit(response)

        if response.status_code >= 400:
            error_body = response.text
            logger.error(
                "GitHub API error",
                status_code=response.status_code,
                endpoint=endpoint,
                error=error_body[:500],
            )
            raise GitHubAPIError(
                f"GitHub API error: {response.status_code}",
                status_code=response.status_code,
                response_body=error_body,
            )
        return response

    # =========================================================================
    # Diff fetcher
    # =========================================================================
    async def get_diff(self, owner: str, repo: str, pull_number: int) -> str:
        """
        Raises:
            FetchError: If the diff could not be retrieved
        """
        endpoint = f"/repos/{owner}/{repo}/pulls/{pull_number}"
        try:
            response = await self._request("GET", endpoint, accept=DIFF_MEDIA_TYPE)
        except (GitHubAPIError, httpx.HTTPError) as e:
            logger.error("Failed to get PR diff", owner=owner, repo=repo, pull_number=pull_number, error=str(e))
            raise FetchError("Failed to fetch pull request diff") from e

        logger.info("Fetched PR diff", owner=owner, repo=repo, pull_number=pull_number, size=len(response.text))
        return response.text

    # =========================================================================
    # Comment publisher
    # =========================================================================
    def build_comments(self, issues: List[CodeIssue], diff_text: str) -> List[ReviewComment]:
        """
        Inline comments for issues anchored to a commentable line.

        Style issues are left to the summary.
        """
        try:
            parsed = self.diff_parser.parse(diff_text)
        except DiffParserError as e:
            logger.warning("Could not parse diff for comment placement", error=str(e))
            return []
        valid_lines = self.diff_parser.comment_lines_by_file(parsed)

        comments: List[ReviewComment] = []
        seen = set()
        for issue in issues:
            if issue.type == IssueCategory.STYLE.value or issue.line is None:
                continue
            path = issue.file
            if path is None:
                # Without a file, use the only file containing that line.
                candidates = [name for name, lines in valid_lines.items() if issue.line in lines]
                if len(candidates) != 1:
                    continue
                path = candidates[0]
            if issue.line not in valid_lines.get(path, set()):
                logger.debug("Skipping comment on line outside the diff", file=path, line=issue.line)
                continue

            signature = (path, issue.line, issue.message)
            if signature in seen:
                continue
            seen.add(signature)
            comments.append(ReviewComment(path=path, line=issue.line, body=self._format_comment(issue)))
        return comments

    async def post_comments(
        self,
        owner: str,
        repo: str,
        pull_number: int,
        commit_sha: str,
        issues: List[CodeIssue],
        diff_text: str,
    ) -> int:
        """
        Post a REQUEST_CHANGES review carrying the inline comments.

        Returns:
            Number of comments posted

        Raises:
            PublishError: If the review could not be created
        """
        comments = self.build_comments(issues, diff_text)
        if not comments:
            logger.info("No inline comments to post", owner=owner, repo=repo, pull_number=pull_number)
            return 0

        payload = {
            "commit_id": commit_sha,
            "event": ReviewState.REQUEST_CHANGES.value,
            "comments": [c.model_dump() for c in comments],
        }
        try:
            await self._request("POST", f"/repos/{owner}/{repo}/pulls/{pull_number}/reviews", json=payload)
        except (GitHubAPIError, httpx.HTTPError) as e:
            logger.error("Failed to post review comments", owner=owner, repo=repo, pull_number=pull_number, error=str(e))
            raise PublishError("Failed to post review comments") from e

        logger.info("Posted review comments", owner=owner, repo=repo, pull_number=pull_number, count=len(comments))
        return len(comments)

    async def post_summary(
        self,
        owner: str,
        repo: str,
        pull_number: int,
        commit_sha: str,
        analysis: AnalysisResult,
    ) -> None:
        """
        Raises:
            PublishError: If the summary review could not be created
        """
        payload = {
            "commit_id": commit_sha,
            "event": ReviewState.COMMENT.value,
            "body": self.format_summary(analysis),
        }
        try:
            await self._request("POST", f"/repos/{owner}/{repo}/pulls/{pull_number}/reviews", json=payload)
        except (GitHubAPIError, httpx.HTTPError) as e:
            logger.error("Failed to post review summary", owner=owner, repo=repo, pull_number=pull_number, error=str(e))
            raise PublishError("Failed to post review summary") from e

        logger.info("Posted review summary", owner=owner, repo=repo, pull_number=pull_number)

    def _format_comment(self, issue: CodeIssue) -> str:
        return (
            f"**{str(issue.type).upper()}** ({issue.severity})\n\n"
            f"{issue.message}\n\n"
            f"**Suggestion:** {issue.suggestion}"
        )

    def format_summary(self, analysis: AnalysisResult) -> str:
        counts = {severity.value: 0 for severity in Severity}
        for issue in analysis.issues:
            counts[str(issue.severity)] += 1

        body = f"""## AI Code Review Summary

{analysis.summary}

| Severity | Count |
|----------|-------|
| Critical | {counts['critical']} |
| High | {counts['high']} |
| Medium | {counts['medium']} |
| Low | {counts['low']} |
"""
        if analysis.positives:
            body += "\n### What looks good\n\n"
            body += "\n".join(f"- {positive}" for positive in analysis.positives)
            body += "\n"
        if not analysis.ai_available:
            body += "\n> AI analysis was unavailable; only pattern-based checks ran.\n"

        body += "\n---\n*This review was generated automatically by the AI Code Review Agent*"
        return body

    async def close(self) -> None:
        await self._client.aclose()
