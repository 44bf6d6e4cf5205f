"""
Data Models Module

This module defines all Pydantic models used throughout the application.
Strong typing ensures data integrity and provides clear contracts between components.

Design Decisions:
- Use Pydantic models for all data transfer objects
- Strict validation to fail fast on invalid data
- Priority weights and attempt budgets live in one policy table
- Clear separation between GitHub models, analysis models, queue models
  and metric models
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


# =============================================================================
# Enums
# =============================================================================

class PRAction(str, Enum):
    """Valid pull request actions we handle."""
    OPENED = "opened"
    SYNCHRONIZE = "synchronize"
    REOPENED = "reopened"


class Severity(str, Enum):
    """Severity levels for code review issues."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueCategory(str, Enum):
    """Categories for code review issues."""
    BUG = "bug"
    SECURITY = "security"
    PERFORMANCE = "performance"
    STYLE = "style"
    BEST_PRACTICE = "best-practice"


class ReviewState(str, Enum):
    """GitHub review states."""
    APPROVE = "APPROVE"
    REQUEST_CHANGES = "REQUEST_CHANGES"
    COMMENT = "COMMENT"


class ReviewStatus(str, Enum):
    """Lifecycle of a persisted review record."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(str, Enum):
    """Named priorities accepted at enqueue."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class JobState(str, Enum):
    """
    Queue-side job states.

    waiting -> active -> completed | failed, with delayed entered while a
    retry backoff is pending. Stalled jobs go back to waiting (or to failed
    once max_stalled_count is spent); ``stalled`` is only ever reported in
    events, never stored.
    """
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class JobOutcome(str, Enum):
    """Terminal result of a successful handler run."""
    COMPLETED = "completed"
    DUPLICATE = "duplicate"


class MetricStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class HealthClassification(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


# =============================================================================
# Priority Policy
# =============================================================================

class PriorityPolicy(NamedTuple):
    """Dequeue weight and attempt budget for one priority."""
    weight: int
    attempts: int


PRIORITY_POLICY: Dict[JobPriority, PriorityPolicy] = {
    JobPriority.LOW: PriorityPolicy(weight=1, attempts=2),
    JobPriority.NORMAL: PriorityPolicy(weight=5, attempts=3),
    JobPriority.HIGH: PriorityPolicy(weight=10, attempts=5),
    JobPriority.CRITICAL: PriorityPolicy(weight=20, attempts=10),
}


def priority_for_weight(weight: int) -> JobPriority:
    """Reverse lookup used when reading stored jobs back."""
    for priority, policy in PRIORITY_POLICY.items():
        if policy.weight == weight:
            return priority
    raise ValueError(f"Unknown priority weight: {weight}")


# =============================================================================
# GitHub Webhook Models
# =============================================================================

class GitHubUser(BaseModel):
    """GitHub user information."""
    login: str
    id: int
    type: str = "User"


class GitHubRepository(BaseModel):
    """GitHub repository information."""
    id: int
    name: str
    full_name: str
    private: bool = False
    owner: GitHubUser


class GitHubCommitRef(BaseModel):
    """PR head or base reference."""
    ref: str
    sha: str


class GitHubPullRequest(BaseModel):
    """Pull request information from webhook."""
    id: int
    number: int
    state: str
    title: str
    body: Optional[str] = None
    user: GitHubUser
    head: GitHubCommitRef
    base: GitHubCommitRef
    draft: bool = False


class GitHubInstallation(BaseModel):
    """GitHub App installation information."""
    id: int


class PullRequestWebhookPayload(BaseModel):
    """Pull request webhook payload, limited to what the queue needs."""
    action: str
    number: int
    pull_request: GitHubPullRequest
    repository: GitHubRepository
    sender: Optional[GitHubUser] = None
    installation: Optional[GitHubInstallation] = None


# =============================================================================
# Diff Parsing Models
# =============================================================================

class DiffHunk(BaseModel):
    """
    Represents a single hunk in a diff.

    A hunk is a contiguous section of changes in a file.
    """
    old_start: int = Field(ge=0, description="Starting line in old file")
    old_count: int = Field(ge=0, description="Number of lines in old file")
    new_start: int = Field(ge=0, description="Starting line in new file")
    new_count: int = Field(ge=0, description="Number of lines in new file")
    content: str = Field(description="Raw hunk content including headers")


class DiffLine(BaseModel):
    """
    Represents a single line in a diff.

    Attributes:
        content: The actual line content (without +/- prefix)
        line_type: Type of change (add, delete, context)
        old_line_number: Line number in old file (None for additions)
        new_line_number: Line number in new file (None for deletions)
    """
    content: str
    line_type: str  # "add", "delete", "context"
    old_line_number: Optional[int] = None
    new_line_number: Optional[int] = None


class ParsedDiff(BaseModel):
    """Fully parsed diff for a single file."""
    filename: str
    hunks: List[DiffHunk] = []
    lines: List[DiffLine] = []
    added_lines: List[DiffLine] = []
    total_additions: int = 0
    total_deletions: int = 0

    @property
    def valid_comment_lines(self) -> set:
        """New-file line numbers GitHub accepts review comments on."""
        return {line.new_line_number for line in self.lines if line.new_line_number is not None}


# =============================================================================
# Analysis Models
# =============================================================================

class CodeIssue(BaseModel):
    """A single issue found by the LLM or by a heuristic check."""

    model_config = ConfigDict(use_enum_values=True)

    type: IssueCategory
    severity: Severity
    message: str = Field(min_length=1)
    suggestion: str = ""
    file: Optional[str] = None
    line: Optional[int] = Field(default=None, ge=1)
    source: Literal["ai", "heuristic"] = "ai"


class AnalysisResult(BaseModel):
    """Analyzer output consumed by the pipeline."""
    summary: str
    issues: List[CodeIssue] = []
    positives: List[str] = []
    ai_available: bool = True


class ReviewComment(BaseModel):
    """An inline review comment to be posted on GitHub."""
    path: str = Field(description="Relative path to the file")
    line: int = Field(ge=1, description="Line number in the new file")
    body: str = Field(min_length=1, description="Comment content in markdown")
    side: str = Field(default="RIGHT", description="Side of the diff (LEFT or RIGHT)")


# =============================================================================
# Queue Models
# =============================================================================

class JobPayload(BaseModel):
    """
    Unit of work for one pull request revision.

    Accepts both snake_case and camelCase keys, so webhook glue and
    internal callers can use either.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    kind: Literal["analyze-pull-request"] = "analyze-pull-request"
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    pull_number: int = Field(ge=1)
    head_sha: str = Field(min_length=1)
    base_sha: str = Field(min_length=1)
    installation_id: Optional[int] = None
    delivery_id: Optional[str] = None

    @property
    def full_repo_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def resource_key(self) -> str:
        """Lock key guarding this pull request."""
        return f"pr:{self.owner}/{self.repo}:{self.pull_number}"

    @property
    def rate_identifier(self) -> str:
        """Owner-scoped rate limit identifier."""
        return f"github:{self.owner}"


class JobOptions(BaseModel):
    """Per-job overrides of the queue defaults."""
    attempts: Optional[int] = Field(default=None, ge=1)
    backoff_delay_ms: Optional[int] = Field(default=None, ge=0)
    job_id: Optional[str] = Field(default=None, min_length=1)
    remove_on_complete: Optional[int] = Field(default=None, ge=0)
    remove_on_fail: Optional[int] = Field(default=None, ge=0)


class Job(BaseModel):
    """A queued job as stored in the shared store."""

    id: str
    name: str = "analyze-pull-request"
    payload: JobPayload
    priority: JobPriority = JobPriority.NORMAL
    attempts_allowed: int = Field(ge=1)
    attempts_made: int = 0
    backoff_delay_ms: int = 2000
    state: JobState = JobState.WAITING
    progress: int = Field(default=0, ge=0, le=100)
    stalled_count: int = 0
    seq: int = 0
    created_at: int = Field(default_factory=now_ms)
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    failed_reason: Optional[str] = None
    error_kind: Optional[str] = None
    return_value: Optional[str] = None
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None
    # Set per claim; cleared when a stalled claim is taken back.
    token: Optional[str] = None

    @property
    def weight(self) -> int:
        return PRIORITY_POLICY[self.priority].weight

    def backoff_for(self, attempts_made: int) -> int:
        """Delay before the next attempt once ``attempts_made`` have failed."""
        return self.backoff_delay_ms * (2 ** max(attempts_made - 1, 0))

    def to_redis(self) -> Dict[str, str]:
        """Flatten to a Redis hash; ``None`` fields are omitted."""
        data = self.model_dump(mode="json", exclude={"payload"}, exclude_none=True)
        flat = {key: str(value) for key, value in data.items()}
        flat["payload"] = self.payload.model_dump_json()
        return flat

    @classmethod
    def from_redis(cls, data: Mapping[str, str]) -> "Job":
        fields: Dict[str, Any] = dict(data)
        fields["payload"] = json.loads(fields["payload"])
        return cls.model_validate(fields)


class QueueStats(BaseModel):
    """Counts per job state."""
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def depth(self) -> int:
        return self.waiting + self.active + self.delayed


# =============================================================================
# Metric Models
# =============================================================================

class JobMetric(BaseModel):
    """Immutable record of one job outcome."""

    model_config = ConfigDict(frozen=True)

    id: str
    duration_ms: float = Field(ge=0)
    status: MetricStatus
    timestamp: int = Field(default_factory=now_ms)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class HealthSnapshot(BaseModel):
    """Derived health view; recomputed on demand, never stored."""
    queue_depth: int
    queue_waiting: int
    avg_processing_time_ms: float
    success_rate_pct: float
    throughput_per_hour: float
    classification: HealthClassification
    window_hours: float
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


# =============================================================================
# Review Persistence Models
# =============================================================================

class ReviewCommentRecord(BaseModel):
    """Persisted review comment."""
    id: str
    review_id: str
    file_path: str
    line_number: Optional[int] = None
    issue_type: str
    severity: str
    message: str
    suggestion: str = ""
    created_at: int = Field(default_factory=now_ms)


class ReviewRecord(BaseModel):
    """Persisted review of a pull request revision."""
    id: str
    owner: str
    repo: str
    pull_number: int
    commit_sha: str
    summary: str = ""
    status: ReviewStatus = ReviewStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    comments: List[ReviewCommentRecord] = []
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class ReviewStats(BaseModel):
    """Review totals exposed by the stats endpoint."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total: int = 0
    completed: int = 0
    failed: int = 0
    success_rate: float = 0.0
