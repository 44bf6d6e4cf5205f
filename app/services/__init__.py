"""
Services Package

External collaborators of the review pipeline:
- github_client: diff fetching and review publishing
- diff_parser: unified diff parsing
- analyzer: LLM plus heuristic code analysis
- review_store: review history persistence
"""

from app.services.analyzer import CodeAnalyzer
from app.services.diff_parser import DiffParser, DiffParserError
from app.services.github_client import FetchError, GitHubAPIError, GitHubClient, PublishError
from app.services.review_store import ReviewRepository

__all__ = [
    "CodeAnalyzer",
    "DiffParser",
    "DiffParserError",
    "FetchError",
    "GitHubAPIError",
    "GitHubClient",
    "PublishError",
    "ReviewRepository",
]
