"""
Code Analyzer Module

Combines an LLM review (OpenAI JSON mode) with pattern-based heuristic
checks over the added lines of a pull request diff.

Design Decisions:
- ``analyze`` never raises: if the LLM is unavailable or misbehaves the
  result degrades to heuristic findings only
- Transient OpenAI errors are retried with tenacity; requests are rate
  limited with aiolimiter
- Heuristic findings are anchored to the file and new-file line they were
  found on, so they can be posted as inline comments
"""

import json
import re
from typing import Any, List, Optional, Pattern, Tuple

from aiolimiter import AsyncLimiter
from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, RateLimitError
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import Settings
from app.logging_config import get_logger
from app.models import AnalysisResult, CodeIssue, IssueCategory, ParsedDiff, Severity
from app.services.diff_parser import DiffParser, DiffParserError

logger = get_logger(__name__)

NO_CHANGES_SUMMARY = "No code changes detected"
DEGRADED_SUMMARY = "Analysis completed with basic checks only (AI analysis unavailable)"
DEFAULT_SUMMARY = "Code analysis completed"

SECURITY_PATTERNS: List[Pattern] = [
    re.compile(r"eval\s*\("),
    re.compile(r"innerHTML\s*="),
    re.compile(r"document\.write\s*\("),
    re.compile(r"\.exec\s*\("),
    re.compile(r"process\.env\."),
    re.compile(r"localStorage\."),
    re.compile(r"sessionStorage\."),
    re.compile(r"pickle\.loads?\s*\("),
    re.compile(r"os\.system\s*\("),
    re.compile(r"subprocess\.\w+\(.*shell\s*=\s*True"),
]

ERROR_HANDLING_MARKERS = ("try {", "try:", "catch", "except")
ERROR_HANDLING_RANGE = 10


class AnalyzerError(Exception):
    """Raised internally when the LLM response cannot be used."""
    pass


class CodeAnalyzer:
    """
    Produces an AnalysisResult for a pull request diff.

    Usage:
        analyzer = CodeAnalyzer(settings)
        result = await analyzer.analyze(diff_text)
    """

    SYSTEM_PROMPT = (
        "You are an expert code reviewer. Analyze the provided code diff and "
        "provide constructive feedback focusing on potential bugs, security "
        "issues, performance problems, and code quality improvements."
    )

    USER_PROMPT = """Please analyze this code diff and respond with JSON in this format:

{{
  "summary": "Overall assessment of the changes",
  "issues": [
    {{
      "type": "bug|security|performance|style|best-practice",
      "severity": "low|medium|high|critical",
      "message": "Description of the issue",
      "file": "path/to/file",
      "line": 42,
      "suggestion": "Suggested improvement"
    }}
  ],
  "positives": ["Things done well in this change"]
}}

Only reference lines that were added (new-file line numbers).

Code diff:
{diff}

Focus on:
1. Potential bugs or logical errors
2. Security vulnerabilities
3. Performance issues
4. Code style and best practices
5. Missing error handling
6. Type safety issues
"""

    def __init__(
        self,
        settings: Settings,
        client: Optional[AsyncOpenAI] = None,
        diff_parser: Optional[DiffParser] = None,
    ):
        self.settings = settings
        self.diff_parser = diff_parser or DiffParser()
        if client is None and settings.ai_enabled:
            client = AsyncOpenAI(api_key=settings.openai_api_key)
        self.client = client
        if self.client is None:
            logger.warning("No OpenAI API key configured, using heuristic analysis only")

        self._rate_limiter = AsyncLimiter(
            max_rate=settings.openai_rate_limit_rpm,
            time_period=60,
        )

    async def analyze(self, diff_text: str) -> AnalysisResult:
        if not diff_text or not diff_text.strip():
            return AnalysisResult(summary=NO_CHANGES_SUMMARY)

        try:
            parsed = self.diff_parser.parse(diff_text)
        except DiffParserError as e:
            logger.warning("Could not parse diff, analyzing raw text", error=str(e))
            parsed = []

        heuristic_issues = self.heuristic_issues(parsed)

        if self.client is None:
            return self._degraded(heuristic_issues)

        try:
            ai_result = await self._analyze_with_ai(parsed, diff_text)
        except Exception as e:
            logger.error(
                "Code analysis failed, falling back to heuristics",
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._degraded(heuristic_issues)

        return AnalysisResult(
            summary=ai_result.summary or DEFAULT_SUMMARY,
            issues=ai_result.issues + heuristic_issues,
            positives=ai_result.positives,
        )

    def _degraded(self, issues: List[CodeIssue]) -> AnalysisResult:
        return AnalysisResult(summary=DEGRADED_SUMMARY, issues=issues, ai_available=False)

    # =========================================================================
    # LLM analysis
    # =========================================================================
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((APIConnectionError, APITimeoutError, RateLimitError)),
        reraise=True,
    )
    async def _analyze_with_ai(self, parsed: List[ParsedDiff], diff_text: str) -> AnalysisResult:
        if parsed:
            rendered = self.diff_parser.format_for_llm(parsed, max_chars=self.settings.max_diff_chars)
        else:
            rendered = f"```\n{diff_text[: self.settings.max_diff_chars]}\n```"

        logger.info("Sending code review request to AI", num_files=len(parsed))

        async with self._rate_limiter:
            response = await self.client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[
                    {"role": "system", "content": self.SYSTEM_PROMPT},
                    {"role": "user", "content": self.USER_PROMPT.format(diff=rendered)},
                ],
                temperature=self.settings.openai_temperature,
                max_tokens=self.settings.openai_max_tokens,
                response_format={"type": "json_object"},
            )

        content = response.choices[0].message.content
        if not content:
            raise AnalyzerError("Empty response from AI")
        return self._parse_response(content)

    def _parse_response(self, content: str) -> AnalysisResult:
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            # Some models wrap the object in prose; take the outermost braces.
            match = re.search(r"\{[\s\S]*\}", content)
            if not match:
                return AnalysisResult(summary=content.strip())
            try:
                data = json.loads(match.group(0))
            except json.JSONDecodeError as e:
                raise AnalyzerError(f"Invalid JSON response: {e}") from e

        if not isinstance(data, dict):
            raise AnalyzerError("AI response is not a JSON object")

        issues: List[CodeIssue] = []
        for raw in data.get("issues") or []:
            issue = self._to_issue(raw)
            if issue is not None:
                issues.append(issue)

        positives = [str(p) for p in data.get("positives") or [] if p]
        logger.info("AI review completed", num_issues=len(issues))
        return AnalysisResult(
            summary=str(data.get("summary") or ""),
            issues=issues,
            positives=positives,
        )

    def _to_issue(self, raw: Any) -> Optional[CodeIssue]:
        if not isinstance(raw, dict):
            return None

        issue_type = str(raw.get("type", "")).lower()
        if issue_type not in {c.value for c in IssueCategory}:
            issue_type = IssueCategory.BEST_PRACTICE.value
        severity = str(raw.get("severity", "")).lower()
        if severity not in {s.value for s in Severity}:
            severity = Severity.LOW.value

        line: Optional[int]
        try:
            line = int(raw["line"]) if raw.get("line") not in (None, "") else None
        except (TypeError, ValueError):
            line = None
        if line is not None and line < 1:
            line = None

        try:
            return CodeIssue(
                type=issue_type,
                severity=severity,
                message=str(raw.get("message", "")).strip(),
                suggestion=str(raw.get("suggestion") or ""),
                file=raw.get("file") or None,
                line=line,
                source="ai",
            )
        except ValidationError as e:
            logger.warning("Skipping invalid AI issue", error=str(e))
            return None

    # =========================================================================
    # Heuristic analysis
    # =========================================================================
    def heuristic_issues(self, parsed: List[ParsedDiff]) -> List[CodeIssue]:
        issues: List[CodeIssue] = []
        for diff in parsed:
            contents = [line.content for line in diff.lines]
            for index, line in enumerate(diff.lines):
                if line.line_type != "add":
                    continue
                for issue_type, severity, message, suggestion in self._check_line(
                    diff.filename, line.content.strip(), contents, index
                ):
                    issues.append(
                        CodeIssue(
                            type=issue_type,
                            severity=severity,
                            message=message,
                            suggestion=suggestion,
                            file=diff.filename,
                            line=line.new_line_number,
                            source="heuristic",
                        )
                    )
        return issues

    def _check_line(
        self,
        filename: str,
        content: str,
        contents: List[str],
        index: int,
    ) -> List[Tuple[IssueCategory, Severity, str, str]]:
        found: List[Tuple[IssueCategory, Severity, str, str]] = []

        if any(pattern.search(content) for pattern in SECURITY_PATTERNS):
            found.append((
                IssueCategory.SECURITY,
                Severity.HIGH,
                "Potential security risk detected",
                "Review for security implications and add proper validation",
            ))

        if "TODO" in content or "FIXME" in content:
            found.append((
                IssueCategory.BEST_PRACTICE,
                Severity.LOW,
                "TODO/FIXME comment found",
                "Consider creating a proper issue tracker item",
            ))

        if "console.log" in content:
            found.append((
                IssueCategory.BEST_PRACTICE,
                Severity.LOW,
                "Console.log statement found",
                "Use proper logging framework instead of console.log",
            ))

        if filename.endswith(".py") and re.match(r"print\s*\(", content):
            found.append((
                IssueCategory.BEST_PRACTICE,
                Severity.LOW,
                "Print statement found",
                "Use the logging module instead of print",
            ))

        if "await " in content and not self._has_error_handling(contents, index):
            found.append((
                IssueCategory.BUG,
                Severity.MEDIUM,
                "Async operation without error handling",
                "Add try-catch block or proper error handling",
            ))

        return found

    @staticmethod
    def _has_error_handling(contents: List[str], index: int) -> bool:
        start = max(0, index - ERROR_HANDLING_RANGE)
        end = min(len(contents), index + ERROR_HANDLING_RANGE)
        return any(
            marker in contents[i].strip()
            for i in range(start, end)
            for marker in ERROR_HANDLING_MARKERS
        )
