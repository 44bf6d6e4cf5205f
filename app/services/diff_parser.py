"""
Diff Parser Module

Parses the unified diff of a whole pull request (``Accept:
application/vnd.github.v3.diff``) into one ParsedDiff per file.

Design Decisions:
- Split on ``diff --git`` headers, take the path from ``+++ b/`` (or
  ``--- a/`` for deleted files)
- Track old and new line numbers so issues can be anchored to lines
  GitHub accepts review comments on
- Binary files and pure renames yield a ParsedDiff without hunks
"""

import re
from typing import Dict, List, Optional, Set

from app.logging_config import get_logger
from app.models import DiffHunk, DiffLine, ParsedDiff

logger = get_logger(__name__)


HUNK_HEADER_PATTERN = re.compile(
    r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@"
)

FILE_HEADER_PATTERN = re.compile(r"^diff --git a/(.+?) b/(.+)$")


class DiffParserError(Exception):
    """Raised when a diff cannot be parsed."""
    pass


class DiffParser:
    """
    Parser for unified diffs.

    Usage:
        parser = DiffParser()
        files = parser.parse(diff_text)
    """

    def parse(self, diff_text: str) -> List[ParsedDiff]:
        """
        Parse a multi-file unified diff.

        Raises:
            DiffParserError: If a file section is malformed
        """
        if not diff_text or not diff_text.strip():
            return []

        sections = self._split_files(diff_text)
        parsed = [self.parse_file_diff(filename, patch) for filename, patch in sections]

        logger.debug(
            "Parsed diff",
            total_files=len(parsed),
            total_additions=sum(d.total_additions for d in parsed),
            total_deletions=sum(d.total_deletions for d in parsed),
        )
        return parsed

    def _split_files(self, diff_text: str) -> List[tuple]:
        sections: List[tuple] = []
        filename: Optional[str] = None
        body: List[str] = []

        def flush() -> None:
            if filename is not None:
                sections.append((filename, "\n".join(body)))

        for raw_line in diff_text.splitlines():
            header = FILE_HEADER_PATTERN.match(raw_line)
            if header:
                flush()
                filename = header.group(2)
                body = []
                continue

            if raw_line.startswith("+++ ") and not body_has_hunk(body):
                target = raw_line[4:].strip()
                if target.startswith("b/"):
                    filename = target[2:]
                elif target != "/dev/null" and filename is None:
                    filename = target
                continue

            if raw_line.startswith("--- ") and not body_has_hunk(body):
                source = raw_line[4:].strip()
                if filename is None and source.startswith("a/"):
                    filename = source[2:]
                continue

            body.append(raw_line)

        flush()
        return sections

    def parse_file_diff(self, filename: str, patch: str) -> ParsedDiff:
        """
        Parse the hunks of a single file.

        Raises:
            DiffParserError: If a hunk header is malformed
        """
        if not patch:
            return ParsedDiff(filename=filename)

        hunks: List[DiffHunk] = []
        lines: List[DiffLine] = []
        added_lines: List[DiffLine] = []
        total_additions = 0
        total_deletions = 0

        current_hunk: Optional[DiffHunk] = None
        old_line_num = 0
        new_line_num = 0

        try:
            for raw_line in patch.split("\n"):
                hunk_match = HUNK_HEADER_PATTERN.match(raw_line)
                if hunk_match:
                    if current_hunk:
                        hunks.append(current_hunk)

                    old_start = int(hunk_match.group(1))
                    new_start = int(hunk_match.group(3))
                    current_hunk = DiffHunk(
                        old_start=old_start,
                        old_count=int(hunk_match.group(2) or 1),
                        new_start=new_start,
                        new_count=int(hunk_match.group(4) or 1),
                        content=raw_line,
                    )
                    old_line_num = old_start
                    new_line_num = new_start
                    continue

                # Preamble (index, mode, rename lines) before the first hunk
                if current_hunk is None:
                    continue

                if raw_line.startswith("+"):
                    diff_line = DiffLine(
                        content=raw_line[1:],
                        line_type="add",
                        new_line_number=new_line_num,
                    )
                    added_lines.append(diff_line)
                    total_additions += 1
                    new_line_num += 1
                elif raw_line.startswith("-"):
                    diff_line = DiffLine(
                        content=raw_line[1:],
                        line_type="delete",
                        old_line_number=old_line_num,
                    )
                    total_deletions += 1
                    old_line_num += 1
                elif raw_line.startswith(" "):
                    diff_line = DiffLine(
                        content=raw_line[1:],
                        line_type="context",
                        old_line_number=old_line_num,
                        new_line_number=new_line_num,
                    )
                    old_line_num += 1
                    new_line_num += 1
                else:
                    # "\ No newline at end of file" and trailing blanks
                    continue

                lines.append(diff_line)
                current_hunk.content += "\n" + raw_line

        except ValueError as e:
            logger.error("Failed to parse diff", filename=filename, error=str(e))
            raise DiffParserError(f"Failed to parse diff for {filename}: {e}") from e

        if current_hunk:
            hunks.append(current_hunk)

        return ParsedDiff(
            filename=filename,
            hunks=hunks,
            lines=lines,
            added_lines=added_lines,
            total_additions=total_additions,
            total_deletions=total_deletions,
        )

    def comment_lines_by_file(self, parsed_diffs: List[ParsedDiff]) -> Dict[str, Set[int]]:
        """New-file line numbers GitHub accepts review comments on, per file."""
        return {diff.filename: diff.valid_comment_lines for diff in parsed_diffs}

    def format_for_llm(self, parsed_diffs: List[ParsedDiff], max_chars: int = 60000) -> str:
        """
        Render parsed diffs as markdown sections, truncated to ``max_chars``.
        """
        output_parts: List[str] = []
        total_chars = 0

        for index, diff in enumerate(parsed_diffs):
            if total_chars >= max_chars:
                output_parts.append(
                    f"\n... (truncated - {len(parsed_diffs) - index} files remaining)"
                )
                break

            section = self._format_file_for_llm(diff)
            if total_chars + len(section) > max_chars:
                section = section[: max_chars - total_chars] + "\n... (file truncated)"

            output_parts.append(section)
            total_chars += len(section)

        return "\n".join(output_parts)

    def _format_file_for_llm(self, diff: ParsedDiff) -> str:
        lines: List[str] = [
            f"## File: {diff.filename}",
            f"Changes: +{diff.total_additions} -{diff.total_deletions}",
            "```diff",
        ]
        lines.extend(hunk.content for hunk in diff.hunks)
        lines.append("```")
        lines.append("")
        return "\n".join(lines)


def body_has_hunk(body: List[str]) -> bool:
    """Whether a file section already reached its first hunk."""
    return any(line.startswith("@@") for line in body)
