"""
Tests for the Code Analyzer
"""

import json
from types import SimpleNamespace
from typing import List

import pytest

from app.services.analyzer import (
    DEGRADED_SUMMARY,
    NO_CHANGES_SUMMARY,
    CodeAnalyzer,
)
from helpers import SAMPLE_DIFF, make_settings


class FakeCompletions:
    def __init__(self, content: str = None, error: Exception = None):
        self.content = content
        self.error = error
        self.calls: List[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(content: str = None, error: Exception = None) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(content, error)))


@pytest.fixture
def analyzer() -> CodeAnalyzer:
    return CodeAnalyzer(make_settings())


class TestHeuristics:
    async def test_findings_on_sample_diff(self, analyzer: CodeAnalyzer):
        result = await analyzer.analyze(SAMPLE_DIFF)

        found = {(i.file, i.line, i.message) for i in result.issues}
        assert found == {
            ("src/app.js", 2, "Potential security risk detected"),
            ("src/app.js", 4, "Console.log statement found"),
            ("tools/run.py", 2, "TODO/FIXME comment found"),
            ("tools/run.py", 3, "Potential security risk detected"),
        }
        assert all(i.source == "heuristic" for i in result.issues)

    async def test_degraded_without_api_key(self, analyzer: CodeAnalyzer):
        result = await analyzer.analyze(SAMPLE_DIFF)

        assert result.ai_available is False
        assert result.summary == DEGRADED_SUMMARY

    async def test_empty_diff(self, analyzer: CodeAnalyzer):
        result = await analyzer.analyze("   ")

        assert result.summary == NO_CHANGES_SUMMARY
        assert result.issues == []

    async def test_print_only_flagged_in_python(self, analyzer: CodeAnalyzer):
        diff = """diff --git a/a.py b/a.py
--- a/a.py
+++ b/a.py
@@ -1 +1,2 @@
 x = 1
+print(x)
diff --git a/b.txt b/b.txt
--- a/b.txt
+++ b/b.txt
@@ -1 +1,2 @@
 x
+print(x)
"""
        result = await analyzer.analyze(diff)

        assert [(i.file, i.message) for i in result.issues] == [("a.py", "Print statement found")]

    async def test_await_without_error_handling(self, analyzer: CodeAnalyzer):
        unguarded = """diff --git a/a.js b/a.js
--- a/a.js
+++ b/a.js
@@ -1 +1,2 @@
 async function f() {
+  const r = await fetch(url);
"""
        guarded = """diff --git a/a.js b/a.js
--- a/a.js
+++ b/a.js
@@ -1 +1,3 @@
 async function f() {
+  try {
+  const r = await fetch(url);
"""
        first = await analyzer.analyze(unguarded)
        second = await analyzer.analyze(guarded)

        assert [i.message for i in first.issues] == ["Async operation without error handling"]
        assert first.issues[0].severity == "medium"
        assert second.issues == []


class TestAIAnalysis:
    async def test_combines_ai_and_heuristic_issues(self):
        content = json.dumps({
            "summary": "Looks mostly fine",
            "issues": [
                {
                    "type": "bug",
                    "severity": "high",
                    "message": "Request body logged",
                    "file": "src/app.js",
                    "line": 4,
                    "suggestion": "Remove it",
                },
                {"type": "nonsense", "severity": "extreme", "message": "Normalized"},
                {"type": "bug", "severity": "low", "message": ""},
                "not an object",
            ],
            "positives": ["Small change"],
        })
        client = fake_openai(content)
        analyzer = CodeAnalyzer(make_settings(), client=client)

        result = await analyzer.analyze(SAMPLE_DIFF)

        assert result.ai_available is True
        assert result.summary == "Looks mostly fine"
        assert result.positives == ["Small change"]
        ai_issues = [i for i in result.issues if i.source == "ai"]
        assert [(i.type, i.severity) for i in ai_issues] == [
            ("bug", "high"),
            ("best-practice", "low"),
        ]
        assert len(result.issues) == 6

        call = client.chat.completions.calls[0]
        assert call["response_format"] == {"type": "json_object"}
        assert "## File: src/app.js" in call["messages"][1]["content"]

    async def test_json_wrapped_in_prose(self):
        content = 'Here you go: {"summary": "Wrapped", "issues": []} Thanks!'
        analyzer = CodeAnalyzer(make_settings(), client=fake_openai(content))

        result = await analyzer.analyze(SAMPLE_DIFF)

        assert result.summary == "Wrapped"
        assert result.ai_available is True

    async def test_plain_text_becomes_summary(self):
        analyzer = CodeAnalyzer(make_settings(), client=fake_openai("No JSON at all"))

        result = await analyzer.analyze(SAMPLE_DIFF)

        assert result.summary == "No JSON at all"

    async def test_broken_json_falls_back_to_heuristics(self):
        analyzer = CodeAnalyzer(make_settings(), client=fake_openai("{not: valid json}"))

        result = await analyzer.analyze(SAMPLE_DIFF)

        assert result.ai_available is False
        assert result.summary == DEGRADED_SUMMARY
        assert len(result.issues) == 4

    async def test_client_error_falls_back_to_heuristics(self):
        analyzer = CodeAnalyzer(
            make_settings(), client=fake_openai(error=RuntimeError("model unavailable"))
        )

        result = await analyzer.analyze(SAMPLE_DIFF)

        assert result.ai_available is False
        assert len(result.issues) == 4

    async def test_empty_response_falls_back(self):
        analyzer = CodeAnalyzer(make_settings(), client=fake_openai(""))

        result = await analyzer.analyze(SAMPLE_DIFF)

        assert result.ai_available is False
