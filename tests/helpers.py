"""
Test helpers shared across test modules.
"""

import asyncio
import time
from typing import Callable

import fakeredis

from app.config import Settings
from app.runtime import ReviewRuntime


def make_settings(**overrides) -> Settings:
    """Settings with fast timers and no external credentials."""
    values = dict(
        _env_file=None,
        redis_url="redis://localhost:6379/15",
        queue_prefix="test",
        queue_concurrency=1,
        queue_poll_interval_ms=10,
        stalled_interval_ms=200,
        max_stalled_count=1,
        backoff_delay_ms=20,
        lock_ttl_ms=5000,
        rate_limit_per_owner=100,
        rate_limit_window_seconds=60,
        github_token="",
        github_webhook_secret="",
        openai_api_key="",
        log_json_format=False,
    )
    values.update(overrides)
    return Settings(**values)


def fake_redis() -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


async def wait_for(predicate: Callable, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll an (async) predicate until it is truthy."""
    deadline = time.monotonic() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


def make_payload(pull_number: int = 42, owner: str = "octo", repo: str = "widgets") -> dict:
    return {
        "owner": owner,
        "repo": repo,
        "pullNumber": pull_number,
        "headSha": f"head{pull_number:04d}",
        "baseSha": "base0000",
    }


def runtime_factory_for(**overrides) -> Callable:
    """Build ReviewRuntime instances over an in-memory Redis."""

    async def factory(settings: Settings) -> ReviewRuntime:
        return ReviewRuntime(settings, fake_redis(), owns_redis=True, **overrides)

    return factory


SAMPLE_DIFF = """diff --git a/src/app.js b/src/app.js
index 1111111..2222222 100644
--- a/src/app.js
+++ b/src/app.js
@@ -1,3 +1,5 @@
 const express = require('express');
+const secret = process.env.SECRET;
 function handler(req, res) {
+  console.log(req.body);
   res.send('ok');
diff --git a/tools/run.py b/tools/run.py
new file mode 100644
index 0000000..3333333
--- /dev/null
+++ b/tools/run.py
@@ -0,0 +1,3 @@
+import os
+# TODO: validate input
+os.system(cmd)
"""
