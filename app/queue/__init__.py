"""
Queue Package

Asynchronous job-processing and coordination layer:
- locks: per pull request mutual exclusion with TTL auto-expiry
- rate_limiter: fixed-window counters per identifier
- job_queue: durable priority queue with retry, backoff and stall recovery
- processor: review pipeline orchestration around a dequeued job
- metrics: job outcome metrics and health classification
- autoscaler: worker count recommendations from queue health
- scheduler: periodic tasks (autoscaler, health check, retention sweep)
"""

from app.queue.autoscaler import Autoscaler
from app.queue.job_queue import PriorityJobQueue
from app.queue.locks import LockManager
from app.queue.metrics import MetricsAggregator, classify_health
from app.queue.processor import ReviewJobProcessor
from app.queue.rate_limiter import RateLimiter

__all__ = [
    "Autoscaler",
    "LockManager",
    "MetricsAggregator",
    "PriorityJobQueue",
    "RateLimiter",
    "ReviewJobProcessor",
    "classify_health",
]
