"""
Application Runner

Serves the webhook/stats API and, unless disabled, the queue workers and
periodic tasks in the same process.

Use:
    python run.py                  # API + workers
    python run.py --producer-only  # API only; workers run elsewhere
"""

import argparse
import os

import uvicorn


def main():
    """Run the application with uvicorn."""
    parser = argparse.ArgumentParser(description="AI code review queue")
    parser.add_argument(
        "--producer-only",
        action="store_true",
        help="accept webhooks and serve stats without starting workers",
    )
    args = parser.parse_args()
    if args.producer_only:
        os.environ["RUN_WORKERS"] = "false"

    # Imported after the environment is final; settings are cached on first use.
    from app.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
        access_log=settings.log_requests,
    )


if __name__ == "__main__":
    main()
