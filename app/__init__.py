"""
Pull Request Review Queue

Receives GitHub pull request webhooks, queues them for asynchronous
analysis and posts structured review feedback back to GitHub.
"""

__version__ = "1.0.0"
__author__ = "Code Review Queue Team"
