"""
Job Queue Engine

An at-least-once job queue with delayed and recurring scheduling, per-queue
concurrency and rate limits, exponential backoff retries, signed webhook
delivery, and stats/health reporting.
"""

__version__ = "1.0.0"
