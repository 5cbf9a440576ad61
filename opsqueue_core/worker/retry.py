"""OpsQueue Retry Policy - Backoff Between Job Attempts.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from opsqueue_core.queue.job import BackoffPolicy, BackoffType, Job, JobState

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Retry configuration shared by all jobs of a worker.

    Attributes:
        max_delay_ms: Upper bound on any single delay (None = unbounded)
        jitter: Random jitter factor (0.0 to 1.0) applied to the delay
    """

    max_delay_ms: Optional[int] = None
    jitter: float = 0.0

    def __post_init__(self):
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0.0 and 1.0")


class RetryPolicy:
    """Decides what happens to a job after a failed attempt.

    The attempt budget and base delay come from the job itself; the
    policy only adds the worker-wide cap and jitter.
    """

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()

    def get_delay_ms(self, backoff: BackoffPolicy, attempts_made: int) -> float:
        """Delay before the next attempt.

        Args:
            backoff: The job's backoff policy
            attempts_made: Attempts so far, including the one that just failed

        Returns:
            Delay in milliseconds
        """
        if backoff.type == BackoffType.FIXED:
            delay = float(backoff.delay_ms)
        else:
            delay = float(backoff.delay_ms * 2 ** max(attempts_made - 1, 0))

        if self.config.jitter > 0:
            jitter_range = delay * self.config.jitter
            delay += random.uniform(-jitter_range, jitter_range)

        if self.config.max_delay_ms is not None:
            delay = min(delay, self.config.max_delay_ms)
        return max(delay, 0.0)

    def record_failure(self, job: Job, reason: str, now: datetime) -> JobState:
        """Count a failed attempt and move the job to DELAYED or FAILED.

        attempts_made never exceeds max_attempts, including for jobs an
        operator retried after they were exhausted.
        """
        job.attempts_made = min(job.attempts_made + 1, job.max_attempts)
        job.failed_reason = reason
        job.heartbeat_at = None

        if job.can_retry():
            delay_ms = self.get_delay_ms(job.backoff, job.attempts_made)
            job.state = JobState.DELAYED
            job.delay_until = now + timedelta(milliseconds=delay_ms)
            logger.warning(
                f"Job {job.queue_name}/{job.id} attempt {job.attempts_made}/{job.max_attempts} "
                f"failed, retrying in {delay_ms:.0f}ms: {reason}"
            )
        else:
            job.state = JobState.FAILED
            job.finished_at = now
            logger.error(
                f"Job {job.queue_name}/{job.id} failed after {job.attempts_made} attempts: {reason}"
            )
        return job.state


__all__ = ["RetryPolicy", "RetryConfig"]
