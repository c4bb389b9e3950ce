"""TOML schedule for the loyalty maintenance jobs.

The file carries a ``timezone``, an optional ``[retry]`` table shared by every
job and one ``[jobs.<id>]`` table per job::

    timezone = "UTC"

    [retry]
    attempts = 2
    backoff_seconds = 30

    [jobs.points_expiry]
    task = "loyalty_api.jobs.loyalty.run_points_expiry"
    cron = "15 2 * * *"
    retry = { attempts = 3, max_backoff_seconds = 300 }
    kwargs = { include_inactivity = true }

Jobs without a ``task`` or ``cron`` string, or with ``enabled = false``, are
left out.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import tomllib
from apscheduler.triggers.cron import CronTrigger


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    attempts: int = 1
    backoff_seconds: float = 5.0
    multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 0.0

    def delay(self, failed_attempt: int) -> float:
        """Seconds to wait after ``failed_attempt`` (1-based) before trying again."""

        delay = self.backoff_seconds * self.multiplier ** (failed_attempt - 1)
        if self.max_backoff_seconds:
            delay = min(delay, self.max_backoff_seconds)
        if self.jitter_seconds:
            delay += random.uniform(0, self.jitter_seconds)
        return delay

    def merged(self, overrides: dict[str, Any]) -> "RetryPolicy":
        known = {item.name for item in fields(self)}
        values = {key: value for key, value in overrides.items() if key in known and value is not None}
        policy = replace(self, **values)
        # At least one attempt; delays never shrink between attempts.
        return RetryPolicy(
            attempts=max(int(policy.attempts), 1),
            backoff_seconds=max(float(policy.backoff_seconds), 0.0),
            multiplier=max(float(policy.multiplier), 1.0),
            max_backoff_seconds=max(float(policy.max_backoff_seconds), 0.0),
            jitter_seconds=max(float(policy.jitter_seconds), 0.0),
        )


@dataclass(slots=True)
class JobDefinition:
    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    shared = RetryPolicy().merged(data.get("retry") or {})

    jobs: list[JobDefinition] = []
    for job_id, payload in (data.get("jobs") or {}).items():
        if not isinstance(payload, dict) or payload.get("enabled") is False:
            continue
        task, cron = payload.get("task"), payload.get("cron")
        if not isinstance(task, str) or not isinstance(cron, str):
            continue
        try:
            CronTrigger.from_crontab(cron, timezone="UTC")
        except ValueError as exc:
            raise ValueError(f"Job {job_id} has an invalid cron expression {cron!r}") from exc

        kwargs = payload.get("kwargs")
        retry = payload.get("retry")
        jobs.append(
            JobDefinition(
                id=job_id,
                task=task,
                cron=cron,
                kwargs=dict(kwargs) if isinstance(kwargs, dict) else {},
                retry=shared.merged(retry) if isinstance(retry, dict) else shared,
            )
        )

    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "RetryPolicy", "ScheduleConfig", "load_job_definitions"]
