"""APScheduler host for the loyalty maintenance jobs."""

from __future__ import annotations

import asyncio
import inspect
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from loyalty_api.observability.scheduler import SchedulerObservabilityStore, get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(path: str) -> JobCallable:
    """Import ``package.module.function`` and check it is a coroutine function."""

    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {path}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {path} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {path} must be an async function")
    return func


class LoyaltyJobScheduler:
    """Run the jobs of ``schedules.toml`` on their cron triggers, retrying failures."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path,
        observability: SchedulerObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._observability = observability or get_scheduler_store()
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        zone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=zone)
        for job in config.jobs:
            scheduler.add_job(
                self.run_job,
                trigger=CronTrigger.from_crontab(job.cron, timezone=zone),
                args=[job, resolve_task(job.task)],
                id=job.id,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            logger.info("Registered loyalty job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Loyalty job scheduler started", jobs=len(config.jobs), timezone=config.timezone)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Loyalty job scheduler stopped")

    async def run_job(self, job: JobDefinition, func: JobCallable) -> bool:
        """Run one job to completion or until its retry policy is spent; ``True`` on success."""

        policy = job.retry
        self._observability.record_dispatch(job.id, job.task)
        started_at = time.perf_counter()

        for attempt in range(1, policy.attempts + 1):
            try:
                await func(session_factory=self._session_factory, **job.kwargs)
            except Exception as exc:  # noqa: BLE001
                error = str(exc)
                self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=error)
                if attempt == policy.attempts:
                    self._observability.record_run_failure(
                        job.id,
                        job.task,
                        runtime_seconds=time.perf_counter() - started_at,
                        attempts=attempt,
                        error=error,
                    )
                    logger.exception("Loyalty job failed", job_id=job.id, attempts=attempt)
                    return False

                delay = policy.delay(attempt)
                self._observability.record_retry(job.id, job.task, delay_seconds=delay, attempts=attempt + 1)
                logger.warning("Retrying loyalty job", job_id=job.id, attempt=attempt + 1, delay_seconds=delay, error=error)
                if delay:
                    await asyncio.sleep(delay)
            else:
                runtime = time.perf_counter() - started_at
                self._observability.record_success(job.id, job.task, runtime_seconds=runtime, attempts=attempt)
                logger.info("Loyalty job completed", job_id=job.id, attempts=attempt, runtime_seconds=runtime)
                return True
        return False

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = []
        for job in self._config.jobs if self._config else []:
            scheduled = self._scheduler.get_job(job.id) if self._scheduler else None
            next_run = getattr(scheduled, "next_run_time", None)
            metrics = snapshot.jobs.get(job.id)
            jobs.append(
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "max_attempts": job.retry.attempts,
                    "next_run_at": next_run.isoformat() if next_run else None,
                    "metrics": metrics.as_dict() if metrics else None,
                }
            )
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": jobs,
        }


__all__ = ["LoyaltyJobScheduler", "resolve_task"]
