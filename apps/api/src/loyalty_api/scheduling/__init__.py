"""Scheduling utilities for recurring loyalty maintenance."""

from .config import JobDefinition, RetryPolicy, load_job_definitions
from .runner import LoyaltyJobScheduler, resolve_task

__all__ = ["JobDefinition", "LoyaltyJobScheduler", "RetryPolicy", "load_job_definitions", "resolve_task"]
