"""
promptcron

Turns schedule strings such as "daily 09:00" into OS scheduler triggers that
run a prompt-driven CLI tool unattended, and records every run's outcome.
"""

from promptcron.errors import (
    AlreadyExistsError,
    NotFoundError,
    PreflightError,
    PromptCronError,
    RegistrationError,
    ScheduleError,
    ValidationError,
)
from promptcron.schedule import compile_schedule
from promptcron.store import JobDefinition, JobStore

__version__ = "0.1.0"
__all__ = [
    "AlreadyExistsError",
    "JobDefinition",
    "JobStore",
    "NotFoundError",
    "PreflightError",
    "PromptCronError",
    "RegistrationError",
    "ScheduleError",
    "ValidationError",
    "compile_schedule",
]
