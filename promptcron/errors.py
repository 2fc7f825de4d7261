from __future__ import annotations


class PromptCronError(Exception):
    """Base error for promptcron."""


class ValidationError(PromptCronError):
    """Invalid job field, name or schedule. Raised before any side effect."""


class ScheduleError(ValidationError):
    """Schedule string does not match the grammar."""


class ConfigError(PromptCronError):
    """Settings or notification file validation error."""


class NotFoundError(PromptCronError):
    """Unknown job."""


class AlreadyExistsError(PromptCronError):
    """Job name already taken."""


class RegistrationError(PromptCronError):
    """OS scheduler rejected or could not express a trigger."""


class PreflightError(PromptCronError):
    def __init__(self, status: str, message: str):
        super().__init__(message)
        self.status = status


class RunTerminated(PromptCronError):
    """The Runner was asked to stop (SIGTERM from the scheduler's time budget)."""

    status = "error:terminated"
