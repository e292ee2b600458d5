from __future__ import annotations


class RunnerError(Exception):
    """Base error for cronrunner."""

    status_code = 500
    code = "RUNNER_ERROR"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(RunnerError):
    """Config or job definition validation error."""

    status_code = 400
    code = "VALIDATION_ERROR"


class CronError(ConfigError):
    """Malformed cron expression."""

    code = "INVALID_CRON"


class JobNotFoundError(RunnerError):
    status_code = 404
    code = "JOB_NOT_FOUND"


class JobExistsError(RunnerError):
    status_code = 409
    code = "JOB_EXISTS"


class JobRunningError(RunnerError):
    """Job holds its lock; the caller may re-trigger once it finishes."""

    status_code = 409
    code = "JOB_RUNNING"
    retryable = True


class RunNotFoundError(RunnerError):
    status_code = 404
    code = "RUN_NOT_FOUND"


class AuthError(RunnerError):
    status_code = 401
    code = "UNAUTHORIZED"
