"""Custom exception types for the subscription monitor."""


class AppError(Exception):
    """Base app exception."""


class RepositoryError(AppError):
    """Subscription storage could not be read or written."""


class InvalidTransitionError(RepositoryError):
    """A status change would move a subscription backwards."""


class SchedulerError(AppError):
    """The notification primitive refused to schedule or cancel."""


class NoSessionError(AppError):
    """No signed-in user; callers treat this as a no-op signal."""


class TaskTimeoutError(AppError):
    """A monitor run exceeded its time budget."""
