# repobrief/errors.py


class RepoBriefError(Exception):
    """Base class for errors surfaced to API callers."""


class ProjectNotFoundError(RepoBriefError):
    pass


class UserNotFoundError(RepoBriefError):
    pass


class InvalidRepositoryUrlError(RepoBriefError, ValueError):
    pass


class InsufficientCreditsError(RepoBriefError):
    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits: {required} required, {available} available")
        self.required = required
        self.available = available


class CommitPersistenceError(RepoBriefError):
    pass
