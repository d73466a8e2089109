"""Exceptions raised by the scheduled jobs."""


class UpstreamFetchError(Exception):
    """The rows a job iterates over could not be read; the run is aborted."""


class DuplicateCheckError(Exception):
    """The existence check for a log could not be performed."""


class DuplicateLogError(Exception):
    """The storage layer rejected an insert as a duplicate of an existing row."""


class NoSubscriptionsError(Exception):
    """The user has no active push subscription to deliver to."""


__all__ = ["UpstreamFetchError", "DuplicateCheckError", "DuplicateLogError", "NoSubscriptionsError"]
