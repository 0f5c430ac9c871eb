# scantron_grader/errors.py
"""Exception types raised across the grading pipeline."""


class ScantronError(Exception):
    """Base class for every error this package raises on purpose."""


class LookupStoreError(ScantronError):
    """The short-key table could not be read or written."""


class SourceError(ScantronError):
    """The page-image source could not be opened or decoded."""


class GradingError(ScantronError):
    """A grading run could not start: missing assignment, assessment, roster or pages."""


class AssignmentError(ScantronError, ValueError):
    """A manual page assignment or override request is invalid."""
