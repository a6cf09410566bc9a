"""
MAMS error taxonomy.

Store, retrieval and link operations raise these to their caller.
The reflection engine never lets them escape a pass.
"""


class MamsError(Exception):
    """Base class for memory system errors."""


class NotFound(MamsError, LookupError):
    """A referenced bucket or chunk does not exist."""


class ValidationError(MamsError, ValueError):
    """Malformed input on a write path."""


class DeadlineExceeded(MamsError, TimeoutError):
    """A full-scan operation ran past its time budget."""
