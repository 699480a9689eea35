"""Exception types shared by the terefine tools."""

from typing import List, Optional


class ConfigurationError(ValueError):
    """Raised for unusable inputs or conflicting options detected at startup."""


class MatrixFormatError(ConfigurationError):
    """Raised when a scoring matrix file cannot be parsed."""


class AlignmentFormatError(ValueError):
    """Raised when alignment text or gapped strings are malformed."""


class RangeNotFoundError(ValueError):
    """Raised when a requested consensus range does not lie within the sequence."""


class SearchEngineError(RuntimeError):
    """Raised when an external search engine exits with a nonzero status.

    The message carries the exact command line and exit code so the failing
    search can be reproduced by hand.
    """

    def __init__(self, command: List[str], returncode: int, stderr: Optional[str] = None):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Search engine failed with exit code {returncode}: {' '.join(self.command)}"
        if stderr:
            message += f"\n{stderr.strip()}"
        super().__init__(message)
