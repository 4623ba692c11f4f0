"""Exception hierarchy for artifact resolution and extraction.

Callers usually only care about the three top-level categories:

* :class:`SoftNotFound` -- nothing matched the target at all. Whether this is
  a failure depends on the ``fail_on_missing_target`` setting.
* :class:`HardNotFound` -- a release or artifact was resolved but the wanted
  file is not in it. Always fatal.
* :class:`StructuralFailure` -- history or archive structure made progress
  impossible. Always fatal.

Network and authorization failures are left as ``httpx.HTTPError``.
"""

from __future__ import annotations

__all__ = [
    "ArchiveError",
    "FetchError",
    "HardNotFound",
    "SoftNotFound",
    "StructuralFailure",
]


class FetchError(RuntimeError):
    """Base exception for resolution and extraction failures."""


class SoftNotFound(FetchError):
    """Raised when no release, workflow run, or artifact matches the target."""


class HardNotFound(FetchError):
    """Raised when the resolved release or artifact lacks the requested file."""


class StructuralFailure(FetchError):
    """Raised when commit history or remote structure prevents resolution."""


class ArchiveError(StructuralFailure):
    """Raised for corrupt or unsupported archive content."""
