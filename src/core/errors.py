# src/core/errors.py - v1
"""Exception hierarchy for the batch-fitting engine.

Fatal errors abort a run and leave checkpoint state untouched, so the run is
resumable once the underlying cause is fixed. Per-unit numerical failures are
never raised past a worker: they travel as ``Failure`` values.
"""

from __future__ import annotations


class VifitError(Exception):
    """Base class for all engine errors."""


class FatalRunError(VifitError):
    """Condition that aborts the whole run."""


class CatalogError(FatalRunError):
    """Input catalog missing, unreadable, or empty."""


class CheckpointCorruptError(FatalRunError):
    """Checkpoint exists but cannot be read or has an unknown schema version."""


class CheckpointMismatchError(FatalRunError):
    """Checkpoint belongs to another phase or holds keys outside the catalog."""


class OutputWriteError(FatalRunError):
    """Output path is not writable or the final write failed."""


class BatchDispatchError(VifitError):
    """The parallel backend failed to execute a batch as a whole."""


class DuplicateUnitError(VifitError):
    """A work unit produced a second result within the same run."""
