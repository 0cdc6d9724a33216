from __future__ import annotations


class ContributionValidationError(ValueError):
    """Malformed contribution input; raised before anything is written."""


class ReferenceNotFoundError(LookupError):
    """A wave, rep, market or catalog item referenced by a request does not exist."""


class PartialWriteFailure(RuntimeError):
    """The ledger upsert or log append failed; the whole batch must be rolled back."""
