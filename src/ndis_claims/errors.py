"""
Exception hierarchy shared across the pipeline.

Extraction and matching never raise for bad input data; these errors are
for the state-changing operations (review, claiming, payments) and for
configuration problems.
"""


class NdisClaimsError(Exception):
    """Base class for all pipeline errors."""


class ConcurrentModificationError(NdisClaimsError):
    """A conditional update found the row already changed by another writer."""


class RecordNotFoundError(NdisClaimsError):
    """A row written in this transaction could not be read back."""
