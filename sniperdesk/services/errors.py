"""
Error types shared by the analysis, risk and learning services.
"""


class TransientFetchError(Exception):
    """Market data could not be fetched; the poll cycle is skipped."""


class StatePersistenceError(Exception):
    """A state snapshot could not be written or read back."""


class InvalidTradeCandidate(ValueError):
    """A directional candidate is missing its entry, stop or targets."""
