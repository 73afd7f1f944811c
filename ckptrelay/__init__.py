"""Relay sealed checkpoints to Bitcoin as chained OP_RETURN transactions."""

__version__ = "0.1.0"

__all__ = [
    "address",
    "estimator",
    "poller",
    "rbf",
    "relayer",
    "store",
    "submitter",
    "wire",
]