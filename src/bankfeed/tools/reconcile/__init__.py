"""Combined card timeline built from the card and linked-account feeds."""

from bankfeed.tools.reconcile.combined import (
    MATCH_TOLERANCE,
    REAL_TIME_TRANSACTION_TYPES,
    CombinedOptions,
    CombinedView,
    RealTimeTransactionType,
    get_combined_transactions,
    merge_transactions,
    reconcile,
)

__all__ = [
    "MATCH_TOLERANCE",
    "REAL_TIME_TRANSACTION_TYPES",
    "CombinedOptions",
    "CombinedView",
    "RealTimeTransactionType",
    "get_combined_transactions",
    "merge_transactions",
    "reconcile",
]
