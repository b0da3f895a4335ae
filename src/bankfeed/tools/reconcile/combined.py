"""Card feed to linked-account feed reconciliation.

The card feed and the card's linked-account feed report overlapping activity
with no shared identifier. Records are paired by exact amount and nearest
operation time. The linked record wins a pair because only linked records can
carry extended info.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
import re

import loguru
from loguru import logger

from bankfeed.adapters.db.facade import DB
from bankfeed.models.transaction import (
    Amount,
    CombinedTransaction,
    TransactionRecord,
    TxnKey,
)

MATCH_TOLERANCE = timedelta(seconds=60)

# Linked-account copies of card purchases carry the settlement time, not the
# purchase time; they are only kept when paired with a card record.
CARD_TRANSACTION_TYPE = "card"

_EARLIEST = datetime.min.replace(tzinfo=UTC)

_RFC3339 = re.compile(
    r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})\Z"
)


class RealTimeTransactionType(str, Enum):
    """Linked-account transaction types whose timestamps are accurate."""

    TRANSFER_TO_CARD = "transfer:to-card"
    TRANSFER_LOCAL = "transfer:local"
    EXCHANGE = "exchange"
    CASH_OUT = "cash-out"
    TRANSFER_BETWEEN_OWN_ACCOUNTS = "transfer:between-own-accounts"


REAL_TIME_TRANSACTION_TYPES: frozenset[str] = frozenset(
    t.value for t in RealTimeTransactionType
)


@dataclass(frozen=True)
class CombinedOptions:
    """Presentation options for the combined view.

    A ``size`` of 0 returns every record without pagination.
    """

    size: int = 0
    page: int = 0
    include_extended: bool = False
    ascending: bool = False

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError(f"size must not be negative, got {self.size}")
        if self.page < 0:
            raise ValueError(f"page must not be negative, got {self.page}")


@dataclass
class CombinedView:
    """One page of the combined timeline and the count before pagination."""

    records: list[CombinedTransaction]
    total_count: int


@dataclass
class MergeResult:
    """Merged timeline (unsorted) plus counters describing how it was built."""

    records: list[CombinedTransaction] = field(default_factory=list)
    matched: int = 0
    unparseable: int = 0
    unmatched_card: int = 0
    kept_linked: int = 0
    dropped_linked: int = 0


class ReconcileLogger:
    """Handles all logging for reconciliation with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def merged(
        self,
        product_id: str,
        card_count: int,
        linked_count: int,
        result: MergeResult,
    ) -> None:
        self._logger.bind(
            product_id=product_id,
            card=card_count,
            linked=linked_count,
            matched=result.matched,
            unparseable=result.unparseable,
            dropped=result.dropped_linked,
        ).debug(
            "Merged {} card and {} linked transactions into {} "
            "({} matched, {} kept unmatched, {} dropped)",
            card_count,
            linked_count,
            len(result.records),
            result.matched,
            result.kept_linked,
            result.dropped_linked,
        )
        if result.unparseable:
            self._logger.bind(
                product_id=product_id, unparseable=result.unparseable
            ).warning(
                "{} card transactions have unparseable operation dates; "
                "kept without matching",
                result.unparseable,
            )


def parse_operation_date(value: str) -> datetime | None:
    """Parse an RFC 3339 timestamp; return None if it is missing a zone or malformed."""
    if not _RFC3339.match(value):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def reconcile(
    card_txns: Sequence[TransactionRecord],
    linked_txns: Sequence[TransactionRecord],
    *,
    tolerance: timedelta = MATCH_TOLERANCE,
    real_time_types: Iterable[str] = REAL_TIME_TRANSACTION_TYPES,
) -> MergeResult:
    """Merge card and linked-account transactions into one timeline.

    Matching is greedy in card order: each card record claims the closest
    unclaimed linked record with the same amount within ``tolerance``.

    Args:
        card_txns: Card feed records, in fetch order
        linked_txns: Linked-account feed records
        tolerance: Maximum time gap for a pair (inclusive)
        real_time_types: Linked types kept when left unmatched

    Returns:
        MergeResult with the unsorted merged records
    """
    allowed = frozenset(real_time_types)
    result = MergeResult()

    # Build hash map: amount -> linked transactions (O(M))
    linked_by_amount: dict[Amount, list[tuple[TransactionRecord, datetime]]] = (
        defaultdict(list)
    )
    for linked in linked_txns:
        linked_time = parse_operation_date(linked.operation_date)
        if linked_time is not None:
            linked_by_amount[linked.amount].append((linked, linked_time))

    claimed: set[TxnKey] = set()

    for card in card_txns:
        card_time = parse_operation_date(card.operation_date)
        if card_time is None:
            result.records.append(card)
            result.unparseable += 1
            continue

        best: TransactionRecord | None = None
        best_gap = tolerance
        for linked, linked_time in linked_by_amount.get(card.amount, []):
            if linked.key in claimed:
                continue
            gap = abs(card_time - linked_time)
            if gap <= tolerance and (best is None or gap < best_gap):
                best = linked
                best_gap = gap

        if best is None:
            result.records.append(card)
            result.unmatched_card += 1
        else:
            claimed.add(best.key)
            result.records.append(best)
            result.matched += 1

    for linked in linked_txns:
        if linked.key in claimed:
            continue
        if linked.transaction_type == CARD_TRANSACTION_TYPE:
            result.dropped_linked += 1
        elif linked.transaction_type in allowed:
            result.records.append(linked)
            result.kept_linked += 1
        else:
            result.dropped_linked += 1

    return result


def merge_transactions(
    card_txns: Sequence[TransactionRecord],
    linked_txns: Sequence[TransactionRecord],
    *,
    tolerance: timedelta = MATCH_TOLERANCE,
    real_time_types: Iterable[str] = REAL_TIME_TRANSACTION_TYPES,
) -> list[CombinedTransaction]:
    """Return the merged, unsorted timeline; see :func:`reconcile`."""
    return reconcile(
        card_txns, linked_txns, tolerance=tolerance, real_time_types=real_time_types
    ).records


def sort_transactions(
    txns: Sequence[CombinedTransaction], *, ascending: bool
) -> list[CombinedTransaction]:
    """Sort by parsed operation date; unparseable dates count as the earliest."""

    def sort_key(txn: CombinedTransaction) -> datetime:
        return parse_operation_date(txn.operation_date) or _EARLIEST

    return sorted(txns, key=sort_key, reverse=not ascending)


def paginate(
    txns: Sequence[CombinedTransaction], *, size: int, page: int
) -> list[CombinedTransaction]:
    """Slice ``[page*size, page*size + size)`` clamped to the list; size 0 keeps all."""
    if size <= 0:
        return list(txns)
    offset = page * size
    return list(txns[offset : offset + size])


def get_combined_transactions(
    db: DB,
    product_id: str,
    options: CombinedOptions,
    *,
    logger_instance: loguru.Logger = logger,
) -> CombinedView:
    """Build the combined card timeline for a product from the store.

    Reads every card and linked-account transaction (no pagination at the
    store), merges, sorts, then paginates the merged result.
    """
    card_txns = db.get_card_transactions(product_id)
    linked_txns = db.get_linked_account_transactions(
        product_id, include_extended=options.include_extended
    )

    merged = reconcile(card_txns, linked_txns)
    ReconcileLogger(logger_instance).merged(
        product_id, len(card_txns), len(linked_txns), merged
    )

    records = merged.records
    if not options.include_extended:
        records = [txn.without_extended() for txn in records]

    ordered = sort_transactions(records, ascending=options.ascending)
    return CombinedView(
        records=paginate(ordered, size=options.size, page=options.page),
        total_count=len(ordered),
    )
