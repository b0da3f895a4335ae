from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import NamedTuple


class ProductType(str, Enum):
    """Kind of banking product a transaction feed belongs to."""

    CARD = "CARD"
    ACCOUNT = "ACCOUNT"


@dataclass(frozen=True, slots=True)
class Amount:
    """Monetary amount as reported by the card and linked-account feeds."""

    currency: str
    amount: float


@dataclass(frozen=True, slots=True)
class ExtendedInfo:
    """Details resolved by the per-transaction detail lookup."""

    beneficiary_name: str = ""
    beneficiary_address: str = ""
    credit_account_number: str = ""
    card_masked_number: str = ""
    operation_id: str = ""
    swift_details: str = ""


@dataclass(frozen=True, slots=True)
class NotFetched:
    """Detail lookup has not completed for this transaction."""


@dataclass(frozen=True, slots=True)
class Fetched:
    """Detail lookup completed; ``info`` is meaningful even when fields are empty."""

    info: ExtendedInfo


ExtendedState = NotFetched | Fetched

NOT_FETCHED = NotFetched()


class TxnKey(NamedTuple):
    """Natural key of card and linked-account transactions.

    The bank reuses ``id`` across lifecycle states (hold, settlement), so the
    operation date is part of the identity.
    """

    id: str
    operation_date: str


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    """Transaction from the card feed or the card's linked-account feed."""

    id: str
    operation_date: str
    amount: Amount
    transaction_type: str = ""
    accounting_type: str = ""
    state: str = ""
    correspondent_account_number: str = ""
    correspondent_account_name: str = ""
    details: str = ""
    workflow_code: str = ""
    date: str = ""
    year: str = ""
    month: str = ""
    extended: ExtendedState = field(default=NOT_FETCHED)

    @property
    def key(self) -> TxnKey:
        return TxnKey(self.id, self.operation_date)

    def without_extended(self) -> TransactionRecord:
        if isinstance(self.extended, NotFetched):
            return self
        return replace(self, extended=NOT_FETCHED)


# Reconciliation output has the same shape as its inputs.
CombinedTransaction = TransactionRecord


@dataclass(frozen=True, slots=True)
class TransactionAmount:
    """Amount representation used by the account-history feed."""

    currency: str
    value: float


@dataclass(frozen=True, slots=True)
class AccountTransactionRecord:
    """Transaction from the account-history feed; ``id`` is unique per product."""

    id: str
    transaction_date: int
    transaction_amount: TransactionAmount
    settled_amount: TransactionAmount
    domestic_amount: TransactionAmount
    flow_direction: str = ""
    beneficiary_name: str = ""
    transaction_id: str = ""
    operation_id: str = ""
    status: str = ""
    transaction_type: str = ""
    workflow_code: str = ""
    settled_date: int = 0
    date: str = ""
    month: str = ""
    year: str = ""
    debit_account_number: str = ""
    credit_account_number: str = ""
    details: str = ""
    source_system: str = ""


@dataclass(frozen=True, slots=True)
class Product:
    """Card or account as listed by the bank."""

    id: str
    product_type: ProductType
    name: str = ""
    card_number: str | None = None
    account_number: str | None = None
    linked_account_id: str | None = None
    currency: str = ""
    balance: float = 0.0
    status: str = ""

    @property
    def is_card(self) -> bool:
        return self.product_type is ProductType.CARD
