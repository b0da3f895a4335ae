"""Contract the sync engine expects from a bank feed client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from bankfeed.models.transaction import (
    AccountTransactionRecord,
    ExtendedInfo,
    Product,
    TransactionRecord,
)


@dataclass(frozen=True, slots=True)
class AccountPage:
    """One page of account history plus the feed's continuation flag."""

    records: list[AccountTransactionRecord]
    has_next: bool


class FeedClient(Protocol):
    def fetch_products(self) -> list[Product]: ...

    def fetch_card_transactions(self, product_id: str) -> list[TransactionRecord]: ...

    def fetch_linked_account_page(
        self, account_id: str, page_size: int, page_index: int
    ) -> list[TransactionRecord]: ...

    def fetch_account_page(
        self, account_id: str, page_size: int, page_index: int
    ) -> AccountPage: ...

    def fetch_transaction_detail(self, transaction_id: str) -> ExtendedInfo: ...
