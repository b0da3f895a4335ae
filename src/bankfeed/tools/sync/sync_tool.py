from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

import loguru
from loguru import logger

from bankfeed.adapters.db.facade import DB
from bankfeed.core.config import DEFAULT_PAGE_SIZE
from bankfeed.infra.clients.protocol import FeedClient
from bankfeed.models.transaction import (
    AccountTransactionRecord,
    Product,
    ProductType,
    TransactionRecord,
    TxnKey,
)
from bankfeed.tools.sync.enrichment import EnrichmentFetcher, EnrichmentResult

T = TypeVar("T")


class SyncStage(str, Enum):
    """Step of a product sync, reported when that step fails."""

    PRODUCTS = "products"
    CARD = "card"
    LINKED_ACCOUNT = "linked_account"
    ACCOUNT = "account"
    ENRICHMENT = "enrichment"


class SyncError(Exception):
    """Sync of a single product failed at ``stage``; the cause is chained."""

    def __init__(self, product_id: str, stage: SyncStage, message: str) -> None:
        super().__init__(f"{stage.value} sync failed for {product_id}: {message}")
        self.product_id = product_id
        self.stage = stage


@dataclass
class ProductSyncResult:
    """Counts for one product; keeps what was committed even when a stage fails."""

    product_id: str
    product_type: ProductType
    card_inserted: int = 0
    linked_inserted: int = 0
    account_inserted: int = 0
    enriched: int = 0
    pages_fetched: int = 0
    failed_stage: SyncStage | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed_stage is None

    @property
    def total_inserted(self) -> int:
        return self.card_inserted + self.linked_inserted + self.account_inserted


@dataclass
class SyncSummary:
    """Results for every product handled by one sync run."""

    results: list[ProductSyncResult] = field(default_factory=list)

    @property
    def failed(self) -> list[ProductSyncResult]:
        return [r for r in self.results if not r.ok]

    @property
    def total_inserted(self) -> int:
        return sum(r.total_inserted for r in self.results)


@dataclass
class PagedSyncOutcome:
    """Result of walking a paginated feed until it is exhausted or caught up."""

    inserted: int
    pages_fetched: int
    new_keys: list[TxnKey] = field(default_factory=list)


class SyncToolLogger:
    """Handles all logging for SyncTool with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def products_stored(self, count: int) -> None:
        self._logger.bind(count=count).info("Stored {} products", count)

    def product_start(self, product: Product) -> None:
        self._logger.bind(
            product_id=product.id, product_type=product.product_type.value
        ).info(
            "Syncing {} {} ({})",
            product.product_type.value.lower(),
            product.name or product.id,
            product.id,
        )

    def page_fetched(
        self, product_id: str, feed: str, page: int, count: int, new_count: int
    ) -> None:
        self._logger.bind(
            product_id=product_id, feed=feed, page=page, count=count, new=new_count
        ).debug(
            "Fetched {} page {}: {} records, {} new", feed, page, count, new_count
        )

    def caught_up(self, product_id: str, feed: str, page: int) -> None:
        self._logger.bind(product_id=product_id, feed=feed, page=page).debug(
            "Every record on {} page {} was already stored, stopping", feed, page
        )

    def inserted(self, product_id: str, feed: str, count: int) -> None:
        if count:
            self._logger.bind(product_id=product_id, feed=feed, inserted=count).info(
                "{}: +{} {} transactions", product_id, count, feed
            )
        else:
            self._logger.bind(product_id=product_id, feed=feed).debug(
                "{}: no new {} transactions", product_id, feed
            )

    def product_failed(self, error: SyncError) -> None:
        self._logger.bind(
            product_id=error.product_id, stage=error.stage.value
        ).warning("Error syncing {}: {}", error.product_id, error.__cause__ or error)

    def summary(self, summary: SyncSummary) -> None:
        self._logger.bind(
            products=len(summary.results),
            failed=len(summary.failed),
            inserted=summary.total_inserted,
        ).info(
            "Sync complete: {} products, {} failed, {} new transactions",
            len(summary.results),
            len(summary.failed),
            summary.total_inserted,
        )


class SyncTool:
    """
    Incremental sync of card, linked-account and account feeds into the store.

    None of the feeds offers a resumption cursor. Each run dedups against keys
    already in the store and stops paging once a page holds nothing new.
    """

    def __init__(
        self,
        client: FeedClient,
        db: DB,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        enrichment: EnrichmentFetcher | None = None,
        enrich_pending: bool = False,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        """
        Initialize the sync tool.

        Args:
            client: Bank feed client
            db: Store for products and transactions
            page_size: Page size for the paginated feeds
            enrichment: Fetcher for extended info (built from client/db if omitted)
            enrich_pending: Also retry previously unenriched linked transactions
            logger_instance: Logger to report progress to
        """
        if page_size <= 0:
            raise ValueError("page_size must be greater than zero")
        self._client = client
        self._db = db
        self._page_size = page_size
        self._enrichment = enrichment or EnrichmentFetcher(
            client, db, logger_instance=logger_instance
        )
        self._enrich_pending = enrich_pending
        self._logger = SyncToolLogger(logger_instance)

    # Whole-run entry points ---------------------------------------------

    def sync_products(self) -> SyncSummary:
        """Refresh the product list from the bank, then sync every product.

        Raises:
            SyncError: If the product list itself cannot be fetched or stored
        """
        products = self._run_stage(
            "*", SyncStage.PRODUCTS, self._client.fetch_products
        )
        self._run_stage(
            "*", SyncStage.PRODUCTS, lambda: self._db.upsert_products(products)
        )
        self._logger.products_stored(len(products))
        return self.sync_all(products)

    def sync_all(self, products: Iterable[Product]) -> SyncSummary:
        """Sync products one at a time; a failing product does not stop the rest."""
        summary = SyncSummary()
        for product in products:
            result = ProductSyncResult(
                product_id=product.id, product_type=product.product_type
            )
            try:
                self._sync_product_into(product, result)
            except SyncError as e:
                result.failed_stage = e.stage
                result.error = str(e.__cause__ or e)
                self._logger.product_failed(e)
            summary.results.append(result)
        self._logger.summary(summary)
        return summary

    def sync_product(self, product: Product) -> ProductSyncResult:
        """Sync a single product.

        Raises:
            SyncError: If any stage fails
        """
        result = ProductSyncResult(
            product_id=product.id, product_type=product.product_type
        )
        self._sync_product_into(product, result)
        return result

    # Per-feed operations ------------------------------------------------

    def sync_card(
        self, product_id: str, linked_account_id: str | None = None
    ) -> ProductSyncResult:
        """Sync the card feed, then the linked-account feed when one is given.

        Raises:
            SyncError: If any stage fails
        """
        result = ProductSyncResult(product_id=product_id, product_type=ProductType.CARD)
        self._sync_card_into(product_id, linked_account_id, result)
        return result

    def sync_card_transactions(self, product_id: str) -> int:
        """Fetch the unpaginated card feed and store records with unseen keys.

        Returns:
            Number of rows inserted
        """
        known = self._db.existing_card_keys(product_id)
        records = self._client.fetch_card_transactions(product_id)

        fresh = _unseen(records, known, key=lambda r: r.key)
        inserted = 0
        if fresh:
            inserted = self._db.insert_card_transactions(product_id, fresh)
        self._logger.inserted(product_id, "card", inserted)
        return inserted

    def sync_linked_account(self, product_id: str, account_id: str) -> PagedSyncOutcome:
        """Page through the linked-account feed until exhausted or caught up.

        Stops after a page that is shorter than the page size, or whose keys
        were all stored before that page was fetched.

        Returns:
            Outcome including keys of the records inserted during this run
        """
        known = self._db.existing_linked_keys(product_id)
        outcome = PagedSyncOutcome(inserted=0, pages_fetched=0)
        page = 0

        while True:
            records = self._client.fetch_linked_account_page(
                account_id, self._page_size, page
            )
            outcome.pages_fetched += 1

            fresh = _unseen(records, known, key=lambda r: r.key)
            self._logger.page_fetched(
                product_id, "linked account", page, len(records), len(fresh)
            )
            if fresh:
                outcome.inserted += self._db.insert_linked_account_transactions(
                    product_id, fresh
                )
                outcome.new_keys.extend(record.key for record in fresh)
            known.update(record.key for record in records)

            if len(records) < self._page_size:
                break
            if not fresh:
                self._logger.caught_up(product_id, "linked account", page)
                break
            page += 1

        self._logger.inserted(product_id, "linked account", outcome.inserted)
        return outcome

    def sync_account(self, product_id: str) -> PagedSyncOutcome:
        """Page through account history until ``has_next`` is false or caught up.

        Returns:
            Outcome with the number of inserted rows and pages fetched
        """
        known = self._db.existing_account_ids(product_id)
        outcome = PagedSyncOutcome(inserted=0, pages_fetched=0)
        page = 0

        while True:
            account_page = self._client.fetch_account_page(
                product_id, self._page_size, page
            )
            outcome.pages_fetched += 1
            records = account_page.records

            fresh = _unseen(records, known, key=lambda r: r.id)
            self._logger.page_fetched(
                product_id, "account", page, len(records), len(fresh)
            )
            if fresh:
                outcome.inserted += self._db.insert_account_transactions(
                    product_id, fresh
                )
            known.update(record.id for record in records)

            if not records or not account_page.has_next:
                break
            if not fresh:
                self._logger.caught_up(product_id, "account", page)
                break
            page += 1

        self._logger.inserted(product_id, "account", outcome.inserted)
        return outcome

    def enrich_pending(self, product_id: str) -> EnrichmentResult:
        """Retry extended-info lookups for linked transactions never enriched.

        Raises:
            EnrichmentError: If any lookup fails; nothing is stored in that case
        """
        keys = self._db.records_needing_enrichment(product_id)
        return self._enrichment.enrich(product_id, keys)

    # Internals ----------------------------------------------------------

    def _sync_product_into(self, product: Product, result: ProductSyncResult) -> None:
        self._logger.product_start(product)
        if product.is_card:
            self._sync_card_into(product.id, product.linked_account_id, result)
        else:
            outcome = self._run_stage(
                product.id, SyncStage.ACCOUNT, lambda: self.sync_account(product.id)
            )
            result.account_inserted = outcome.inserted
            result.pages_fetched += outcome.pages_fetched

    def _sync_card_into(
        self,
        product_id: str,
        linked_account_id: str | None,
        result: ProductSyncResult,
    ) -> None:
        result.card_inserted = self._run_stage(
            product_id, SyncStage.CARD, lambda: self.sync_card_transactions(product_id)
        )
        result.pages_fetched += 1
        if not linked_account_id:
            return

        outcome = self._run_stage(
            product_id,
            SyncStage.LINKED_ACCOUNT,
            lambda: self.sync_linked_account(product_id, linked_account_id),
        )
        result.linked_inserted = outcome.inserted
        result.pages_fetched += outcome.pages_fetched

        if outcome.new_keys:
            enriched = self._run_stage(
                product_id,
                SyncStage.ENRICHMENT,
                lambda: self._enrichment.enrich(product_id, outcome.new_keys),
            )
            result.enriched += enriched.persisted

        if self._enrich_pending:
            enriched = self._run_stage(
                product_id,
                SyncStage.ENRICHMENT,
                lambda: self.enrich_pending(product_id),
            )
            result.enriched += enriched.persisted

    def _run_stage(
        self, product_id: str, stage: SyncStage, fn: Callable[[], T]
    ) -> T:
        try:
            return fn()
        except SyncError:
            raise
        except Exception as e:
            raise SyncError(product_id, stage, str(e)) from e


K = TypeVar("K")
R = TypeVar("R", TransactionRecord, AccountTransactionRecord)


def _unseen(records: Iterable[R], known: set[K], *, key: Callable[[R], K]) -> list[R]:
    """Return records whose key is neither in ``known`` nor repeated earlier."""
    fresh: list[R] = []
    seen: set[K] = set()
    for record in records:
        record_key = key(record)
        if record_key in known or record_key in seen:
            continue
        seen.add(record_key)
        fresh.append(record)
    return fresh
