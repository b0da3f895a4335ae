from __future__ import annotations

import asyncio
from collections.abc import Sequence
import concurrent.futures
from dataclasses import dataclass

import loguru
from loguru import logger

from bankfeed.adapters.db.facade import DB
from bankfeed.core.config import DEFAULT_ENRICH_CONCURRENCY
from bankfeed.infra.clients.protocol import FeedClient
from bankfeed.models.transaction import ExtendedInfo, TxnKey


class EnrichmentError(Exception):
    """A detail lookup failed; nothing from the batch was persisted."""

    def __init__(self, product_id: str, transaction_id: str, message: str) -> None:
        super().__init__(
            f"Detail lookup failed for transaction {transaction_id} "
            f"(product {product_id}): {message}"
        )
        self.product_id = product_id
        self.transaction_id = transaction_id


@dataclass
class EnrichmentResult:
    """Outcome of one enrichment batch."""

    requested: int
    persisted: int


class EnrichmentLogger:
    """Handles all logging for EnrichmentFetcher with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def batch_start(self, product_id: str, count: int, max_concurrency: int) -> None:
        self._logger.bind(product_id=product_id, count=count).info(
            "Fetching extended info for {} transactions (max concurrency: {})",
            count,
            max_concurrency,
        )

    def lookup_failed(self, error: EnrichmentError, cancelled: int) -> None:
        self._logger.bind(
            product_id=error.product_id,
            transaction_id=error.transaction_id,
            cancelled=cancelled,
        ).warning(
            "Extended info lookup failed, discarding batch ({} lookups cancelled): {}",
            cancelled,
            error,
        )

    def batch_persisted(self, product_id: str, persisted: int) -> None:
        self._logger.bind(product_id=product_id, persisted=persisted).info(
            "Stored extended info for {} transactions", persisted
        )


class EnrichmentFetcher:
    """Fetch transaction details with bounded concurrency and store them atomically.

    Lookups for a batch either all succeed and are written in one store
    transaction, or the first failure cancels the remaining lookups and nothing
    is written. Unwritten rows stay visible to ``DB.records_needing_enrichment``.
    """

    def __init__(
        self,
        client: FeedClient,
        db: DB,
        *,
        max_concurrency: int = DEFAULT_ENRICH_CONCURRENCY,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be greater than zero")
        self._client = client
        self._db = db
        self._max_concurrency = max_concurrency
        self._logger = EnrichmentLogger(logger_instance)

    def enrich(self, product_id: str, keys: Sequence[TxnKey]) -> EnrichmentResult:
        """Synchronous entry point around :meth:`enrich_async`.

        Raises:
            EnrichmentError: If any detail lookup fails
        """
        try:
            # Check if there's already an event loop running
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.enrich_async(product_id, keys))
        # Loop already running, so run in a new thread to avoid conflict
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(
                asyncio.run, self.enrich_async(product_id, keys)
            )
            return future.result()

    async def enrich_async(
        self, product_id: str, keys: Sequence[TxnKey]
    ) -> EnrichmentResult:
        if not keys:
            return EnrichmentResult(requested=0, persisted=0)

        self._logger.batch_start(product_id, len(keys), self._max_concurrency)
        results = await self.fetch_all(product_id, keys)

        persisted = self._db.update_extended_info_batch(product_id, results)
        self._logger.batch_persisted(product_id, persisted)
        return EnrichmentResult(requested=len(keys), persisted=persisted)

    async def fetch_all(
        self, product_id: str, keys: Sequence[TxnKey]
    ) -> list[tuple[TxnKey, ExtendedInfo]]:
        """Run every lookup, failing fast on the first error.

        Raises:
            EnrichmentError: If any lookup fails; pending lookups are cancelled
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)
        lock = asyncio.Lock()
        failed = asyncio.Event()
        results: list[tuple[TxnKey, ExtendedInfo]] = []

        async def lookup(key: TxnKey) -> None:
            async with semaphore:
                # Queued lookups must not start once one has failed
                if failed.is_set():
                    return
                try:
                    info = await asyncio.to_thread(
                        self._client.fetch_transaction_detail, key.id
                    )
                except Exception as e:
                    failed.set()
                    raise EnrichmentError(product_id, key.id, str(e)) from e
            async with lock:
                results.append((key, info))

        tasks = [asyncio.create_task(lookup(key)) for key in keys]
        done, pending = await asyncio.wait(
            tasks, return_when=asyncio.FIRST_EXCEPTION
        )

        failure = next(
            (
                task.exception()
                for task in tasks
                if task in done and not task.cancelled() and task.exception()
            ),
            None,
        )
        if failure is None:
            return results

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        error = (
            failure
            if isinstance(failure, EnrichmentError)
            else EnrichmentError(product_id, "?", str(failure))
        )
        self._logger.lookup_failed(error, cancelled=len(pending))
        raise error
