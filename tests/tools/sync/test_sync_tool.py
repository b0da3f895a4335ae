from __future__ import annotations

from collections.abc import Iterable

import pytest

from bankfeed.adapters.db.facade import DB
from bankfeed.infra.clients.protocol import AccountPage
from bankfeed.models.transaction import TransactionRecord
from bankfeed.tools.sync import SyncError, SyncStage, SyncTool
from tests.fixtures.bank_feed import (
    MockBankClient,
    create_account,
    create_account_txns,
    create_card,
    create_db,
    create_txn,
    create_txns,
)

# Helper functions


class FailingInsertDB(DB):
    """DB whose Nth linked-account insert raises instead of writing."""

    def __init__(self, url: str, *, fail_on_call: int) -> None:
        super().__init__(url)
        self._fail_on_call = fail_on_call
        self._calls = 0

    def insert_linked_account_transactions(
        self, product_id: str, records: Iterable[TransactionRecord]
    ) -> int:
        call_idx = self._calls
        self._calls += 1
        if call_idx == self._fail_on_call:
            raise RuntimeError(f"disk full on insert {call_idx}")
        return super().insert_linked_account_transactions(product_id, records)


def create_sync_tool(
    client: MockBankClient,
    db: DB,
    *,
    page_size: int = 1000,
    enrich_pending: bool = False,
) -> SyncTool:
    """Create a SyncTool instance with a mocked client."""
    return SyncTool(
        client,  # type: ignore[arg-type]
        db,
        page_size=page_size,
        enrich_pending=enrich_pending,
    )


# Idempotence


def test_second_sync_with_unchanged_feeds_inserts_nothing() -> None:
    # input
    card = create_card("card_1", linked="acct_1")
    account = create_account("acct_9")
    client = MockBankClient(
        products=[card, account],
        card_feeds={"card_1": create_txns(4, prefix="c")},
        linked_feeds={"acct_1": create_txns(3, prefix="l")},
        account_pages={
            "acct_9": [AccountPage(records=create_account_txns(2), has_next=False)]
        },
    )

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db)

    # act
    first = tool.sync_products()
    counts_after_first = (
        db.count_card_transactions("card_1"),
        db.count_linked_account_transactions("card_1"),
        db.count_account_transactions("acct_9"),
    )
    second = tool.sync_products()

    # assert
    assert first.total_inserted == 9
    assert second.total_inserted == 0
    assert not second.failed
    assert counts_after_first == (4, 3, 2)
    assert (
        db.count_card_transactions("card_1"),
        db.count_linked_account_transactions("card_1"),
        db.count_account_transactions("acct_9"),
    ) == counts_after_first
    assert [p.id for p in db.get_products()] == ["card_1", "acct_9"]


def test_card_feed_same_id_new_date_is_inserted() -> None:
    # input
    hold = create_txn("t1", operation_date="2024-05-01T10:00:00+04:00")
    settled = create_txn("t1", operation_date="2024-05-03T09:00:00+04:00")
    client = MockBankClient(card_feeds={"card_1": [hold]})

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db)
    tool.sync_card_transactions("card_1")
    client.card_feeds["card_1"] = [settled, hold]

    # act
    inserted = tool.sync_card_transactions("card_1")

    # assert
    assert inserted == 1
    assert db.existing_card_keys("card_1") == {hold.key, settled.key}


# Linked-account pagination


def test_linked_sync_stops_on_full_page_of_known_keys() -> None:
    # input
    feed = create_txns(2500, prefix="l")
    client = MockBankClient(linked_feeds={"acct_1": feed})

    # helper setup
    db = create_db()
    db.insert_linked_account_transactions("card_1", feed[:1000])
    tool = create_sync_tool(client, db)

    # act
    outcome = tool.sync_linked_account("card_1", "acct_1")

    # assert
    assert outcome.pages_fetched == 1
    assert outcome.inserted == 0
    assert client.linked_calls == [("acct_1", 1000, 0)]


def test_linked_sync_walks_until_short_page() -> None:
    # input
    feed = create_txns(2500, prefix="l")
    client = MockBankClient(linked_feeds={"acct_1": feed})

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db)

    # act
    outcome = tool.sync_linked_account("card_1", "acct_1")

    # assert
    assert outcome.pages_fetched == 3
    assert outcome.inserted == 2500
    assert [call[2] for call in client.linked_calls] == [0, 1, 2]
    assert len(outcome.new_keys) == 2500
    assert db.count_linked_account_transactions("card_1") == 2500


def test_linked_sync_continues_past_partially_known_page() -> None:
    # input
    feed = create_txns(6, prefix="l")
    client = MockBankClient(linked_feeds={"acct_1": feed})

    # helper setup
    db = create_db()
    db.insert_linked_account_transactions("card_1", feed[1:3])
    tool = create_sync_tool(client, db, page_size=3)

    # act
    outcome = tool.sync_linked_account("card_1", "acct_1")

    # assert
    assert outcome.inserted == 4
    assert db.count_linked_account_transactions("card_1") == 6


def test_linked_sync_tolerates_duplicates_across_pages() -> None:
    # input
    a, b, c, d, e, f = create_txns(6, prefix="l")
    # a new record arrived between page requests and shifted c onto page 1
    client = MockBankClient(linked_feeds={"acct_1": [a, b, c, c, d, e, f]})

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db, page_size=3)

    # act
    outcome = tool.sync_linked_account("card_1", "acct_1")

    # assert
    assert outcome.pages_fetched == 3
    assert outcome.inserted == 6
    assert sorted(k.id for k in outcome.new_keys) == sorted(
        r.id for r in (a, b, c, d, e, f)
    )


def test_linked_sync_does_not_stop_on_within_page_duplicates() -> None:
    # input
    a, b, c, d = create_txns(4, prefix="l")
    client = MockBankClient(linked_feeds={"acct_1": [a, a, b, c, d]})

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db, page_size=2)

    # act
    outcome = tool.sync_linked_account("card_1", "acct_1")

    # assert
    assert outcome.inserted == 4
    assert db.count_linked_account_transactions("card_1") == 4


# Account history pagination


def test_account_sync_stops_when_has_next_is_false() -> None:
    # input
    pages = [
        AccountPage(records=create_account_txns(3, prefix="p0"), has_next=False),
        AccountPage(records=create_account_txns(3, prefix="p1"), has_next=False),
    ]
    client = MockBankClient(account_pages={"acct_9": pages})

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db, page_size=3)

    # act
    outcome = tool.sync_account("acct_9")

    # assert
    assert outcome.pages_fetched == 1
    assert outcome.inserted == 3
    assert client.account_calls == [("acct_9", 3, 0)]


def test_account_sync_follows_has_next_and_stops_when_caught_up() -> None:
    # input
    known_page = create_account_txns(2, prefix="p1")
    pages = [
        AccountPage(records=create_account_txns(2, prefix="p0"), has_next=True),
        AccountPage(records=known_page, has_next=True),
        AccountPage(records=create_account_txns(2, prefix="p2"), has_next=False),
    ]
    client = MockBankClient(account_pages={"acct_9": pages})

    # helper setup
    db = create_db()
    db.insert_account_transactions("acct_9", known_page)
    tool = create_sync_tool(client, db, page_size=2)

    # act
    outcome = tool.sync_account("acct_9")

    # assert
    assert outcome.pages_fetched == 2
    assert outcome.inserted == 2
    assert db.count_account_transactions("acct_9") == 4


def test_account_sync_stops_on_empty_page() -> None:
    # input
    client = MockBankClient(
        account_pages={"acct_9": [AccountPage(records=[], has_next=True)]}
    )

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db)

    # act
    outcome = tool.sync_account("acct_9")

    # assert
    assert outcome.pages_fetched == 1
    assert outcome.inserted == 0


# Failure isolation


def test_failing_product_does_not_stop_the_others() -> None:
    # input
    broken = create_card("card_bad", linked=None)
    healthy = create_card("card_ok", linked="acct_1")
    account = create_account("acct_9")
    client = MockBankClient(
        products=[broken, healthy, account],
        card_feeds={"card_ok": create_txns(2, prefix="c")},
        linked_feeds={"acct_1": create_txns(2, prefix="l")},
        account_pages={
            "acct_9": [AccountPage(records=create_account_txns(1), has_next=False)]
        },
        failing_products=["card_bad"],
    )

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db)

    # act
    summary = tool.sync_products()

    # assert
    results = {r.product_id: r for r in summary.results}
    assert [r.product_id for r in summary.failed] == ["card_bad"]
    assert results["card_bad"].failed_stage is SyncStage.CARD
    assert "card feed unavailable" in (results["card_bad"].error or "")
    assert results["card_ok"].ok
    assert results["card_ok"].card_inserted == 2
    assert results["card_ok"].linked_inserted == 2
    assert results["acct_9"].account_inserted == 1


def test_failed_insert_aborts_product_but_keeps_earlier_pages() -> None:
    # input
    card = create_card("card_1", linked="acct_1")
    client = MockBankClient(
        products=[card],
        card_feeds={"card_1": create_txns(1, prefix="c")},
        linked_feeds={"acct_1": create_txns(5, prefix="l")},
    )

    # helper setup
    db = FailingInsertDB("sqlite:///:memory:", fail_on_call=1)
    db.create_schema()
    tool = create_sync_tool(client, db, page_size=2)

    # act
    summary = tool.sync_all([card])

    # assert
    [result] = summary.results
    assert result.failed_stage is SyncStage.LINKED_ACCOUNT
    assert result.card_inserted == 1
    assert db.count_linked_account_transactions("card_1") == 2
    assert client.detail_calls == []


def test_sync_product_raises_sync_error_with_stage() -> None:
    # input
    account = create_account("acct_9")
    client = MockBankClient(failing_products=["acct_9"])

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db)

    # act / assert
    with pytest.raises(SyncError) as exc_info:
        tool.sync_product(account)
    assert exc_info.value.stage is SyncStage.ACCOUNT
    assert exc_info.value.product_id == "acct_9"
    assert isinstance(exc_info.value.__cause__, RuntimeError)


# Enrichment during sync


def test_new_linked_records_are_enriched_after_insert() -> None:
    # input
    card = create_card("card_1", linked="acct_1")
    linked = create_txns(3, prefix="l")
    client = MockBankClient(products=[card], linked_feeds={"acct_1": linked})

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db)

    # act
    summary = tool.sync_all([card])

    # assert
    [result] = summary.results
    assert result.ok
    assert result.enriched == 3
    assert sorted(client.detail_calls) == sorted(r.id for r in linked)
    assert db.records_needing_enrichment("card_1") == []


def test_enrichment_failure_leaves_rows_pending() -> None:
    # input
    card = create_card("card_1", linked="acct_1")
    linked = create_txns(3, prefix="l")
    client = MockBankClient(
        products=[card],
        linked_feeds={"acct_1": linked},
        failing_details=[linked[1].id],
    )

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db)

    # act
    summary = tool.sync_all([card])

    # assert
    [result] = summary.results
    assert result.failed_stage is SyncStage.ENRICHMENT
    assert result.linked_inserted == 3
    assert db.count_linked_account_transactions("card_1") == 3
    assert len(db.records_needing_enrichment("card_1")) == 3


def test_enrich_pending_retries_previously_failed_rows() -> None:
    # input
    card = create_card("card_1", linked="acct_1")
    stale = create_txns(2, prefix="old")
    client = MockBankClient(products=[card], linked_feeds={"acct_1": stale})

    # helper setup
    db = create_db()
    db.insert_linked_account_transactions("card_1", stale)
    tool = create_sync_tool(client, db, enrich_pending=True)

    # act
    summary = tool.sync_all([card])

    # assert
    [result] = summary.results
    assert result.linked_inserted == 0
    assert result.enriched == 2
    assert db.records_needing_enrichment("card_1") == []


def test_card_without_linked_account_skips_linked_feed() -> None:
    # input
    card = create_card("card_1", linked=None)
    client = MockBankClient(card_feeds={"card_1": create_txns(2)})

    # helper setup
    db = create_db()
    tool = create_sync_tool(client, db)

    # act
    result = tool.sync_card("card_1")

    # assert
    assert result.card_inserted == 2
    assert client.linked_calls == []
    assert client.detail_calls == []


def test_page_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        create_sync_tool(MockBankClient(), create_db(), page_size=0)
