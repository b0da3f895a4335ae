from __future__ import annotations

from dataclasses import asdict
import json
import sys
from typing import Any

from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table
import typer

from bankfeed.adapters.db.facade import DB
from bankfeed.core.config import (
    ConfigError,
    SyncConfig,
    load_bank_config_from_env,
    load_sync_config_from_env,
)
from bankfeed.infra.clients.bank import BankClient, BankClientError
from bankfeed.models.transaction import (
    AccountTransactionRecord,
    CombinedTransaction,
    Fetched,
    ProductType,
    TransactionAmount,
)
from bankfeed.tools.reconcile.combined import CombinedOptions, get_combined_transactions
from bankfeed.tools.sync import EnrichmentError, EnrichmentFetcher, SyncError, SyncTool

# Load environment variables from .env
load_dotenv()

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}"

app = typer.Typer(
    help="bankfeed: incremental bank transaction sync and combined card view.",
    no_args_is_help=True,
)


def _configure_logging(level: str) -> None:
    # stdout is reserved for command output (tables, JSON)
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)


def _load_sync_config(verbose: bool) -> SyncConfig:
    try:
        config = load_sync_config_from_env()
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(2) from None
    _configure_logging("DEBUG" if verbose else config.log_level)
    return config


def _open_db(config: SyncConfig) -> DB:
    db = DB(config.db_url)
    db.create_schema()
    return db


def _build_client() -> BankClient:
    try:
        return BankClient(load_bank_config_from_env())
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(2) from None


def _record_to_dict(txn: CombinedTransaction) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": txn.id,
        "operationDate": txn.operation_date,
        "amount": {"currency": txn.amount.currency, "amount": txn.amount.amount},
        "transactionType": txn.transaction_type,
        "accountingType": txn.accounting_type,
        "state": txn.state,
        "correspondentAccountNumber": txn.correspondent_account_number,
        "correspondentAccountName": txn.correspondent_account_name,
        "details": txn.details,
        "workflowCode": txn.workflow_code,
        "date": txn.date,
        "year": txn.year,
        "month": txn.month,
    }
    if isinstance(txn.extended, Fetched):
        data["extendedInfo"] = asdict(txn.extended.info)
    return data


def _account_record_to_dict(txn: AccountTransactionRecord) -> dict[str, Any]:
    def money(amount: TransactionAmount) -> dict[str, Any]:
        return {"currency": amount.currency, "value": amount.value}

    return {
        "id": txn.id,
        "transactionDate": txn.transaction_date,
        "settledDate": txn.settled_date,
        "transactionAmount": money(txn.transaction_amount),
        "settledAmount": money(txn.settled_amount),
        "domesticAmount": money(txn.domestic_amount),
        "flowDirection": txn.flow_direction,
        "beneficiaryName": txn.beneficiary_name,
        "transactionId": txn.transaction_id,
        "operationId": txn.operation_id,
        "status": txn.status,
        "transactionType": txn.transaction_type,
        "workflowCode": txn.workflow_code,
        "date": txn.date,
        "month": txn.month,
        "year": txn.year,
        "debitAccountNumber": txn.debit_account_number,
        "creditAccountNumber": txn.credit_account_number,
        "details": txn.details,
        "sourceSystem": txn.source_system,
    }


def _print_transactions_table(
    title: str, records: list[CombinedTransaction], extended: bool
) -> None:
    table = Table(title=title)
    table.add_column("Operation date")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Currency")
    table.add_column("Details")
    if extended:
        table.add_column("Beneficiary")
    for txn in records:
        row = [
            txn.operation_date,
            txn.transaction_type,
            f"{txn.amount.amount:.2f}",
            txn.amount.currency,
            txn.details,
        ]
        if extended:
            row.append(
                txn.extended.info.beneficiary_name
                if isinstance(txn.extended, Fetched)
                else ""
            )
        table.add_row(*row)
    Console().print(table)


@app.command("init-db")
def init_db(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Create the store's tables if they do not exist."""
    config = _load_sync_config(verbose)
    _open_db(config)
    typer.echo(f"Schema ready at {config.db_url}")


@app.command("sync")
def sync(
    enrich_pending: bool = typer.Option(
        False,
        "--enrich-pending",
        help="Also retry extended-info lookups for previously unenriched rows",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Fetch products from the bank and sync every feed into the store."""
    config = _load_sync_config(verbose)
    client = _build_client()
    db = _open_db(config)
    tool = SyncTool(
        client,
        db,
        page_size=config.page_size,
        enrichment=EnrichmentFetcher(
            client, db, max_concurrency=config.enrich_concurrency
        ),
        enrich_pending=enrich_pending,
    )

    try:
        summary = tool.sync_products()
    except SyncError as e:
        typer.echo(f"Sync failed: {e}", err=True)
        raise typer.Exit(1) from None

    for result in summary.results:
        status = "ok" if result.ok else f"FAILED at {result.failed_stage.value}"
        typer.echo(
            f"{result.product_id}: +{result.total_inserted} "
            f"(enriched {result.enriched}) {status}"
        )
    typer.echo(
        f"Inserted {summary.total_inserted} transactions across "
        f"{len(summary.results)} products"
    )
    if summary.failed:
        raise typer.Exit(1)


@app.command("enrich")
def enrich(
    product_id: str = typer.Argument(..., help="Card product id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Fetch extended info for linked-account rows that were never enriched."""
    config = _load_sync_config(verbose)
    client = _build_client()
    db = _open_db(config)
    fetcher = EnrichmentFetcher(client, db, max_concurrency=config.enrich_concurrency)

    keys = db.records_needing_enrichment(product_id)
    try:
        result = fetcher.enrich(product_id, keys)
    except (EnrichmentError, BankClientError) as e:
        typer.echo(f"Enrichment failed: {e}", err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Enriched {result.persisted} of {result.requested} transactions")


@app.command("combined")
def combined(
    product_id: str = typer.Argument(..., help="Card product id"),
    size: int = typer.Option(0, min=0, help="Page size; 0 returns everything"),
    page: int = typer.Option(0, min=0, help="Zero-based page index"),
    extended: bool = typer.Option(
        False, "--extended", help="Include extended info where fetched"
    ),
    ascending: bool = typer.Option(False, "--ascending", help="Oldest first"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Show the merged card + linked-account timeline for a card."""
    config = _load_sync_config(verbose)
    db = _open_db(config)
    view = get_combined_transactions(
        db,
        product_id,
        CombinedOptions(
            size=size, page=page, include_extended=extended, ascending=ascending
        ),
    )

    if as_json:
        payload = {
            "totalCount": view.total_count,
            "transactions": [_record_to_dict(txn) for txn in view.records],
        }
        typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    _print_transactions_table(
        f"{product_id} ({view.total_count} total)", view.records, extended
    )


@app.command("get")
def get(
    product_id: str = typer.Argument(..., help="Card or account product id"),
    size: int = typer.Option(0, min=0, help="Page size; 0 returns everything"),
    page: int = typer.Option(0, min=0, help="Zero-based page index"),
    account: bool = typer.Option(
        False, "--account", help="Read a card's linked-account feed instead"
    ),
    extended: bool = typer.Option(
        False, "--extended", "-x", help="Include extended info where fetched"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Read one product's stored transactions, newest first."""
    config = _load_sync_config(verbose)
    db = _open_db(config)
    product = db.get_product(product_id)
    if product is None:
        typer.echo(f"ID {product_id} not found in database", err=True)
        raise typer.Exit(1)

    if product.product_type is ProductType.ACCOUNT:
        history = db.get_account_transactions(product_id)
        if as_json:
            payload = {
                "totalCount": len(history),
                "transactions": [_account_record_to_dict(t) for t in history],
            }
            typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
            return
        table = Table(title=f"{product_id} ({len(history)} total)")
        table.add_column("Date")
        table.add_column("Direction")
        table.add_column("Amount", justify="right")
        table.add_column("Currency")
        table.add_column("Beneficiary")
        table.add_column("Details")
        for txn in history:
            table.add_row(
                txn.date,
                txn.flow_direction,
                f"{txn.transaction_amount.value:.2f}",
                txn.transaction_amount.currency,
                txn.beneficiary_name,
                txn.details,
            )
        Console().print(table)
        return

    if account:
        records = db.get_linked_account_transactions(
            product_id, size=size, page=page, include_extended=extended
        )
        total = db.count_linked_account_transactions(product_id)
    else:
        records = db.get_card_transactions(product_id, size=size, page=page)
        total = db.count_card_transactions(product_id)

    if as_json:
        payload = {
            "totalCount": total,
            "transactions": [_record_to_dict(txn) for txn in records],
        }
        typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    _print_transactions_table(f"{product_id} ({total} total)", records, extended)


@app.command("products")
def products(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """List products stored by the last sync."""
    config = _load_sync_config(verbose)
    db = _open_db(config)
    stored = db.get_products()
    if not stored:
        typer.echo("No products stored. Run `bankfeed sync` first.")
        return
    for product in stored:
        number = product.card_number or product.account_number or ""
        typer.echo(
            f"{product.id}\t{product.product_type.value}\t{number}\t"
            f"{product.currency}\t{product.name}"
        )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
