from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
import time
from typing import Any

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bankfeed.adapters.db.models import (
    AccountTransactionRow,
    Base,
    CardTransactionRow,
    LinkedAccountTransactionRow,
    ProductRow,
)
from bankfeed.models.transaction import (
    NOT_FETCHED,
    AccountTransactionRecord,
    Amount,
    ExtendedInfo,
    Fetched,
    Product,
    ProductType,
    TransactionAmount,
    TransactionRecord,
    TxnKey,
)

_TransactionTable = type[CardTransactionRow] | type[LinkedAccountTransactionRow]


class DB:
    """Database service layer for synced products and transactions."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///bankfeed.db")
        """
        self._url = url
        if url.startswith("sqlite") and ":memory:" in url:
            # One shared connection so every session sees the same database
            self._engine = create_engine(
                url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @property
    def url(self) -> str:
        return self._url

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._engine)

    # Products ---------------------------------------------------------------

    def upsert_products(self, products: Sequence[Product]) -> None:
        """Insert or update products, preserving the order they were listed in."""
        synced_at = int(time.time())
        with self.session() as session:  # type: Session
            for index, product in enumerate(products):
                row = session.get(ProductRow, product.id)
                if row is None:
                    row = ProductRow(id=product.id, synced_at=synced_at)
                    session.add(row)
                row.product_type = product.product_type.value
                row.name = product.name
                row.card_number = product.card_number or None
                row.account_number = product.account_number or None
                row.account_id = product.linked_account_id or None
                row.currency = product.currency
                row.balance = product.balance
                row.status = product.status
                row.order_index = index
                row.synced_at = synced_at

    def get_products(self) -> list[Product]:
        """Return all products in API order."""
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(ProductRow).order_by(ProductRow.order_index)
            ).all()
            return [_product_from_row(row) for row in rows]

    def get_product(self, product_id: str) -> Product | None:
        """Return a single product or None if it was never synced."""
        with self.session() as session:  # type: Session
            row = session.get(ProductRow, product_id)
            return _product_from_row(row) if row else None

    # Card and linked-account transactions -----------------------------------

    def existing_card_keys(self, product_id: str) -> set[TxnKey]:
        return self._existing_keys(CardTransactionRow, product_id)

    def existing_linked_keys(self, product_id: str) -> set[TxnKey]:
        return self._existing_keys(LinkedAccountTransactionRow, product_id)

    def insert_card_transactions(
        self, product_id: str, records: Iterable[TransactionRecord]
    ) -> int:
        """Insert card transactions in one transaction, skipping known keys.

        Returns:
            Number of rows actually inserted
        """
        return self._insert_transactions(CardTransactionRow, product_id, records)

    def insert_linked_account_transactions(
        self, product_id: str, records: Iterable[TransactionRecord]
    ) -> int:
        """Insert linked-account transactions in one transaction, skipping known keys.

        Returns:
            Number of rows actually inserted
        """
        return self._insert_transactions(
            LinkedAccountTransactionRow, product_id, records
        )

    def get_card_transactions(
        self,
        product_id: str,
        size: int = 0,
        page: int = 0,
        ascending: bool = False,
    ) -> list[TransactionRecord]:
        """Return card transactions ordered by operation date.

        A ``size`` of 0 returns every row.
        """
        with self.session() as session:  # type: Session
            rows = self._select_transactions(
                session, CardTransactionRow, product_id, size, page, ascending
            )
            return [_record_from_row(row, include_extended=False) for row in rows]

    def get_linked_account_transactions(
        self,
        product_id: str,
        size: int = 0,
        page: int = 0,
        include_extended: bool = False,
        ascending: bool = False,
    ) -> list[TransactionRecord]:
        """Return linked-account transactions ordered by operation date.

        Extended info is attached only when ``include_extended`` is set and the
        row has been enriched.
        """
        with self.session() as session:  # type: Session
            rows = self._select_transactions(
                session,
                LinkedAccountTransactionRow,
                product_id,
                size,
                page,
                ascending,
            )
            return [
                _record_from_row(row, include_extended=include_extended)
                for row in rows
            ]

    def count_card_transactions(self, product_id: str) -> int:
        return self._count(CardTransactionRow, product_id)

    def count_linked_account_transactions(self, product_id: str) -> int:
        return self._count(LinkedAccountTransactionRow, product_id)

    def update_extended_info(
        self,
        product_id: str,
        transaction_id: str,
        operation_date: str,
        info: ExtendedInfo,
    ) -> None:
        """Store extended info for one linked-account transaction."""
        self.update_extended_info_batch(
            product_id, [(TxnKey(transaction_id, operation_date), info)]
        )

    def update_extended_info_batch(
        self,
        product_id: str,
        items: Iterable[tuple[TxnKey, ExtendedInfo]],
    ) -> int:
        """Store extended info for many transactions in a single transaction.

        Either every row is marked as fetched or none is.

        Returns:
            Number of rows updated
        """
        updated = 0
        with self.session() as session:  # type: Session
            for key, info in items:
                result = session.execute(
                    update(LinkedAccountTransactionRow)
                    .where(
                        LinkedAccountTransactionRow.product_id == product_id,
                        LinkedAccountTransactionRow.id == key.id,
                        LinkedAccountTransactionRow.operation_date
                        == key.operation_date,
                    )
                    .values(
                        beneficiary_name=info.beneficiary_name,
                        beneficiary_address=info.beneficiary_address,
                        credit_account_number=info.credit_account_number,
                        card_masked_number=info.card_masked_number,
                        ext_operation_id=info.operation_id,
                        swift_details=info.swift_details,
                        extended_fetched=True,
                    )
                )
                updated += result.rowcount or 0
        return updated

    def records_needing_enrichment(self, product_id: str) -> list[TxnKey]:
        """Return keys of linked-account transactions never enriched."""
        with self.session() as session:  # type: Session
            rows = session.execute(
                select(
                    LinkedAccountTransactionRow.id,
                    LinkedAccountTransactionRow.operation_date,
                )
                .where(
                    LinkedAccountTransactionRow.product_id == product_id,
                    ~LinkedAccountTransactionRow.extended_fetched,
                )
                .order_by(LinkedAccountTransactionRow.operation_date)
            ).all()
            return [TxnKey(row.id, row.operation_date) for row in rows]

    # Account transactions ---------------------------------------------------

    def existing_account_ids(self, product_id: str) -> set[str]:
        with self.session() as session:  # type: Session
            ids = session.scalars(
                select(AccountTransactionRow.id).where(
                    AccountTransactionRow.product_id == product_id
                )
            ).all()
            return set(ids)

    def insert_account_transactions(
        self, product_id: str, records: Iterable[AccountTransactionRecord]
    ) -> int:
        """Insert account-history transactions in one transaction, skipping known ids.

        Returns:
            Number of rows actually inserted
        """
        synced_at = int(time.time())
        inserted = 0
        with self.session() as session:  # type: Session
            insert = self._insert_ignoring_conflicts(AccountTransactionRow)
            for record in records:
                result = session.execute(
                    insert.values(
                        id=record.id,
                        product_id=product_id,
                        transaction_id=record.transaction_id,
                        operation_id=record.operation_id,
                        status=record.status,
                        transaction_type=record.transaction_type,
                        workflow_code=record.workflow_code,
                        flow_direction=record.flow_direction,
                        transaction_date=record.transaction_date,
                        settled_date=record.settled_date,
                        date=record.date,
                        month=record.month,
                        year=record.year,
                        debit_account_number=record.debit_account_number,
                        credit_account_number=record.credit_account_number,
                        beneficiary_name=record.beneficiary_name,
                        details=record.details,
                        source_system=record.source_system,
                        transaction_amount_currency=record.transaction_amount.currency,
                        transaction_amount_value=record.transaction_amount.value,
                        settled_amount_currency=record.settled_amount.currency,
                        settled_amount_value=record.settled_amount.value,
                        domestic_amount_currency=record.domestic_amount.currency,
                        domestic_amount_value=record.domestic_amount.value,
                        synced_at=synced_at,
                    )
                )
                inserted += result.rowcount or 0
        return inserted

    def get_account_transactions(
        self, product_id: str, ascending: bool = False
    ) -> list[AccountTransactionRecord]:
        """Return account-history transactions ordered by transaction date."""
        order_col = AccountTransactionRow.transaction_date
        order = order_col.asc() if ascending else order_col.desc()
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(AccountTransactionRow)
                .where(AccountTransactionRow.product_id == product_id)
                .order_by(order, AccountTransactionRow.id)
            ).all()
            return [_account_record_from_row(row) for row in rows]

    def count_account_transactions(self, product_id: str) -> int:
        return self._count(AccountTransactionRow, product_id)

    # Helpers ----------------------------------------------------------------

    def _insert_ignoring_conflicts(self, model: type[Base]) -> Any:
        dialect = self._engine.dialect.name
        if dialect == "sqlite":
            return sqlite.insert(model).on_conflict_do_nothing()
        if dialect == "postgresql":
            return postgresql.insert(model).on_conflict_do_nothing()
        raise NotImplementedError(f"Unsupported database dialect: {dialect}")

    def _insert_transactions(
        self,
        model: _TransactionTable,
        product_id: str,
        records: Iterable[TransactionRecord],
    ) -> int:
        synced_at = int(time.time())
        inserted = 0
        with self.session() as session:  # type: Session
            insert = self._insert_ignoring_conflicts(model)
            for record in records:
                result = session.execute(
                    insert.values(
                        id=record.id,
                        operation_date=record.operation_date,
                        product_id=product_id,
                        transaction_type=record.transaction_type,
                        accounting_type=record.accounting_type,
                        state=record.state,
                        amount_currency=record.amount.currency,
                        amount_value=record.amount.amount,
                        correspondent_account_number=(
                            record.correspondent_account_number
                        ),
                        correspondent_account_name=record.correspondent_account_name,
                        details=record.details,
                        workflow_code=record.workflow_code,
                        date=record.date,
                        year=record.year,
                        month=record.month,
                        synced_at=synced_at,
                    )
                )
                inserted += result.rowcount or 0
        return inserted

    def _existing_keys(self, model: _TransactionTable, product_id: str) -> set[TxnKey]:
        with self.session() as session:  # type: Session
            rows = session.execute(
                select(model.id, model.operation_date).where(
                    model.product_id == product_id
                )
            ).all()
            return {TxnKey(row.id, row.operation_date) for row in rows}

    def _select_transactions(
        self,
        session: Session,
        model: _TransactionTable,
        product_id: str,
        size: int,
        page: int,
        ascending: bool,
    ) -> Sequence[Any]:
        order = model.operation_date.asc() if ascending else model.operation_date.desc()
        stmt = (
            select(model)
            .where(model.product_id == product_id)
            .order_by(order, model.id)
        )
        if size > 0:
            stmt = stmt.limit(size).offset(page * size)
        return session.scalars(stmt).all()

    def _count(self, model: type[Any], product_id: str) -> int:
        with self.session() as session:  # type: Session
            count = session.scalar(
                select(func.count()).select_from(model).where(
                    model.product_id == product_id
                )
            )
            return int(count or 0)


def _record_from_row(
    row: CardTransactionRow | LinkedAccountTransactionRow,
    *,
    include_extended: bool,
) -> TransactionRecord:
    extended = NOT_FETCHED
    if (
        include_extended
        and isinstance(row, LinkedAccountTransactionRow)
        and row.extended_fetched
    ):
        extended = Fetched(
            ExtendedInfo(
                beneficiary_name=row.beneficiary_name or "",
                beneficiary_address=row.beneficiary_address or "",
                credit_account_number=row.credit_account_number or "",
                card_masked_number=row.card_masked_number or "",
                operation_id=row.ext_operation_id or "",
                swift_details=row.swift_details or "",
            )
        )
    return TransactionRecord(
        id=row.id,
        operation_date=row.operation_date,
        amount=Amount(
            currency=row.amount_currency or "", amount=row.amount_value or 0.0
        ),
        transaction_type=row.transaction_type or "",
        accounting_type=row.accounting_type or "",
        state=row.state or "",
        correspondent_account_number=row.correspondent_account_number or "",
        correspondent_account_name=row.correspondent_account_name or "",
        details=row.details or "",
        workflow_code=row.workflow_code or "",
        date=row.date or "",
        year=row.year or "",
        month=row.month or "",
        extended=extended,
    )


def _account_record_from_row(row: AccountTransactionRow) -> AccountTransactionRecord:
    return AccountTransactionRecord(
        id=row.id,
        transaction_date=row.transaction_date or 0,
        transaction_amount=TransactionAmount(
            currency=row.transaction_amount_currency or "",
            value=row.transaction_amount_value or 0.0,
        ),
        settled_amount=TransactionAmount(
            currency=row.settled_amount_currency or "",
            value=row.settled_amount_value or 0.0,
        ),
        domestic_amount=TransactionAmount(
            currency=row.domestic_amount_currency or "",
            value=row.domestic_amount_value or 0.0,
        ),
        flow_direction=row.flow_direction or "",
        beneficiary_name=row.beneficiary_name or "",
        transaction_id=row.transaction_id or "",
        operation_id=row.operation_id or "",
        status=row.status or "",
        transaction_type=row.transaction_type or "",
        workflow_code=row.workflow_code or "",
        settled_date=row.settled_date or 0,
        date=row.date or "",
        month=row.month or "",
        year=row.year or "",
        debit_account_number=row.debit_account_number or "",
        credit_account_number=row.credit_account_number or "",
        details=row.details or "",
        source_system=row.source_system or "",
    )


def _product_from_row(row: ProductRow) -> Product:
    return Product(
        id=row.id,
        product_type=ProductType(row.product_type),
        name=row.name or "",
        card_number=row.card_number,
        account_number=row.account_number,
        linked_account_id=row.account_id,
        currency=row.currency or "",
        balance=row.balance or 0.0,
        status=row.status or "",
    )
