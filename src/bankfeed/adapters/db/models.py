from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Float,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class ProductRow(Base):
    """Card or account listed by the bank, in API order."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    product_type: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    card_number: Mapped[str | None] = mapped_column(String, nullable=True)
    account_number: Mapped[str | None] = mapped_column(String, nullable=True)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    currency: Mapped[str | None] = mapped_column(String, nullable=True)
    balance: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    order_index: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    synced_at: Mapped[int] = mapped_column(Integer, nullable=False)


class CardTransactionRow(Base):
    """Card feed transaction.

    Keyed by ``(id, operation_date)``: the bank reuses ids between a hold and
    its settlement.
    """

    __tablename__ = "card_transactions"
    __table_args__ = (
        Index("idx_card_txn_product_date", "product_id", "operation_date"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    operation_date: Mapped[str] = mapped_column(String, primary_key=True)
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    transaction_type: Mapped[str | None] = mapped_column(String, nullable=True)
    accounting_type: Mapped[str | None] = mapped_column(String, nullable=True)
    state: Mapped[str | None] = mapped_column(String, nullable=True)
    amount_currency: Mapped[str | None] = mapped_column(String, nullable=True)
    amount_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    correspondent_account_number: Mapped[str | None] = mapped_column(
        String, nullable=True
    )
    correspondent_account_name: Mapped[str | None] = mapped_column(
        String, nullable=True
    )
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_code: Mapped[str | None] = mapped_column(String, nullable=True)
    date: Mapped[str | None] = mapped_column(String, nullable=True)
    year: Mapped[str | None] = mapped_column(String, nullable=True)
    month: Mapped[str | None] = mapped_column(String, nullable=True)
    synced_at: Mapped[int] = mapped_column(Integer, nullable=False)


class LinkedAccountTransactionRow(Base):
    """Transaction from a card's linked-account feed, with enrichment columns."""

    __tablename__ = "card_linked_account_transactions"
    __table_args__ = (
        Index("idx_card_linked_txn_product_date", "product_id", "operation_date"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    operation_date: Mapped[str] = mapped_column(String, primary_key=True)
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    transaction_type: Mapped[str | None] = mapped_column(String, nullable=True)
    accounting_type: Mapped[str | None] = mapped_column(String, nullable=True)
    state: Mapped[str | None] = mapped_column(String, nullable=True)
    amount_currency: Mapped[str | None] = mapped_column(String, nullable=True)
    amount_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    correspondent_account_number: Mapped[str | None] = mapped_column(
        String, nullable=True
    )
    correspondent_account_name: Mapped[str | None] = mapped_column(
        String, nullable=True
    )
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_code: Mapped[str | None] = mapped_column(String, nullable=True)
    date: Mapped[str | None] = mapped_column(String, nullable=True)
    year: Mapped[str | None] = mapped_column(String, nullable=True)
    month: Mapped[str | None] = mapped_column(String, nullable=True)
    synced_at: Mapped[int] = mapped_column(Integer, nullable=False)

    # Extended info; only meaningful when extended_fetched is true
    beneficiary_name: Mapped[str | None] = mapped_column(String, nullable=True)
    beneficiary_address: Mapped[str | None] = mapped_column(String, nullable=True)
    credit_account_number: Mapped[str | None] = mapped_column(String, nullable=True)
    card_masked_number: Mapped[str | None] = mapped_column(String, nullable=True)
    ext_operation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    swift_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    extended_fetched: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("0")
    )


class AccountTransactionRow(Base):
    """Account-history transaction; ``id`` is unique on its own."""

    __tablename__ = "account_transactions"
    __table_args__ = (
        Index("idx_acct_txn_product_date", "product_id", "transaction_date"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    operation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_type: Mapped[str | None] = mapped_column(String, nullable=True)
    workflow_code: Mapped[str | None] = mapped_column(String, nullable=True)
    flow_direction: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_date: Mapped[int | None] = mapped_column(Integer, nullable=True)
    settled_date: Mapped[int | None] = mapped_column(Integer, nullable=True)
    date: Mapped[str | None] = mapped_column(String, nullable=True)
    month: Mapped[str | None] = mapped_column(String, nullable=True)
    year: Mapped[str | None] = mapped_column(String, nullable=True)
    debit_account_number: Mapped[str | None] = mapped_column(String, nullable=True)
    credit_account_number: Mapped[str | None] = mapped_column(String, nullable=True)
    beneficiary_name: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_system: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_amount_currency: Mapped[str | None] = mapped_column(
        String, nullable=True
    )
    transaction_amount_value: Mapped[float | None] = mapped_column(
        Float, nullable=True
    )
    settled_amount_currency: Mapped[str | None] = mapped_column(String, nullable=True)
    settled_amount_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    domestic_amount_currency: Mapped[str | None] = mapped_column(
        String, nullable=True
    )
    domestic_amount_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    synced_at: Mapped[int] = mapped_column(Integer, nullable=False)
