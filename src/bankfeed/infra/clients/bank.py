from __future__ import annotations

import json
from typing import Any, Self, cast
import urllib.error
import urllib.parse
import urllib.request

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from bankfeed.core.config import BankConfig
from bankfeed.infra.clients.protocol import AccountPage
from bankfeed.models.transaction import (
    AccountTransactionRecord,
    Amount,
    ExtendedInfo,
    Product,
    ProductType,
    TransactionAmount,
    TransactionRecord,
)


class BankClientError(Exception):
    """Base error for bank API failures."""


class BankBaseModel(BaseModel):
    """Shared base for bank response models: camelCase wire names, short parse alias."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # The API sends explicit nulls for absent strings; fall back to defaults.
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data

    @classmethod
    def parse(cls, data: Any) -> Self:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise BankClientError(
                f"Unexpected {cls.__name__} payload from bank API: {e}"
            ) from e


class AmountModel(BankBaseModel):
    currency: str = ""
    amount: float = 0.0


class TransactionModel(BankBaseModel):
    id: str
    transaction_type: str = ""
    accounting_type: str = ""
    state: str = ""
    amount: AmountModel = Field(default_factory=AmountModel)
    correspondent_account_number: str = ""
    correspondent_account_name: str = ""
    details: str = ""
    operation_date: str = ""
    workflow_code: str = ""
    date: str = ""
    year: str = ""
    month: str = ""

    def to_record(self) -> TransactionRecord:
        return TransactionRecord(
            id=self.id,
            operation_date=self.operation_date,
            amount=Amount(currency=self.amount.currency, amount=self.amount.amount),
            transaction_type=self.transaction_type,
            accounting_type=self.accounting_type,
            state=self.state,
            correspondent_account_number=self.correspondent_account_number,
            correspondent_account_name=self.correspondent_account_name,
            details=self.details,
            workflow_code=self.workflow_code,
            date=self.date,
            year=self.year,
            month=self.month,
        )


class TransactionsData(BankBaseModel):
    total_count: int = 0
    entries: list[TransactionModel] = Field(default_factory=list)


class TransactionsResponse(BankBaseModel):
    data: TransactionsData = Field(default_factory=TransactionsData)


class TransactionAmountModel(BankBaseModel):
    currency: str = ""
    value: float = 0.0

    def to_amount(self) -> TransactionAmount:
        return TransactionAmount(currency=self.currency, value=self.value)


class AccountTransactionModel(BankBaseModel):
    id: str
    transaction_id: str = ""
    operation_id: str = ""
    status: str = ""
    transaction_type: str = ""
    workflow_code: str = ""
    flow_direction: str = ""
    transaction_date: int = 0
    settled_date: int = 0
    date: str = ""
    month: str = ""
    year: str = ""
    debit_account_number: str = ""
    credit_account_number: str = ""
    beneficiary_name: str = ""
    details: str = ""
    source_system: str = ""
    transaction_amount: TransactionAmountModel = Field(
        default_factory=TransactionAmountModel
    )
    settled_amount: TransactionAmountModel = Field(
        default_factory=TransactionAmountModel
    )
    domestic_amount: TransactionAmountModel = Field(
        default_factory=TransactionAmountModel
    )

    def to_record(self) -> AccountTransactionRecord:
        return AccountTransactionRecord(
            id=self.id,
            transaction_date=self.transaction_date,
            transaction_amount=self.transaction_amount.to_amount(),
            settled_amount=self.settled_amount.to_amount(),
            domestic_amount=self.domestic_amount.to_amount(),
            flow_direction=self.flow_direction,
            beneficiary_name=self.beneficiary_name,
            transaction_id=self.transaction_id,
            operation_id=self.operation_id,
            status=self.status,
            transaction_type=self.transaction_type,
            workflow_code=self.workflow_code,
            settled_date=self.settled_date,
            date=self.date,
            month=self.month,
            year=self.year,
            debit_account_number=self.debit_account_number,
            credit_account_number=self.credit_account_number,
            details=self.details,
            source_system=self.source_system,
        )


class HistoryData(BankBaseModel):
    has_next: bool = False
    is_up_to_date: bool = False
    transactions: list[AccountTransactionModel] = Field(default_factory=list)


class HistoryResponse(BankBaseModel):
    data: HistoryData = Field(default_factory=HistoryData)


class AdditionalInfoModel(BankBaseModel):
    card_masked_number: str = ""
    processed_operation_id: str = ""


class TransactionDetailModel(BankBaseModel):
    beneficiary_name: str = ""
    beneficiary_address: str = ""
    credit_account_number: str = ""
    additional_info: AdditionalInfoModel | None = None
    transaction_swift_details: dict[str, Any] | None = None

    def to_extended_info(self) -> ExtendedInfo:
        card_masked_number = ""
        operation_id = ""
        if self.additional_info is not None:
            card_masked_number = self.additional_info.card_masked_number
            operation_id = self.additional_info.processed_operation_id
        swift_details = ""
        if self.transaction_swift_details is not None:
            swift_details = json.dumps(self.transaction_swift_details, sort_keys=True)
        return ExtendedInfo(
            beneficiary_name=self.beneficiary_name,
            beneficiary_address=self.beneficiary_address,
            credit_account_number=self.credit_account_number,
            card_masked_number=card_masked_number,
            operation_id=operation_id,
            swift_details=swift_details,
        )


class TransactionDetailData(BankBaseModel):
    transaction: TransactionDetailModel


class TransactionDetailResponse(BankBaseModel):
    data: TransactionDetailData


class ProductModel(BankBaseModel):
    product_type: str
    id: str
    name: str = ""
    card_number: str | None = None
    account_number: str | None = None
    account_id: str | None = None
    currency: str = ""
    balance: float = 0.0
    status: str = ""

    def to_product(self) -> Product:
        return Product(
            id=self.id,
            product_type=(
                ProductType.CARD
                if self.product_type.upper() == ProductType.CARD.value
                else ProductType.ACCOUNT
            ),
            name=self.name,
            card_number=self.card_number or None,
            account_number=self.account_number or None,
            linked_account_id=self.account_id or None,
            currency=self.currency,
            balance=self.balance,
            status=self.status,
        )


class AccountsAndCardsData(BankBaseModel):
    accounts_and_cards: list[ProductModel] = Field(default_factory=list)


class AccountsAndCardsResponse(BankBaseModel):
    data: AccountsAndCardsData = Field(default_factory=AccountsAndCardsData)


class BankClient:
    """HTTP client for the bank's transaction feeds.

    Authentication is handled elsewhere; the client only carries a bearer
    token that is assumed to be valid.
    """

    def __init__(self, config: BankConfig) -> None:
        self._config = config

    @property
    def base_url(self) -> str:
        return self._config.base_url

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._config.access_token}",
        }
        if self._config.client_id:
            headers["Client-Id"] = self._config.client_id
        return headers

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        """Parse a JSON response body.

        Raises:
            BankClientError: If the body is not a JSON object
        """
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise BankClientError(
                f"Failed to parse bank response as JSON: {e}: {body[:200]}"
            ) from e
        if not isinstance(data, dict):
            raise BankClientError(f"Expected JSON object, got {type(data).__name__}")
        return cast(dict[str, Any], data)

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = self._config.base_url.rstrip("/") + path
        if params:
            url += "?" + urllib.parse.urlencode(params)
        req = urllib.request.Request(  # noqa: S310
            url, headers=self._headers(), method="GET"
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._config.timeout
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            err_body = e.read().decode("utf-8", "ignore")
            raise BankClientError(
                f"Bank API error ({e.code}) for {path}: {err_body}"
            ) from e
        except urllib.error.URLError as e:
            raise BankClientError(f"Network error calling bank API: {e}") from e

        return self._parse_json_response(body)

    # Feed APIs -----------------------------------------------------------

    def fetch_products(self) -> list[Product]:
        """Return every account and card visible to the session."""
        resp = AccountsAndCardsResponse.parse(
            self._get(
                "/api/accounts-and-cards",
                {
                    "page": 0,
                    "size": 100,
                    "skipApplications": "false",
                    "specifications": "SIMPLE",
                    "isFullList": "true",
                },
            )
        )
        return [product.to_product() for product in resp.data.accounts_and_cards]

    def fetch_card_transactions(self, product_id: str) -> list[TransactionRecord]:
        """Return the full settled card feed; this endpoint is not paginated."""
        path = "/api/events/settled/" + urllib.parse.quote(product_id, safe="")
        resp = TransactionsResponse.parse(self._get(path))
        return [entry.to_record() for entry in resp.data.entries]

    def fetch_linked_account_page(
        self, account_id: str, page_size: int, page_index: int
    ) -> list[TransactionRecord]:
        """Return one page of the card's linked-account history, newest first."""
        resp = TransactionsResponse.parse(
            self._get(
                "/api/events/past",
                {
                    "fromAmount": "0.1",
                    "accountIds": account_id,
                    "sort": "date",
                    "size": page_size,
                    "page": page_index,
                },
            )
        )
        return [entry.to_record() for entry in resp.data.entries]

    def fetch_account_page(
        self, account_id: str, page_size: int, page_index: int
    ) -> AccountPage:
        """Return one page of account history and whether more pages exist."""
        resp = HistoryResponse.parse(
            self._get(
                "/api/history",
                {"accountIds": account_id, "size": page_size, "page": page_index},
            )
        )
        return AccountPage(
            records=[txn.to_record() for txn in resp.data.transactions],
            has_next=resp.data.has_next,
        )

    def fetch_transaction_detail(self, transaction_id: str) -> ExtendedInfo:
        """Resolve beneficiary, counter-account and SWIFT details for a transaction."""
        path = "/api/transactions/" + urllib.parse.quote(transaction_id, safe="")
        resp = TransactionDetailResponse.parse(self._get(path))
        return resp.data.transaction.to_extended_info()
