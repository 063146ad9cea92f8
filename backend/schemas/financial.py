"""
Typed schemas for the six financial records served by the gateway's tools.

Only the top-level collection of each record is required. Every nested leaf
is optional because the mock gateway omits fields freely between users.

Two kinds of numbers appear in the payloads:
- currency units, XIRR and unit counts are decoded as float;
- PF balances and credit-report counters/balances arrive as strings in some
  users' data and numbers in others. They are typed `Amount` and kept exactly
  as received.
"""

from enum import Enum
from typing import Any, ClassVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

Amount = Union[str, int, float]


class RecordKind(str, Enum):
    BANK_TRANSACTIONS = "fetch_bank_transactions"
    NET_WORTH = "fetch_net_worth"
    EPF_DETAILS = "fetch_epf_details"
    CREDIT_REPORT = "fetch_credit_report"
    MF_TRANSACTIONS = "fetch_mf_transactions"
    STOCK_TRANSACTIONS = "fetch_stock_transactions"


class _SnakeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("*", mode="before")
    @classmethod
    def _null_collection_to_default(cls, value: Any, info: ValidationInfo) -> Any:
        # Explicit null for a nested list/map reads as empty, same as a missing key
        if value is None and info.field_name is not None:
            field = cls.model_fields[info.field_name]
            if field.default_factory is not None:
                return field.default_factory()
        return value


class _CamelModel(_SnakeModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# ---------------------------------------------------------------------------
# Transaction rows
# ---------------------------------------------------------------------------

class TxnRow:
    """
    One heterogeneous transaction array, e.g. ["2024-06-01", "UPI/SWIGGY", 450.0, 2].

    Positions 0/1/2 are date, description and amount. Accessors never assume
    the row is longer than the index being read; trailing cells are kept.
    """

    __slots__ = ("values",)

    def __init__(self, values: list[Any]) -> None:
        self.values = list(values)

    def __len__(self) -> int:
        return len(self.values)

    def __repr__(self) -> str:
        return f"TxnRow({self.values!r})"

    def cell(self, index: int) -> Any:
        if 0 <= index < len(self.values):
            return self.values[index]
        return None

    def text(self, index: int) -> str | None:
        value = self.cell(index)
        return None if value is None else str(value)

    def number(self, index: int) -> float | None:
        value = self.cell(index)
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.replace(",", ""))
            except ValueError:
                return None
        return None

    @property
    def date(self) -> str | None:
        return self.text(0)

    @property
    def description(self) -> str | None:
        return self.text(1)

    @property
    def amount(self) -> float | None:
        return self.number(2)


class _HasTxns(_CamelModel):
    txns: list[list[Any]] = Field(default_factory=list)

    def rows(self) -> list[TxnRow]:
        return [TxnRow(r) for r in self.txns]


# ---------------------------------------------------------------------------
# Shared leaves
# ---------------------------------------------------------------------------

class CurrencyValue(_CamelModel):
    currency_code: str | None = None
    units: float | None = None


# ---------------------------------------------------------------------------
# Bank transactions
# ---------------------------------------------------------------------------

class BankTransaction(_HasTxns):
    bank: str | None = None


class BankTransactionsRecord(_CamelModel):
    kind: ClassVar[RecordKind] = RecordKind.BANK_TRANSACTIONS

    bank_transactions: list[BankTransaction]
    schema_description: str | None = None


# ---------------------------------------------------------------------------
# Net worth
# ---------------------------------------------------------------------------

class AssetValue(_CamelModel):
    net_worth_attribute: str | None = None
    value: CurrencyValue | None = None


class NetWorthData(_CamelModel):
    asset_values: list[AssetValue] = Field(default_factory=list)
    total_net_worth_value: CurrencyValue | None = None


class NameData(_CamelModel):
    long_name: str | None = None


class SchemeDetail(_CamelModel):
    amc: str | None = None
    name_data: NameData | None = None
    plan_type: str | None = None
    investment_type: str | None = None
    option_type: str | None = None
    nav: CurrencyValue | None = None
    asset_class: str | None = None
    isin_number: str | None = None
    category_name: str | None = None


class SchemeDetails(_CamelModel):
    current_value: CurrencyValue | None = None
    invested_value: CurrencyValue | None = None
    xirr: float | None = Field(default=None, alias="XIRR")
    unrealised_returns: CurrencyValue | None = None
    units: float | None = None


class Analytics(_CamelModel):
    scheme_details: SchemeDetails | None = None


class EnrichedAnalytics(_CamelModel):
    analytics: Analytics | None = None


class SchemeAnalytic(_CamelModel):
    scheme_detail: SchemeDetail | None = None
    enriched_analytics: EnrichedAnalytics | None = None


class MfSchemeAnalytics(_CamelModel):
    scheme_analytics: list[SchemeAnalytic] = Field(default_factory=list)


class AccountInfo(_CamelModel):
    fip_id: str | None = None
    masked_account_number: str | None = None
    acc_instrument_type: str | None = None


class HoldingInfo(_CamelModel):
    isin: str | None = None
    folio_number: str | None = None
    issuer_name: str | None = None
    units: float | None = None
    last_traded_price: CurrencyValue | None = None


class MutualFundSummary(_CamelModel):
    current_value: CurrencyValue | None = None
    holdings_info: list[HoldingInfo] = Field(default_factory=list)


class EquitySummary(_CamelModel):
    current_value: CurrencyValue | None = None
    holdings_info: list[HoldingInfo] = Field(default_factory=list)


class EpfSummary(_CamelModel):
    current_balance: CurrencyValue | None = None


class NpsSummary(_CamelModel):
    account_id: str | None = None
    current_value: CurrencyValue | None = None


class DepositSummary(_CamelModel):
    current_balance: CurrencyValue | None = None
    deposit_account_type: str | None = None


class CreditCardSummary(_CamelModel):
    current_balance: CurrencyValue | None = None
    credit_limit: CurrencyValue | None = None


class AccountDetail(_CamelModel):
    account_details: AccountInfo | None = None
    mutual_fund_summary: MutualFundSummary | None = None
    epf_summary: EpfSummary | None = None
    nps_summary: NpsSummary | None = None
    equity_summary: EquitySummary | None = None
    deposit_summary: DepositSummary | None = None
    credit_card_summary: CreditCardSummary | None = None


class AccountDetailsBulkResponse(_CamelModel):
    account_details_map: dict[str, AccountDetail] = Field(default_factory=dict)


class NetWorthRecord(_CamelModel):
    kind: ClassVar[RecordKind] = RecordKind.NET_WORTH

    net_worth_response: NetWorthData
    mf_scheme_analytics: MfSchemeAnalytics | None = None
    account_details_bulk_response: AccountDetailsBulkResponse | None = None

    @property
    def total_units(self) -> float | None:
        total = self.net_worth_response.total_net_worth_value
        return total.units if total else None


# ---------------------------------------------------------------------------
# EPF details (raw EPFO payload uses snake_case keys)
# ---------------------------------------------------------------------------

class ShareDetail(_SnakeModel):
    credit: Amount | None = None
    balance: Amount | None = None


class PfBalance(_SnakeModel):
    net_balance: Amount | None = None
    employee_share: ShareDetail | None = None
    employer_share: ShareDetail | None = None


class EstDetail(_SnakeModel):
    est_name: str | None = None
    member_id: str | None = None
    office: str | None = None
    doj_epf: str | None = None
    doe_epf: str | None = None
    doe_eps: str | None = None
    pf_balance: PfBalance | None = None


class OverallPfBalance(_SnakeModel):
    pension_balance: Amount | None = None
    current_pf_balance: Amount | None = None
    employee_share_total: ShareDetail | None = None
    employer_share_total: ShareDetail | None = None


class RawDetails(_SnakeModel):
    est_details: list[EstDetail] = Field(default_factory=list)
    overall_pf_balance: OverallPfBalance | None = None


class UanAccount(_CamelModel):
    phone_number: dict[str, Any] | None = None
    raw_details: RawDetails | None = None


class EpfDetailsRecord(_CamelModel):
    kind: ClassVar[RecordKind] = RecordKind.EPF_DETAILS

    uan_accounts: list[UanAccount]


# ---------------------------------------------------------------------------
# Credit report
# ---------------------------------------------------------------------------

class UserMessage(_CamelModel):
    user_message_text: str | None = None


class CreditProfileHeader(_CamelModel):
    report_date: Amount | None = None
    report_time: Amount | None = None


class CurrentApplicantDetails(_CamelModel):
    date_of_birth_applicant: Amount | None = None


class CurrentApplicationDetails(_CamelModel):
    enquiry_reason: Amount | None = None
    amount_financed: Amount | None = None
    duration_of_agreement: Amount | None = None
    current_applicant_details: CurrentApplicantDetails | None = None


class CurrentApplication(_CamelModel):
    current_application_details: CurrentApplicationDetails | None = None


class CreditAccountTotals(_CamelModel):
    credit_account_total: Amount | None = None
    credit_account_active: Amount | None = None
    credit_account_default: Amount | None = None
    credit_account_closed: Amount | None = None
    cad_suit_filed_current_balance: Amount | None = None


class TotalOutstandingBalance(_CamelModel):
    outstanding_balance_secured: Amount | None = None
    outstanding_balance_secured_percentage: Amount | None = None
    outstanding_balance_un_secured: Amount | None = Field(default=None, alias="outstandingBalanceUnSecured")
    outstanding_balance_un_secured_percentage: Amount | None = Field(
        default=None, alias="outstandingBalanceUnSecuredPercentage"
    )
    outstanding_balance_all: Amount | None = None


class CreditAccountSummary(_CamelModel):
    account: CreditAccountTotals | None = None
    total_outstanding_balance: TotalOutstandingBalance | None = None


class CreditAccountDetail(_CamelModel):
    subscriber_name: str | None = None
    portfolio_type: Amount | None = None
    account_type: Amount | None = None
    open_date: Amount | None = None
    highest_credit_or_original_loan_amount: Amount | None = None
    account_status: Amount | None = None
    payment_rating: Amount | None = None
    payment_history_profile: str | None = None
    current_balance: Amount | None = None
    amount_past_due: Amount | None = None
    date_reported: Amount | None = None
    occupation_code: Amount | None = None
    rate_of_interest: Amount | None = None
    repayment_tenure: Amount | None = None
    date_of_addition: Amount | None = None
    currency_code: Amount | None = None
    account_holder_type_code: Amount | None = None
    credit_limit_amount: Amount | None = None


class CreditAccount(_CamelModel):
    credit_account_summary: CreditAccountSummary | None = None
    credit_account_details: list[CreditAccountDetail] = Field(default_factory=list)


class MatchResult(_CamelModel):
    exact_match: str | None = None


class TotalCapsSummary(_CamelModel):
    total_caps_last7_days: Amount | None = Field(default=None, alias="totalCapsLast7Days")
    total_caps_last30_days: Amount | None = Field(default=None, alias="totalCapsLast30Days")
    total_caps_last90_days: Amount | None = Field(default=None, alias="totalCapsLast90Days")
    total_caps_last180_days: Amount | None = Field(default=None, alias="totalCapsLast180Days")


class CapsApplicationDetail(_CamelModel):
    subscriber_name: str | None = Field(default=None, alias="SubscriberName")
    finance_purpose: Amount | None = Field(default=None, alias="FinancePurpose")
    caps_applicant_details: dict[str, Any] | None = None
    caps_other_details: dict[str, Any] | None = None
    caps_applicant_address_details: dict[str, Any] | None = None
    caps_applicant_additional_address_details: dict[str, Any] | None = None
    date_of_request: Amount | None = Field(default=None, alias="DateOfRequest")
    enquiry_reason: Amount | None = Field(default=None, alias="EnquiryReason")


class NonCreditCapsSummary(_CamelModel):
    non_credit_caps_last7_days: Amount | None = Field(default=None, alias="nonCreditCapsLast7Days")
    non_credit_caps_last30_days: Amount | None = Field(default=None, alias="nonCreditCapsLast30Days")
    non_credit_caps_last90_days: Amount | None = Field(default=None, alias="nonCreditCapsLast90Days")
    non_credit_caps_last180_days: Amount | None = Field(default=None, alias="nonCreditCapsLast180Days")


class NonCreditCaps(_CamelModel):
    non_credit_caps_summary: NonCreditCapsSummary | None = None
    caps_application_details_array: list[CapsApplicationDetail] = Field(default_factory=list)


class CapsSummary(_CamelModel):
    caps_last7_days: Amount | None = Field(default=None, alias="capsLast7Days")
    caps_last30_days: Amount | None = Field(default=None, alias="capsLast30Days")
    caps_last90_days: Amount | None = Field(default=None, alias="capsLast90Days")
    caps_last180_days: Amount | None = Field(default=None, alias="capsLast180Days")


class Caps(_CamelModel):
    caps_summary: CapsSummary | None = None
    caps_application_details_array: list[CapsApplicationDetail] = Field(default_factory=list)


class Score(_CamelModel):
    bureau_score: Amount | None = None
    bureau_score_confidence_level: Amount | None = None


class CreditReportData(_CamelModel):
    user_message: UserMessage | None = None
    credit_profile_header: CreditProfileHeader | None = None
    current_application: CurrentApplication | None = None
    credit_account: CreditAccount | None = None
    match_result: MatchResult | None = None
    total_caps_summary: TotalCapsSummary | None = None
    non_credit_caps: NonCreditCaps | None = None
    score: Score | None = None
    segment: dict[str, Any] | None = None
    caps: Caps | None = None


class CreditReport(_CamelModel):
    credit_report_data: CreditReportData | None = None
    vendor: str | None = None


class CreditReportRecord(_CamelModel):
    kind: ClassVar[RecordKind] = RecordKind.CREDIT_REPORT

    credit_reports: list[CreditReport]


# ---------------------------------------------------------------------------
# Mutual fund / stock transactions
# ---------------------------------------------------------------------------

class MfTransaction(_HasTxns):
    isin: str | None = None
    scheme_name: str | None = None
    folio_id: str | None = None


class MfTransactionsRecord(_CamelModel):
    kind: ClassVar[RecordKind] = RecordKind.MF_TRANSACTIONS

    mf_transactions: list[MfTransaction]
    schema_description: str | None = None


class StockTransaction(_HasTxns):
    isin: str | None = None


class StockTransactionsRecord(_CamelModel):
    kind: ClassVar[RecordKind] = RecordKind.STOCK_TRANSACTIONS

    stock_transactions: list[StockTransaction]
    schema_description: str | None = None


FinancialRecord = Union[
    BankTransactionsRecord,
    NetWorthRecord,
    EpfDetailsRecord,
    CreditReportRecord,
    MfTransactionsRecord,
    StockTransactionsRecord,
]

RECORD_MODELS: dict[RecordKind, type[BaseModel]] = {
    RecordKind.BANK_TRANSACTIONS: BankTransactionsRecord,
    RecordKind.NET_WORTH: NetWorthRecord,
    RecordKind.EPF_DETAILS: EpfDetailsRecord,
    RecordKind.CREDIT_REPORT: CreditReportRecord,
    RecordKind.MF_TRANSACTIONS: MfTransactionsRecord,
    RecordKind.STOCK_TRANSACTIONS: StockTransactionsRecord,
}
