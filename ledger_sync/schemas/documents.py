from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_serializer, model_validator

from ledger_sync.services.money import format_amount, sum_amounts

Amount = Annotated[Decimal, PlainSerializer(format_amount, return_type=str)]


class QBOModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Ref(QBOModel):
    value: str = Field(min_length=1)
    name: Optional[str] = None


class SalesItemLineDetail(QBOModel):
    item_ref: Ref = Field(alias="ItemRef")
    quantity: int = Field(default=1, alias="Qty")
    unit_price: Amount = Field(alias="UnitPrice")
    class_ref: Ref = Field(alias="ClassRef")


class SalesLine(QBOModel):
    amount: Amount = Field(gt=0, alias="Amount")
    detail_type: Literal["SalesItemLineDetail"] = Field(
        default="SalesItemLineDetail", alias="DetailType"
    )
    detail: SalesItemLineDetail = Field(alias="SalesItemLineDetail")
    description: Optional[str] = Field(default=None, max_length=4000, alias="Description")

    @model_validator(mode="after")
    def validate_unit_price(self) -> "SalesLine":
        if self.detail.unit_price * self.detail.quantity != self.amount:
            raise ValueError("Line amount must equal quantity times unit price")
        return self


class LinkedTxn(QBOModel):
    txn_id: str = Field(min_length=1, alias="TxnId")
    txn_type: Literal["SalesReceipt", "RefundReceipt"] = Field(alias="TxnType")


class DepositLineDetail(QBOModel):
    account_ref: Optional[Ref] = Field(default=None, alias="AccountRef")
    class_ref: Optional[Ref] = Field(default=None, alias="ClassRef")


class DepositLine(QBOModel):
    amount: Amount = Field(alias="Amount")
    detail_type: Literal["DepositLineDetail"] = Field(
        default="DepositLineDetail", alias="DetailType"
    )
    detail: DepositLineDetail = Field(alias="DepositLineDetail")
    linked_txn: Optional[list[LinkedTxn]] = Field(default=None, alias="LinkedTxn")
    description: Optional[str] = Field(default=None, max_length=4000, alias="Description")


class ReceiptParams(QBOModel):
    customer_ref: Ref = Field(alias="CustomerRef")
    lines: list[SalesLine] = Field(min_length=1, alias="Line")
    total_amt: Amount = Field(gt=0, alias="TotalAmt")
    txn_date: Optional[date] = Field(default=None, alias="TxnDate")
    memo: Optional[str] = Field(default=None, max_length=1000, alias="CustomerMemo")
    private_note: Optional[str] = Field(default=None, max_length=4000, alias="PrivateNote")

    @field_serializer("memo")
    def serialize_memo(self, value: Optional[str]) -> Optional[dict[str, str]]:
        if value is None:
            return None
        return {"value": value}

    @model_validator(mode="after")
    def validate_total(self) -> "ReceiptParams":
        if self.total_amt != sum_amounts(line.amount for line in self.lines):
            raise ValueError("TotalAmt must equal the sum of line amounts")
        return self


class SalesReceiptParams(ReceiptParams):
    deposit_to_account_ref: Ref = Field(alias="DepositToAccountRef")


class RefundReceiptParams(ReceiptParams):
    refund_from_account_ref: Ref = Field(alias="RefundFromAccountRef")


class DepositParams(QBOModel):
    deposit_to_account_ref: Ref = Field(alias="DepositToAccountRef")
    lines: list[DepositLine] = Field(min_length=1, alias="Line")
    total_amt: Amount = Field(alias="TotalAmt")
    txn_date: Optional[date] = Field(default=None, alias="TxnDate")
    memo: Optional[str] = Field(default=None, max_length=4000, alias="Memo")
    private_note: Optional[str] = Field(default=None, max_length=4000, alias="PrivateNote")

    @model_validator(mode="after")
    def validate_total(self) -> "DepositParams":
        if self.total_amt != sum_amounts(line.amount for line in self.lines):
            raise ValueError("TotalAmt must equal the sum of line amounts")
        return self


class EmailAddress(QBOModel):
    address: str = Field(alias="Address")


class PhoneNumber(QBOModel):
    free_form_number: str = Field(alias="FreeFormNumber")


class CustomerParams(QBOModel):
    display_name: str = Field(min_length=1, max_length=500, alias="DisplayName")
    given_name: Optional[str] = Field(default=None, max_length=100, alias="GivenName")
    family_name: Optional[str] = Field(default=None, max_length=100, alias="FamilyName")
    email: Optional[EmailAddress] = Field(default=None, alias="PrimaryEmailAddr")
    phone: Optional[PhoneNumber] = Field(default=None, alias="PrimaryPhone")


@dataclass
class ExternalDocument:
    """A transaction as created in the external accounting system."""

    id: str
    doc_type: str
    total_amt: Optional[Decimal] = None
    sync_token: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, doc_type: str, payload: dict[str, Any]) -> "ExternalDocument":
        entity = payload.get(doc_type, payload)
        if not isinstance(entity, dict) or entity.get("Id") is None:
            raise ValueError(f"{doc_type} response is missing an Id")
        total = entity.get("TotalAmt")
        try:
            total_amt = None if total is None else Decimal(str(total))
        except InvalidOperation as exc:
            raise ValueError(f"{doc_type} response has a non-numeric TotalAmt: {total!r}") from exc
        return cls(
            id=str(entity["Id"]),
            doc_type=doc_type,
            total_amt=total_amt,
            sync_token=None if entity.get("SyncToken") is None else str(entity["SyncToken"]),
            raw=payload,
        )

    @classmethod
    def from_stored(
        cls,
        doc_type: str,
        external_id: str,
        response: Optional[dict[str, Any]],
    ) -> "ExternalDocument":
        if response:
            try:
                document = cls.from_response(doc_type, response)
            except ValueError:
                document = None
            if document is not None and document.id == external_id:
                return document
        return cls(id=external_id, doc_type=doc_type, raw=response or {})
