"""Pydantic schemas for MMG payments"""
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckoutRequest(BaseModel):
    amount: Decimal
    currency: Optional[str] = None
    description: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    subscription_type: Optional[str] = Field(default=None, alias="subscriptionType")


class CallbackPayload(BaseModel):
    """Decrypted MMG callback token. Unknown keys are kept in ``raw``."""
    merchant_transaction_id: Optional[str] = None
    transaction_id: Optional[str] = None
    result_code: Optional[str] = None
    result_message: Optional[str] = None
    html_response: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_decrypted(cls, data: Dict[str, Any]) -> "CallbackPayload":
        def pick(*keys):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        def as_str(value):
            return None if value is None else str(value)

        return cls(
            merchant_transaction_id=as_str(pick("merchantTransactionId", "MerchantTransactionId")),
            transaction_id=as_str(pick("transactionId", "TransactionId")),
            result_code=as_str(pick("ResultCode", "resultCode")),
            result_message=as_str(pick("ResultMessage", "resultMessage")),
            html_response=as_str(pick("htmlResponse", "HtmlResponse")),
            raw=data,
        )

    @property
    def is_success(self) -> bool:
        """Gateway result code of exactly zero"""
        if self.result_code is None:
            return False
        try:
            return int(self.result_code.strip()) == 0
        except ValueError:
            return False


class LookupResult(BaseModel):
    """Transaction record returned by the MMG lookup endpoint"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    amount: Optional[str] = None
    currency: Optional[str] = None
    transaction_status: Optional[str] = Field(default=None, alias="transactionStatus")
    transaction_reference: Optional[str] = Field(default=None, alias="transactionReference")
    transaction_receipt: Optional[str] = Field(default=None, alias="transactionReceipt")
    creation_date: Optional[str] = Field(default=None, alias="creationDate")
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "LookupResult":
        normalized = dict(data)
        for key in ("amount", "transactionId", "transactionReference", "transactionReceipt", "creationDate"):
            if normalized.get(key) is not None:
                normalized[key] = str(normalized[key])
        result = cls.model_validate(normalized)
        result.raw = data
        return result

    @property
    def is_successful(self) -> bool:
        return (self.transaction_status or "").strip().lower() == "successful"
