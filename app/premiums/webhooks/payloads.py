"""
Validated inbound M-Pesa notification payloads.

Gateway callbacks arrive as loosely-typed JSON. Each one is validated at
the boundary with a DRF serializer and turned into a frozen dataclass
tagged with its CallbackKind; nothing past this module touches the raw
dict.

    STK callback     -> StkCallback      (parse_stk_callback)
    B2C result       -> TransferResult   (parse_transfer_result)
    B2C queue timeout-> TransferTimeout  (parse_transfer_timeout)

Metadata lists ({"Name": ..., "Value": ...} / {"Key": ..., "Value": ...})
are flattened and read by key.

Usage:
    from premiums.webhooks.payloads import parse_stk_callback

    callback = parse_stk_callback(request_json)
    callback.checkout_request_id
    callback.amount  # int, or None when the gateway omitted it
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar
from zoneinfo import ZoneInfo

from rest_framework import serializers

from premiums.exceptions import MalformedCallbackError
from premiums.state_machines import CallbackKind

GATEWAY_TIME_ZONE = ZoneInfo("Africa/Nairobi")


# =============================================================================
# Serializers
# =============================================================================


class CallbackItemSerializer(serializers.Serializer):
    Name = serializers.CharField()
    Value = serializers.JSONField(required=False, allow_null=True)


class CallbackMetadataSerializer(serializers.Serializer):
    Item = CallbackItemSerializer(many=True, required=False)


class StkCallbackSerializer(serializers.Serializer):
    MerchantRequestID = serializers.CharField(required=False, allow_blank=True, default="")
    CheckoutRequestID = serializers.CharField(max_length=100)
    ResultCode = serializers.IntegerField()
    ResultDesc = serializers.CharField(required=False, allow_blank=True, default="")
    CallbackMetadata = CallbackMetadataSerializer(required=False)


class StkCallbackBodySerializer(serializers.Serializer):
    stkCallback = StkCallbackSerializer()


class StkCallbackPayloadSerializer(serializers.Serializer):
    Body = StkCallbackBodySerializer()


class ResultParameterSerializer(serializers.Serializer):
    Key = serializers.CharField()
    Value = serializers.JSONField(required=False, allow_null=True)


class ResultParametersSerializer(serializers.Serializer):
    ResultParameter = serializers.JSONField(required=False)

    def validate_ResultParameter(self, value):
        # The gateway sends a bare object instead of a list when there is one item
        items = value if isinstance(value, list) else [value]
        serializer = ResultParameterSerializer(data=items, many=True)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data


class B2CResultSerializer(serializers.Serializer):
    ResultType = serializers.IntegerField(required=False)
    ResultCode = serializers.IntegerField()
    ResultDesc = serializers.CharField(required=False, allow_blank=True, default="")
    OriginatorConversationID = serializers.CharField(required=False, allow_blank=True, default="")
    ConversationID = serializers.CharField(required=False, allow_blank=True, default="")
    TransactionID = serializers.CharField(required=False, allow_blank=True, default="")
    ResultParameters = ResultParametersSerializer(required=False)

    def validate(self, attrs):
        if not attrs.get("OriginatorConversationID") and not attrs.get("ConversationID"):
            raise serializers.ValidationError(
                "OriginatorConversationID or ConversationID is required"
            )
        return attrs


class B2CResultPayloadSerializer(serializers.Serializer):
    Result = B2CResultSerializer()


class B2CTimeoutSerializer(serializers.Serializer):
    ResultCode = serializers.IntegerField(required=False, allow_null=True)
    ResultDesc = serializers.CharField(required=False, allow_blank=True, default="")
    OriginatorConversationID = serializers.CharField(required=False, allow_blank=True, default="")
    ConversationID = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if not attrs.get("OriginatorConversationID") and not attrs.get("ConversationID"):
            raise serializers.ValidationError(
                "OriginatorConversationID or ConversationID is required"
            )
        return attrs


class B2CTimeoutPayloadSerializer(serializers.Serializer):
    Result = B2CTimeoutSerializer()


# =============================================================================
# Payload Types
# =============================================================================


@dataclass(frozen=True)
class StkCallback:
    """Result of an STK push, as reported by the gateway."""

    kind: ClassVar[str] = CallbackKind.STK_CALLBACK

    checkout_request_id: str
    merchant_request_id: str
    result_code: int
    result_description: str
    amount: int | None = None
    receipt_number: str | None = None
    transaction_date: datetime | None = None
    phone_number: str | None = None
    synthetic: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_success(self) -> bool:
        return self.result_code == 0

    @property
    def correlation_id(self) -> str:
        return self.checkout_request_id


@dataclass(frozen=True)
class TransferResult:
    """Final outcome of a B2C payment request."""

    kind: ClassVar[str] = CallbackKind.B2C_RESULT

    originator_conversation_id: str
    conversation_id: str
    result_code: int
    result_description: str
    transaction_id: str | None = None
    amount: int | None = None
    receipt: str | None = None
    receiver_name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_success(self) -> bool:
        return self.result_code == 0

    @property
    def correlation_id(self) -> str:
        return self.conversation_id or self.originator_conversation_id


@dataclass(frozen=True)
class TransferTimeout:
    """The B2C request expired in the gateway's queue before processing."""

    kind: ClassVar[str] = CallbackKind.B2C_TIMEOUT

    originator_conversation_id: str
    conversation_id: str
    result_description: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def correlation_id(self) -> str:
        return self.conversation_id or self.originator_conversation_id


# =============================================================================
# Helpers
# =============================================================================


def _validate(serializer_class: type[serializers.Serializer], payload: Any, kind: str) -> dict:
    if not isinstance(payload, dict):
        raise MalformedCallbackError(
            f"{kind} payload must be a JSON object",
            details={"kind": kind},
        )
    serializer = serializer_class(data=payload)
    if not serializer.is_valid():
        raise MalformedCallbackError(
            f"Malformed {kind} payload",
            details={"kind": kind, "errors": serializer.errors},
        )
    return serializer.validated_data


def _items_by_key(items: list[dict] | None, key_field: str) -> dict[str, Any]:
    return {item[key_field]: item.get("Value") for item in items or []}


def _whole_amount(value: Any, kind: str) -> int | None:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise MalformedCallbackError(
            f"{kind} amount is not a number",
            details={"kind": kind, "amount": str(value)},
        ) from e
    if not amount.is_finite() or amount != amount.to_integral_value() or amount < 0:
        raise MalformedCallbackError(
            f"{kind} amount is not a whole number of shillings",
            details={"kind": kind, "amount": str(value)},
        )
    return int(amount)


def _transaction_date(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        naive = datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return naive.replace(tzinfo=GATEWAY_TIME_ZONE)


def _text(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(value)


# =============================================================================
# Parsers
# =============================================================================


def parse_stk_callback(payload: Any) -> StkCallback:
    """
    Raises:
        MalformedCallbackError: Structure invalid or amount not whole
    """
    data = _validate(StkCallbackPayloadSerializer, payload, CallbackKind.STK_CALLBACK)
    callback = data["Body"]["stkCallback"]
    metadata = _items_by_key(
        (callback.get("CallbackMetadata") or {}).get("Item"),
        "Name",
    )

    return StkCallback(
        checkout_request_id=callback["CheckoutRequestID"],
        merchant_request_id=callback.get("MerchantRequestID", ""),
        result_code=callback["ResultCode"],
        result_description=callback.get("ResultDesc", ""),
        amount=_whole_amount(metadata.get("Amount"), CallbackKind.STK_CALLBACK),
        receipt_number=_text(metadata.get("MpesaReceiptNumber")),
        transaction_date=_transaction_date(metadata.get("TransactionDate")),
        phone_number=_text(metadata.get("PhoneNumber")),
        raw=payload,
    )


def parse_transfer_result(payload: Any) -> TransferResult:
    data = _validate(B2CResultPayloadSerializer, payload, CallbackKind.B2C_RESULT)
    result = data["Result"]
    parameters = _items_by_key(
        (result.get("ResultParameters") or {}).get("ResultParameter"),
        "Key",
    )

    return TransferResult(
        originator_conversation_id=result.get("OriginatorConversationID", ""),
        conversation_id=result.get("ConversationID", ""),
        result_code=result["ResultCode"],
        result_description=result.get("ResultDesc", ""),
        transaction_id=_text(result.get("TransactionID")),
        amount=_whole_amount(parameters.get("TransactionAmount"), CallbackKind.B2C_RESULT),
        receipt=_text(parameters.get("TransactionReceipt")),
        receiver_name=_text(parameters.get("ReceiverPartyPublicName")),
        raw=payload,
    )


def parse_transfer_timeout(payload: Any) -> TransferTimeout:
    data = _validate(B2CTimeoutPayloadSerializer, payload, CallbackKind.B2C_TIMEOUT)
    result = data["Result"]

    return TransferTimeout(
        originator_conversation_id=result.get("OriginatorConversationID", ""),
        conversation_id=result.get("ConversationID", ""),
        result_description=result.get("ResultDesc", "") or "Request timed out in gateway queue",
        raw=payload,
    )


PARSERS = {
    CallbackKind.STK_CALLBACK: parse_stk_callback,
    CallbackKind.B2C_RESULT: parse_transfer_result,
    CallbackKind.B2C_TIMEOUT: parse_transfer_timeout,
}


def parse_callback(kind: str, payload: Any) -> StkCallback | TransferResult | TransferTimeout:
    try:
        parser = PARSERS[kind]
    except KeyError as e:
        raise MalformedCallbackError(
            f"Unknown callback kind: {kind}",
            details={"kind": kind},
        ) from e
    return parser(payload)
