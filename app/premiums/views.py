"""
API views for premium collection and operator tooling.

Provides:
- CollectionInitiateView: Start an STK-push collection (payer)
- CollectionStatusView: Poll a collection by correlation token (payer)
- PaymentHistoryView: The signed-in member's payments (payer)
- SettlementListView / SettlementDetailView: Browse settlement batches
- SettlementGenerateView: Settle a given day on demand
- SettlementBreakdownView / SettlementSummaryView / SettlementStatsView: Reporting
- PayoutLineItemListView: Filter line items (e.g. failed, needing intervention)
- PayoutRetryView: Requeue a failed line item
- PaymentResolveSplitView: Compute the split of a confirmed_unsplit payment
- RecipientPayoutListView / RecipientPayoutSummaryView: A recipient's own payouts

Service failures are translated to HTTP statuses by error_code.
"""

from __future__ import annotations

from datetime import timedelta

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema
from rest_framework import generics, status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.services import ServiceResult
from premiums.models import CommissionPayoutLineItem, Payment, SettlementBatch
from premiums.serializers import (
    CollectionInitiatedSerializer,
    DateRangeQuerySerializer,
    GenerateSettlementSerializer,
    InitiateCollectionSerializer,
    OverallStatsQuerySerializer,
    PaymentHistorySerializer,
    PaymentSerializer,
    PaymentStatusSerializer,
    PayoutFilterSerializer,
    PayoutLineItemDetailSerializer,
    PayoutLineItemSerializer,
    RecipientPayoutSerializer,
    SettlementBatchDetailSerializer,
    SettlementBatchSerializer,
    SettlementSummarySerializer,
    VersionedActionSerializer,
)
from premiums.services import (
    CallbackReconciler,
    CollectionService,
    InitiateCollectionParams,
    PayoutService,
    SettlementService,
)
from premiums.services.settlement_service import local_today

DEFAULT_RANGE_DAYS = 30

# Error codes that are not 400 Bad Request
ERROR_STATUS = {
    "STALE_RECORD": status.HTTP_409_CONFLICT,
    "INVALID_STATE_TRANSITION": status.HTTP_409_CONFLICT,
    "SETTLEMENT_PERIOD_OPEN": status.HTTP_409_CONFLICT,
    "RECIPIENT_NOT_PAYABLE": status.HTTP_409_CONFLICT,
    "GATEWAY_UNREACHABLE": status.HTTP_502_BAD_GATEWAY,
    "GATEWAY_REJECTED": status.HTTP_502_BAD_GATEWAY,
}


def failure_response(result: ServiceResult) -> Response:
    """Build an error Response for a failed ServiceResult."""
    code = result.error_code or ""
    if code.endswith("NOT_FOUND"):
        http_status = status.HTTP_404_NOT_FOUND
    else:
        http_status = ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST)

    body = {"error": result.error, "error_code": result.error_code}
    if result.errors:
        body["errors"] = result.errors
    return Response(body, status=http_status)


def _actor(request) -> str:
    user = request.user
    return user.get_username() if user and user.is_authenticated else "operator"


def _own_member(request):
    """The Member linked to the signed-in user, or None."""
    return getattr(request.user, "member", None)


def _forbidden(message: str, error_code: str) -> Response:
    return Response(
        {"error": message, "error_code": error_code},
        status=status.HTTP_403_FORBIDDEN,
    )


def _date_range(query_params):
    """(start, end, errors) from ?start=&end=, defaulting to the last 30 days."""
    query = DateRangeQuerySerializer(data=query_params)
    if not query.is_valid():
        return None, None, query.errors
    end = query.validated_data.get("end") or local_today()
    start = query.validated_data.get("start") or end - timedelta(days=DEFAULT_RANGE_DAYS)
    return start, end, None


# =============================================================================
# Payer
# =============================================================================


class CollectionInitiateView(APIView):
    """
    POST /api/v1/premiums/collections/

    Sends an STK push to the payer's phone. The response carries the
    correlation token to poll; confirmation arrives later on the callback.

    The payer is the member linked to the signed-in user. Staff may pass
    payer_id to initiate on a member's behalf.

    Response:
        202 Accepted: Push sent, awaiting the payer's PIN
        400 Bad Request: Validation error
        403 Forbidden: No member profile, or payer_id names another member
        502 Bad Gateway: Gateway unreachable or request rejected
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="initiate_collection",
        summary="Initiate premium collection",
        request=InitiateCollectionSerializer,
        responses={
            202: OpenApiResponse(response=CollectionInitiatedSerializer, description="STK push sent"),
            400: OpenApiResponse(description="Validation error"),
            403: OpenApiResponse(description="No member profile, or another member's payer_id"),
            502: OpenApiResponse(description="Gateway unreachable or rejected the request"),
        },
        tags=["Premiums - Collections"],
    )
    def post(self, request):
        serializer = InitiateCollectionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        # payer_id in the body is untrusted. Members pay as themselves;
        # only staff may name another member's payer_id.
        if request.user.is_staff:
            payer_id = data.get("payer_id")
            if payer_id is None:
                return Response(
                    {"payer_id": ["This field is required."]},
                    status=status.HTTP_400_BAD_REQUEST,
                )
        else:
            member = _own_member(request)
            if member is None:
                return _forbidden("No member profile for this account", "MEMBER_PROFILE_REQUIRED")
            if data.get("payer_id") not in (None, member.id):
                return _forbidden("Cannot initiate a payment for another member", "PAYER_MISMATCH")
            payer_id = member.id

        params = InitiateCollectionParams(
            payer_id=payer_id,
            subscription_id=data["subscription_id"],
            amount=data["amount"],
            phone_number=data.get("phone_number") or None,
        )
        if data.get("description"):
            params.description = data["description"]

        result = CollectionService.initiate_collection(params)
        if not result.success:
            return failure_response(result)

        initiated = result.data
        output = CollectionInitiatedSerializer(
            {
                "correlation_token": initiated.correlation_token,
                "checkout_request_id": initiated.checkout_request_id,
                "customer_message": initiated.customer_message,
                "status": initiated.payment.payer_status,
            }
        )
        return Response(output.data, status=status.HTTP_202_ACCEPTED)


class CollectionStatusView(APIView):
    """GET /api/v1/premiums/collections/<token>/"""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_collection_status",
        summary="Get collection status",
        responses={
            200: PaymentStatusSerializer,
            404: OpenApiResponse(description="Unknown correlation token"),
        },
        tags=["Premiums - Collections"],
    )
    def get(self, request, correlation_token):
        result = CollectionService.get_payment_status(correlation_token)
        if not result.success:
            return failure_response(result)
        return Response(PaymentStatusSerializer(result.data).data)


class PaymentHistoryView(generics.ListAPIView):
    """GET /api/v1/premiums/payments/history/ (signed-in member, newest first)"""

    permission_classes = [IsAuthenticated]
    serializer_class = PaymentHistorySerializer

    @extend_schema(
        operation_id="list_payment_history",
        summary="List my payments",
        responses={
            200: PaymentHistorySerializer(many=True),
            403: OpenApiResponse(description="No member profile for this account"),
        },
        tags=["Premiums - Collections"],
    )
    def get(self, request, *args, **kwargs):
        if _own_member(request) is None:
            return _forbidden("No member profile for this account", "MEMBER_PROFILE_REQUIRED")
        return super().get(request, *args, **kwargs)

    def get_queryset(self):
        member = _own_member(self.request)
        if member is None:
            return Payment.objects.none()
        return CollectionService.payment_history(member.id)


# =============================================================================
# Operator: Settlement
# =============================================================================


@extend_schema(tags=["Premiums - Settlement"])
class SettlementListView(generics.ListAPIView):
    """GET /api/v1/premiums/settlements/ (newest period first)"""

    permission_classes = [IsAdminUser]
    serializer_class = SettlementBatchSerializer
    queryset = SettlementBatch.objects.order_by("-period_key")


class SettlementDetailView(APIView):
    """
    GET /api/v1/premiums/settlements/<id>/

    Batch totals, its line items and payout statistics by state.
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="get_settlement",
        summary="Get settlement batch",
        responses={
            200: SettlementBatchDetailSerializer,
            404: OpenApiResponse(description="Batch not found"),
        },
        tags=["Premiums - Settlement"],
    )
    def get(self, request, batch_id):
        batch = (
            SettlementBatch.objects.prefetch_related("line_items__recipient", "line_items__batch")
            .filter(id=batch_id)
            .first()
        )
        if batch is None:
            return Response(
                {"error": "Settlement batch not found", "error_code": "SETTLEMENT_NOT_FOUND"},
                status=status.HTTP_404_NOT_FOUND,
            )

        stats = SettlementService.get_payout_statistics(batch.id)
        serializer = SettlementBatchDetailSerializer(
            batch,
            context={"request": request, "statistics": stats.data if stats.success else None},
        )
        return Response(serializer.data)


class SettlementGenerateView(APIView):
    """
    POST /api/v1/premiums/settlements/generate/

    Response:
        201 Created: Batch generated
        200 OK: Batch already existed for that date
        409 Conflict: The period has not ended yet
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="generate_settlement",
        summary="Generate settlement for a date",
        request=GenerateSettlementSerializer,
        responses={
            200: SettlementBatchSerializer,
            201: SettlementBatchSerializer,
            409: OpenApiResponse(description="Period still open"),
        },
        tags=["Premiums - Settlement"],
    )
    def post(self, request):
        serializer = GenerateSettlementSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = SettlementService.generate_settlement(serializer.validated_data["date"])
        if not result.success:
            return failure_response(result)

        return Response(
            SettlementBatchSerializer(result.data.batch).data,
            status=status.HTTP_201_CREATED if result.data.created else status.HTTP_200_OK,
        )


class SettlementBreakdownView(APIView):
    """GET /api/v1/premiums/settlements/<id>/breakdown/ (commission per recipient)"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="get_settlement_breakdown",
        summary="Commission breakdown by recipient",
        responses={
            200: OpenApiResponse(description="tier1 and tier2 recipient lists"),
            404: OpenApiResponse(description="Batch not found"),
        },
        tags=["Premiums - Settlement"],
    )
    def get(self, request, batch_id):
        result = SettlementService.get_commission_breakdown(batch_id)
        if not result.success:
            return failure_response(result)
        return Response(result.data)


class SettlementSummaryView(APIView):
    """
    GET /api/v1/premiums/settlements/summary/?start=&end=

    Batches in a local date range with combined totals. Defaults to the
    last 30 days.
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="get_settlement_summary",
        summary="Settlement summary for a date range",
        parameters=[
            OpenApiParameter(name="start", type=OpenApiTypes.DATE, required=False),
            OpenApiParameter(name="end", type=OpenApiTypes.DATE, required=False),
        ],
        responses={200: SettlementSummarySerializer},
        tags=["Premiums - Settlement"],
    )
    def get(self, request):
        start, end, errors = _date_range(request.query_params)
        if errors:
            return Response(errors, status=status.HTTP_400_BAD_REQUEST)

        result = SettlementService.get_settlement_summary(start, end)
        if not result.success:
            return failure_response(result)
        return Response(SettlementSummarySerializer(result.data).data)


class SettlementStatsView(APIView):
    """GET /api/v1/premiums/settlements/stats/?days=30"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="get_settlement_stats",
        summary="Rolling settlement and payout totals",
        parameters=[OpenApiParameter(name="days", type=int, required=False)],
        responses={200: OpenApiResponse(description="Totals over the window")},
        tags=["Premiums - Settlement"],
    )
    def get(self, request):
        query = OverallStatsQuerySerializer(data=request.query_params)
        if not query.is_valid():
            return Response(query.errors, status=status.HTTP_400_BAD_REQUEST)

        result = SettlementService.get_overall_stats(query.validated_data["days"])
        if not result.success:
            return failure_response(result)
        return Response(result.data)


# =============================================================================
# Operator: Payouts
# =============================================================================


class PayoutLineItemListView(generics.ListAPIView):
    """GET /api/v1/premiums/payouts/?state=failed&requires_intervention=true"""

    permission_classes = [IsAdminUser]
    serializer_class = PayoutLineItemSerializer

    @extend_schema(
        operation_id="list_payouts",
        summary="List payout line items",
        parameters=[
            OpenApiParameter(name="state", type=str, required=False),
            OpenApiParameter(name="requires_intervention", type=bool, required=False),
        ],
        tags=["Premiums - Payouts"],
    )
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)

    def get_queryset(self):
        filters = PayoutFilterSerializer(data=self.request.query_params)
        filters.is_valid(raise_exception=True)

        queryset = CommissionPayoutLineItem.objects.select_related("recipient", "batch").order_by(
            "-created_at"
        )
        state = filters.validated_data.get("state")
        if state:
            queryset = queryset.filter(state=state)
        flag = filters.validated_data.get("requires_intervention")
        if flag is not None:
            queryset = queryset.filter(requires_intervention=flag == "true")
        return queryset


class PayoutRetryView(APIView):
    """
    POST /api/v1/premiums/payouts/<id>/retry/

    Request body carries the version the operator saw; a concurrent change
    returns 409.
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="retry_payout",
        summary="Retry a failed payout",
        request=VersionedActionSerializer,
        responses={
            200: PayoutLineItemDetailSerializer,
            404: OpenApiResponse(description="Line item not found"),
            409: OpenApiResponse(description="Stale version or not retryable"),
        },
        tags=["Premiums - Payouts"],
    )
    def post(self, request, line_item_id):
        serializer = VersionedActionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = PayoutService.manual_retry(
            line_item_id,
            serializer.validated_data["version"],
            actor=_actor(request),
        )
        if not result.success:
            return failure_response(result)
        return Response(PayoutLineItemDetailSerializer(result.data).data)


class PaymentResolveSplitView(APIView):
    """POST /api/v1/premiums/payments/<id>/resolve-split/"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="resolve_payment_split",
        summary="Resolve an unsplit payment",
        request=VersionedActionSerializer,
        responses={
            200: PaymentSerializer,
            400: OpenApiResponse(description="Split still blocked (rates missing or negative residual)"),
            404: OpenApiResponse(description="Payment not found"),
            409: OpenApiResponse(description="Stale version or payment not unsplit"),
        },
        tags=["Premiums - Payments"],
    )
    def post(self, request, payment_id):
        serializer = VersionedActionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = CallbackReconciler.resolve_unsplit(
            payment_id,
            serializer.validated_data["version"],
            actor=_actor(request),
        )
        if not result.success:
            return failure_response(result)
        return Response(PaymentSerializer(result.data).data)


# =============================================================================
# Recipient
# =============================================================================


class RecipientPayoutListView(generics.ListAPIView):
    """GET /api/v1/premiums/payouts/mine/ (signed-in member's commissions)"""

    permission_classes = [IsAuthenticated]
    serializer_class = RecipientPayoutSerializer

    @extend_schema(
        operation_id="list_my_payouts",
        summary="List my commission payouts",
        responses={
            200: RecipientPayoutSerializer(many=True),
            403: OpenApiResponse(description="No member profile for this account"),
        },
        tags=["Premiums - Payouts"],
    )
    def get(self, request, *args, **kwargs):
        if _own_member(request) is None:
            return _forbidden("No member profile for this account", "MEMBER_PROFILE_REQUIRED")
        return super().get(request, *args, **kwargs)

    def get_queryset(self):
        member = _own_member(self.request)
        if member is None:
            return CommissionPayoutLineItem.objects.none()
        return SettlementService.recipient_payouts(member.id)


class RecipientPayoutSummaryView(APIView):
    """GET /api/v1/premiums/payouts/mine/summary/?start=&end="""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_my_payout_summary",
        summary="Summarise my commission payouts",
        parameters=[
            OpenApiParameter(name="start", type=OpenApiTypes.DATE, required=False),
            OpenApiParameter(name="end", type=OpenApiTypes.DATE, required=False),
        ],
        responses={
            200: OpenApiResponse(description="Earned, paid and pending amounts"),
            403: OpenApiResponse(description="No member profile for this account"),
        },
        tags=["Premiums - Payouts"],
    )
    def get(self, request):
        member = _own_member(request)
        if member is None:
            return _forbidden("No member profile for this account", "MEMBER_PROFILE_REQUIRED")

        start, end, errors = _date_range(request.query_params)
        if errors:
            return Response(errors, status=status.HTTP_400_BAD_REQUEST)

        result = SettlementService.get_recipient_summary(member.id, start, end)
        if not result.success:
            return failure_response(result)
        return Response(result.data)
