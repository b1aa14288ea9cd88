import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from wallets.exceptions import (
    BalanceLimitExceeded,
    IdempotencyConflict,
    InsufficientFunds,
    InvalidTransactionType,
)
from wallets.serializers import (
    TransactionResultSerializer,
    WalletMutationSerializer,
    WalletQuerySerializer,
    WalletSummarySerializer,
)
from wallets.services import LedgerService, WalletService

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 64


class WalletView(APIView):
    """
    GET  /api/wallet: Balance and a page of transaction history.
    POST /api/wallet: Credit or debit the caller's wallet.

    Query params (GET): limit (default 10), offset (default 0)
    Request body (POST): {"amount": <positive number>, "type": "credit"|"debit",
                          "description": <optional>, "reference_id": <optional>}
    Optional header (POST): Idempotency-Key
    """

    def get(self, request, *args, **kwargs):
        query = WalletQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        try:
            summary = WalletService.get_summary(
                user_id=request.user.user_id,
                limit=query.validated_data["limit"],
                offset=query.validated_data["offset"],
            )
        except Exception:
            logger.exception("Failed to fetch wallet: user=%s", request.user.user_id)
            return Response(
                {"error": "Failed to fetch wallet"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        return Response(WalletSummarySerializer(summary).data, status=status.HTTP_200_OK)

    def post(self, request, *args, **kwargs):
        serializer = WalletMutationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        idempotency_key = request.META.get("HTTP_IDEMPOTENCY_KEY")
        if idempotency_key and len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            return Response(
                {"error": "Idempotency-Key must be at most 64 characters."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        try:
            result = LedgerService.apply_transaction(
                user_id=request.user.user_id,
                amount=data["amount"],
                type=data["type"],
                description=data.get("description"),
                reference_id=data.get("reference_id"),
                idempotency_key=idempotency_key,
            )
        except InsufficientFunds:
            return Response(
                {"error": "Insufficient funds"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        except BalanceLimitExceeded as exc:
            return Response(
                {"error": str(exc)},
                status=status.HTTP_400_BAD_REQUEST,
            )
        except InvalidTransactionType as exc:
            return Response(
                {"error": str(exc)},
                status=status.HTTP_400_BAD_REQUEST,
            )
        except IdempotencyConflict as exc:
            return Response(
                {"error": str(exc)},
                status=status.HTTP_409_CONFLICT,
            )
        except Exception:
            logger.exception(
                "Failed to update wallet: user=%s type=%s amount=%s",
                request.user.user_id,
                data["type"],
                data["amount"],
            )
            return Response(
                {"error": "Failed to update wallet"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        return Response(
            TransactionResultSerializer(result).data,
            status=status.HTTP_200_OK,
        )
