from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from wallets.models import WalletTransaction
from wallets.serializers import TransactionSerializer
from wallets.services import WalletService


class TransactionDetailView(APIView):
    """GET /api/wallet/transactions/<id>: Retrieve one of the caller's transactions."""

    def get(self, request, id, *args, **kwargs):
        try:
            tx = WalletService.get_transaction(request.user.user_id, id)
        except WalletTransaction.DoesNotExist:
            return Response(
                {"error": "Transaction not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        return Response(TransactionSerializer(tx).data, status=status.HTTP_200_OK)
