from rest_framework import serializers

from wallets.serializers.transaction import TransactionSerializer


class PaginationSerializer(serializers.Serializer):
    total = serializers.IntegerField()
    offset = serializers.IntegerField()
    limit = serializers.IntegerField()


class WalletSummarySerializer(serializers.Serializer):
    """Shapes a WalletSummary as {balance, transactions, pagination}."""

    balance = serializers.DecimalField(max_digits=12, decimal_places=2)
    transactions = TransactionSerializer(many=True)
    pagination = serializers.SerializerMethodField()

    def get_pagination(self, summary):
        return PaginationSerializer(
            {"total": summary.total, "offset": summary.offset, "limit": summary.limit}
        ).data
