from rest_framework import serializers

from wallets.models import WalletTransaction


class TransactionSerializer(serializers.ModelSerializer):
    """Read-only serializer for ledger entries."""

    user_id = serializers.UUIDField(source="wallet_id", read_only=True)

    class Meta:
        model = WalletTransaction
        fields = (
            "id",
            "user_id",
            "sequence",
            "amount",
            "type",
            "description",
            "reference_id",
            "balance_after",
            "created_at",
        )
        read_only_fields = fields


class TransactionResultSerializer(serializers.Serializer):
    transaction_id = serializers.UUIDField()
    user_id = serializers.UUIDField()
    previous_balance = serializers.DecimalField(max_digits=12, decimal_places=2)
    new_balance = serializers.DecimalField(max_digits=12, decimal_places=2)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    type = serializers.CharField()
    description = serializers.CharField()
    reference_id = serializers.CharField()
    created_at = serializers.DateTimeField()
