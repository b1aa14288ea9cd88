from decimal import Decimal

from rest_framework import serializers

from wallets.models import WalletTransaction


class WalletMutationSerializer(serializers.Serializer):
    """Validates credit/debit requests before they reach the ledger."""

    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    type = serializers.ChoiceField(
        choices=WalletTransaction.Type.choices,
        error_messages={
            "invalid_choice": 'Type must be either "credit" or "debit".',
        },
    )
    description = serializers.CharField(
        required=False, allow_blank=True, allow_null=True, max_length=255
    )
    reference_id = serializers.CharField(
        required=False, allow_blank=True, allow_null=True, max_length=64
    )

    def validate_amount(self, value):
        if value <= Decimal("0"):
            raise serializers.ValidationError("Amount must be a positive number.")
        return value
