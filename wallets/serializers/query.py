from rest_framework import serializers


class WalletQuerySerializer(serializers.Serializer):
    """Pagination parameters for the wallet summary."""

    limit = serializers.IntegerField(min_value=1, max_value=100, default=10)
    offset = serializers.IntegerField(min_value=0, default=0)
