from django.contrib import admin

from wallets.models import Wallet, WalletTransaction


class ReadOnlyAdminMixin:
    """
    Balances and ledger entries only change through LedgerService, so the
    admin can browse them but never add, edit or delete.
    """

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Wallet)
class WalletAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("user_id", "balance", "created_at", "updated_at")
    search_fields = ("user_id",)


@admin.register(WalletTransaction)
class WalletTransactionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "wallet",
        "sequence",
        "type",
        "amount",
        "balance_after",
        "reference_id",
        "created_at",
    )
    list_filter = ("type",)
    search_fields = ("wallet__user_id", "reference_id")
    date_hierarchy = "created_at"
