from django.urls import path

from wallets.views import TransactionDetailView, WalletView

urlpatterns = [
    path("wallet", WalletView.as_view(), name="wallet"),
    path(
        "wallet/transactions/<uuid:id>",
        TransactionDetailView.as_view(),
        name="wallet-transaction-detail",
    ),
]
