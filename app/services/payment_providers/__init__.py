from app.services.exceptions import ProviderNotConfigured
from app.services.payment_providers.base import (  # noqa: F401
    ChargeHandle,
    ProviderAdapter,
    TransactionStatus,
    VerifiedTransaction,
    WebhookEvent,
)
from app.services.payment_providers.flutterwave import FlutterwaveAdapter
from app.services.payment_providers.yopayments import YoPaymentsAdapter

_ADAPTERS: dict[str, ProviderAdapter] = {
    FlutterwaveAdapter.code: FlutterwaveAdapter(),
    YoPaymentsAdapter.code: YoPaymentsAdapter(),
}


def get_adapter(code: str) -> ProviderAdapter:
    adapter = _ADAPTERS.get(code)
    if adapter is None:
        raise ProviderNotConfigured(f"Unknown payment provider: {code}")
    return adapter


def register_adapter(adapter: ProviderAdapter) -> None:
    _ADAPTERS[adapter.code] = adapter


def provider_codes() -> list[str]:
    return sorted(_ADAPTERS)
