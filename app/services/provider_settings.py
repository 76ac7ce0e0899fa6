"""Payment provider credential resolution.

A ``payment_providers`` row wins over environment variables; fields left
empty on the row fall back to the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.payment_provider import PaymentProviderConfig

_ENV_FALLBACKS = {
    "flutterwave": lambda: {
        "secret_key": settings.flutterwave_secret_key,
        "secret_hash": settings.flutterwave_secret_hash,
    },
    "yopayments": lambda: {
        "api_username": settings.yo_api_username,
        "api_password": settings.yo_api_password,
        "webhook_token": settings.yo_webhook_token,
    },
}
_REQUIRED = {
    "flutterwave": ("secret_key",),
    "yopayments": ("api_username", "api_password"),
}
_ENV_ENVIRONMENTS = {
    "flutterwave": lambda: "live",
    "yopayments": lambda: settings.yo_environment,
}


@dataclass
class ProviderCredentials:
    provider_code: str
    environment: str = "test"
    enabled: bool = False
    values: dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: str = "") -> str:
        return self.values.get(key) or default

    @property
    def configured(self) -> bool:
        return all(self.get(key) for key in _REQUIRED.get(self.provider_code, ()))


def resolve_credentials(db: Session | None, provider_code: str) -> ProviderCredentials:
    values = {key: value for key, value in _ENV_FALLBACKS.get(provider_code, dict)().items() if value}
    environment = _ENV_ENVIRONMENTS.get(provider_code, lambda: "test")()
    row = None
    if db is not None:
        row = db.scalars(
            select(PaymentProviderConfig).where(
                PaymentProviderConfig.provider_code == provider_code
            )
        ).first()
    if row is None:
        creds = ProviderCredentials(provider_code, environment, True, values)
        creds.enabled = creds.configured
        return creds
    for key, value in (row.credentials or {}).items():
        if value:
            values[key] = str(value)
    return ProviderCredentials(
        provider_code=provider_code,
        environment=row.environment.value if row.environment else environment,
        enabled=bool(row.is_enabled),
        values=values,
    )
