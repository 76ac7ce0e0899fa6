"""Domain errors raised by the hotspot services."""

from __future__ import annotations

from typing import Any


class HotspotError(Exception):
    """Base exception for hotspot billing errors."""

    code = "hotspot_error"
    status_code = 500
    public_message = "Request failed"


class InvalidInput(HotspotError):
    """A required parameter is missing or out of range."""

    code = "invalid_input"
    status_code = 400

    @property
    def public_message(self) -> str:
        return str(self) or "Invalid input"


class OrderNotFound(HotspotError):
    code = "order_not_found"
    status_code = 404
    public_message = "Order not found"


class PlanNotFound(HotspotError):
    code = "plan_not_found"
    status_code = 404
    public_message = "Plan not found"


class VerificationMismatch(HotspotError):
    """Provider-verified data disagrees with the order."""

    code = "verification_failed"
    status_code = 409
    public_message = "Payment could not be verified"

    def __init__(
        self,
        message: str,
        *,
        expected: dict[str, Any] | None = None,
        observed: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.expected = expected or {}
        self.observed = observed or {}


class ProviderUnavailable(HotspotError):
    """Transport-level failure talking to a payment provider."""

    code = "provider_unavailable"
    status_code = 503
    public_message = "Payment provider is temporarily unavailable, please retry"


class ProviderNotConfigured(HotspotError):
    code = "provider_not_configured"
    status_code = 503
    public_message = "Payment method is not available"


class ChargeRejected(HotspotError):
    """The provider refused to create the charge."""

    code = "charge_rejected"
    status_code = 402
    public_message = "Payment could not be started, please check your details and retry"


class AccessProvisioningFailed(HotspotError):
    """The order is paid but its RADIUS credentials are not written yet."""

    code = "access_provisioning_pending"
    status_code = 503
    public_message = "Payment received, access is still being activated. Please retry shortly"
