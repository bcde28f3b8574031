"""Stripe REST client for credit checkout sessions."""

from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from hairsim.services.exceptions import PaymentProcessorError
from hairsim.services.payments.packages import CreditPackage

STRIPE_API_BASE = "https://api.stripe.com/v1"

# Checkout sessions stay open for 30 minutes
CHECKOUT_EXPIRY_SECONDS = 30 * 60


@dataclass(frozen=True)
class CheckoutSession:
    """The subset of a Stripe Checkout Session this backend reads."""

    id: str
    url: Optional[str]
    payment_status: str
    status: Optional[str] = None
    amount_total: int = 0
    currency: str = "usd"
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "CheckoutSession":
        return cls(
            id=data["id"],
            url=data.get("url"),
            payment_status=data.get("payment_status") or "unpaid",
            status=data.get("status"),
            amount_total=data.get("amount_total") or 0,
            currency=data.get("currency") or "usd",
            metadata=dict(data.get("metadata") or {}),
        )


class StripeClient:
    """Checkout client using the Stripe HTTP API."""

    def __init__(
        self,
        secret_key: str,
        client_url: str,
        base_url: str = STRIPE_API_BASE,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Stripe client.

        Args:
            secret_key: Stripe secret API key (from STRIPE_SECRET_KEY env var)
            client_url: Frontend origin used for success and cancel redirects
            base_url: API root, overridable for tests
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.secret_key = secret_key
        self.client_url = client_url.rstrip("/")
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self.headers = {"Authorization": f"Bearer {secret_key}"}

    async def create_checkout_session(
        self, user_id: str, package: CreditPackage, now: int
    ) -> CheckoutSession:
        """Open a one-off payment checkout for a credit package.

        Args:
            user_id: Buyer, stored in session metadata
            package: Credit package being purchased
            now: Current UNIX time, used for the expiry timestamp

        Returns:
            CheckoutSession with the hosted checkout URL

        Raises:
            PaymentProcessorError: Stripe not configured or the API call failed
        """
        form = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": package.currency,
            "line_items[0][price_data][unit_amount]": str(package.price_cents),
            "line_items[0][price_data][product_data][name]": package.name,
            "line_items[0][price_data][product_data][description]": (
                f"{package.credits} AI hairstyle generations"
            ),
            "success_url": (
                f"{self.client_url}/simulation?payment=success"
                "&session_id={CHECKOUT_SESSION_ID}"
            ),
            "cancel_url": f"{self.client_url}/simulation?payment=cancelled",
            "client_reference_id": user_id,
            "metadata[userId]": user_id,
            "metadata[packageId]": package.id,
            "metadata[credits]": str(package.credits),
            "expires_at": str(now + CHECKOUT_EXPIRY_SECONDS),
        }
        data = await self._request("POST", "/checkout/sessions", data=form)
        return CheckoutSession.from_api(data)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        """Fetch the current state of a checkout session.

        Raises:
            PaymentProcessorError: Stripe not configured or the API call failed
        """
        data = await self._request("GET", f"/checkout/sessions/{session_id}")
        return CheckoutSession.from_api(data)

    async def _request(
        self, method: str, path: str, data: Optional[dict[str, str]] = None
    ) -> dict[str, Any]:
        if not self.secret_key:
            raise PaymentProcessorError("Payment system not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", headers=self.headers, data=data
                )
        except httpx.TimeoutException as e:
            raise PaymentProcessorError(f"Request timeout after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise PaymentProcessorError(f"Network error: {e}") from e

        if response.status_code >= 400:
            try:
                error = response.json().get("error", {})
            except ValueError:
                error = {}
            raise PaymentProcessorError(
                error.get("message") or f"Stripe API error ({response.status_code})",
                statusCode=response.status_code,
                stripeCode=error.get("code"),
            )

        return response.json()
