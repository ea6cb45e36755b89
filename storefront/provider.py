from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, TypedDict
import logging
import uuid

import httpx

from .config import Settings
from .errors import (
    ConfigurationError, ProviderError, ProviderTimeout, ProviderUnavailable,
)
from .helpers import now_ts, to_iso

logger = logging.getLogger(__name__)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class InvoiceItem(TypedDict):
    name: str
    price: int
    quantity: int


class InvoiceRequest(TypedDict):
    external_id: str
    payer_email: str
    description: str
    amount: int
    currency: str
    invoice_duration: int
    success_redirect_url: str
    failure_redirect_url: str
    items: List[InvoiceItem]


class InvoiceResult(TypedDict):
    invoice_id: str
    invoice_url: str
    status: str
    expiry_date: Optional[str]


class PaymentAdapter(ABC):
    name = "abstract"

    # raise ConfigurationError before any network traffic
    @abstractmethod
    def ensure_configured(self) -> None: ...

    @abstractmethod
    async def create_invoice(
            self, http: httpx.AsyncClient, request: InvoiceRequest
    ) -> InvoiceResult: ...


# ----------------------------
# Xendit implementation
# ----------------------------
class XenditAdapter(PaymentAdapter):
    name = "xendit"

    def __init__(self, *, secret_key: Optional[str], api_url: str,
                 timeout: float) -> None:
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def ensure_configured(self) -> None:
        if not self.secret_key:
            raise ConfigurationError("XENDIT_SECRET_KEY not configured")

    async def create_invoice(
            self, http: httpx.AsyncClient, request: InvoiceRequest
    ) -> InvoiceResult:
        self.ensure_configured()
        try:
            resp = await http.post(
                f"{self.api_url}/v2/invoices",
                json=request,
                # Basic base64("<secret>:")
                auth=(self.secret_key, ""),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(
                f"invoice request for {request['external_id']} timed out"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(
                f"invoice request for {request['external_id']} failed: {e}"
            ) from e

        try:
            body: Dict[str, Any] = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if not resp.is_success:
            logger.error(
                "Xendit rejected invoice %s: HTTP %s %s",
                request["external_id"], resp.status_code, body,
            )
            raise ProviderError(
                body.get("message")
                or "Failed to create invoice at payment provider.",
                status_code=resp.status_code,
                error_code=body.get("error_code"),
            )

        invoice_id = body.get("id")
        invoice_url = body.get("invoice_url")
        if not invoice_id or not invoice_url:
            raise ProviderError(
                "Payment provider returned an incomplete invoice.",
                status_code=502,
            )
        return {
            "invoice_id": str(invoice_id),
            "invoice_url": str(invoice_url),
            "status": str(body.get("status") or "PENDING"),
            "expiry_date": body.get("expiry_date"),
        }


# ----------------------------
# MockPay implementation (local development)
# ----------------------------
class MockPay(PaymentAdapter):
    name = "mock"

    def __init__(self, *, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def ensure_configured(self) -> None:
        return None

    async def create_invoice(
            self, http: httpx.AsyncClient, request: InvoiceRequest
    ) -> InvoiceResult:
        invoice_id = f"mock_{uuid.uuid4().hex}"
        return {
            "invoice_id": invoice_id,
            "invoice_url": f"{self.base_url}/mockpay/{invoice_id}",
            "status": "PENDING",
            "expiry_date": to_iso(now_ts() + request["invoice_duration"]),
        }


def mock_event(payment: Dict[str, Any], status: str) -> Dict[str, Any]:
    """Provider-shaped invoice callback body for a stored payment."""
    event = {
        "id": payment["invoice_id"],
        "external_id": payment["external_id"],
        "status": status,
        "amount": payment["amount"],
        "currency": payment["currency"],
        "updated": to_iso(now_ts()),
    }
    if status in ("PAID", "SETTLED"):
        event["paid_amount"] = payment["amount"]
        event["payment_method"] = "MOCKPAY"
    return event


def new_adapter(settings: Settings) -> PaymentAdapter:
    if settings.payment_provider == "mock":
        return MockPay(base_url=settings.public_base_url)
    if settings.payment_provider == "xendit":
        return XenditAdapter(
            secret_key=settings.xendit_secret_key,
            api_url=settings.xendit_api_url,
            timeout=settings.provider_timeout,
        )
    raise RuntimeError(
        f"unknown payment provider {settings.payment_provider!r}"
    )
