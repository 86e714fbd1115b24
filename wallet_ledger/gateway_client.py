"""
Payment Gateway Client Module

REST client for the Paystack-style card / mobile-money gateway. Amounts cross
this boundary in minor units (pesewas, cents). Timeouts, transport errors,
5xx and malformed bodies are surfaced as GatewayUnavailable (retryable);
4xx rejections are not retryable. The client never retries and never
touches the ledger.
"""

import httpx
import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .errors import GatewayUnavailable, PaymentNotFound, ValidationError

logger = logging.getLogger("wallet_ledger.gateway")


class GatewayCharge(BaseModel):
    """Result of initializing a charge"""
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


class GatewayChargeStatus(BaseModel):
    """Gateway view of a charge; ``status`` is ``success`` only when paid"""
    reference: str
    status: str
    amount: int  # minor units
    currency: str = "GHS"
    gateway_response: Optional[str] = None
    paid_at: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.status == "success"


class GatewayEnvelope(BaseModel):
    """Outer ``{status, message, data}`` wrapper of every gateway response"""
    status: bool
    message: str = ""
    data: Optional[Dict[str, Any]] = None


class GatewayClient:
    """REST client for the payment gateway"""

    def __init__(
        self,
        base_url: str = "https://api.paystack.co",
        secret_key: str = "",
        timeout: float = 10.0,
        callback_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.callback_url = callback_url
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {secret_key}"},
            transport=transport,
        )

    def create_charge(self, amount_minor: int, currency: str, email: str,
                      metadata: Optional[Dict[str, Any]] = None) -> GatewayCharge:
        """Initialize a charge and return the authorization handle

        Args:
            amount_minor: amount in minor units
            currency: ISO 4217 code
            email: payer email the gateway requires
            metadata: echoed back by the gateway on verification

        Raises:
            GatewayUnavailable: transport error, timeout, 5xx or malformed body
            ValidationError: the gateway rejected the request (4xx)
        """
        body = {
            "email": email,
            "amount": amount_minor,
            "currency": currency,
            "metadata": metadata or {},
        }
        if self.callback_url:
            body["callback_url"] = self.callback_url

        data = self._request("POST", "/transaction/initialize", json=body)
        try:
            return GatewayCharge.model_validate(data)
        except PydanticValidationError as e:
            raise GatewayUnavailable("Malformed gateway charge response") from e

    def get_charge_status(self, reference: str) -> GatewayChargeStatus:
        """Query the gateway for the authoritative charge status

        Raises:
            GatewayUnavailable: transport error, timeout, 5xx or malformed body
            PaymentNotFound: the gateway does not know the reference (400/404)
            ValidationError: any other 4xx rejection
        """
        try:
            data = self._request("GET", f"/transaction/verify/{reference}")
        except ValidationError as e:
            if e.details.get("status_code") in (400, 404):
                raise PaymentNotFound(f"Payment {reference} not found",
                                      details={"gateway_message": e.message}) from e
            raise
        try:
            return GatewayChargeStatus.model_validate(data)
        except PydanticValidationError as e:
            raise GatewayUnavailable("Malformed gateway verification response") from e

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        start = time.time()
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"Gateway {method} {path} timed out after {self.timeout}s")
            raise GatewayUnavailable("Payment gateway timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Gateway connection failed: {e}")
            raise GatewayUnavailable("Payment gateway unreachable") from e

        latency_ms = (time.time() - start) * 1000
        logger.debug(f"Gateway {method} {path} -> {response.status_code} in {latency_ms:.0f}ms")

        if response.status_code >= 500:
            logger.warning(f"Gateway returned {response.status_code} for {method} {path}")
            raise GatewayUnavailable(
                f"Payment gateway returned {response.status_code}",
                details={"status_code": response.status_code}
            )
        if response.status_code >= 400:
            # The request itself was refused; retrying it unchanged cannot succeed
            logger.warning(f"Gateway rejected {method} {path} with {response.status_code}")
            raise ValidationError(
                self._error_message(response) or f"Payment gateway rejected the request ({response.status_code})",
                details={"status_code": response.status_code}
            )

        try:
            envelope = GatewayEnvelope.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise GatewayUnavailable("Malformed gateway response") from e
        if not envelope.status or envelope.data is None:
            raise GatewayUnavailable(envelope.message or "Gateway rejected the request")
        return envelope.data

    @staticmethod
    def _error_message(response: httpx.Response) -> Optional[str]:
        try:
            message = response.json().get("message")
        except (ValueError, AttributeError):
            return None
        return message if isinstance(message, str) else None

    def health_check(self) -> bool:
        """Check if the gateway is reachable"""
        try:
            r = self._client.get("/")
            return r.status_code < 500
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class MockGatewayClient(GatewayClient):
    """In-process gateway for tests; charges succeed unless scripted otherwise"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.statuses: Dict[str, str] = {}
        self.amount_overrides: Dict[str, int] = {}
        self.unavailable = False
        self.create_calls = 0
        self.status_calls = 0
        self._counter = 0

    def create_charge(self, amount_minor: int, currency: str, email: str,
                      metadata: Optional[Dict[str, Any]] = None) -> GatewayCharge:
        self.create_calls += 1
        if self.unavailable:
            raise GatewayUnavailable("Payment gateway unreachable")
        self._counter += 1
        reference = f"mock_ref_{self._counter:06d}"
        self.charges[reference] = {
            "amount": amount_minor,
            "currency": currency,
            "email": email,
            "metadata": dict(metadata or {}),
        }
        return GatewayCharge(
            reference=reference,
            authorization_url=f"https://checkout.example.test/{reference}",
            access_code=f"access_{self._counter:06d}",
        )

    def get_charge_status(self, reference: str) -> GatewayChargeStatus:
        self.status_calls += 1
        if self.unavailable:
            raise GatewayUnavailable("Payment gateway unreachable")
        charge = self.charges.get(reference)
        if charge is None:
            raise PaymentNotFound(f"Payment {reference} not found",
                                  details={"gateway_message": "Transaction reference not found"})
        status = self.statuses.get(reference, "success")
        return GatewayChargeStatus(
            reference=reference,
            status=status,
            amount=self.amount_overrides.get(reference, charge["amount"]),
            currency=charge["currency"],
            gateway_response="Approved" if status == "success" else status.capitalize(),
            metadata=charge["metadata"],
        )

    def set_status(self, reference: str, status: str) -> None:
        """Script the status the gateway reports for a reference"""
        self.statuses[reference] = status

    def health_check(self) -> bool:
        return not self.unavailable

    def history(self) -> List[str]:
        return list(self.charges)
