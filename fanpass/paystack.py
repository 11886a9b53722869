from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, TypedDict
import hashlib
import hmac
import json
import logging

import httpx

from .errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

# normalized charge outcomes
CHARGE_SUCCESS = "success"
CHARGE_FAILED = "failed"
CHARGE_PENDING = "pending"

# gateway statuses that end a payment for good
_FAILED_STATUSES = {"failed", "abandoned", "reversed"}


@dataclass
class Charge:
    reference: str
    outcome: str            # success | failed | pending
    amount: int             # kobo, as reported by the gateway
    channel: Optional[str] = None
    gateway_status: str = ""
    message: str = ""


class InitializeResult(TypedDict):
    reference: str
    authorization_url: str
    access_code: str


class ResolvedAccount(TypedDict):
    account_number: str
    account_name: str


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "charge.success" | anything else we acknowledge and ignore
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    @abstractmethod
    def event_charge(self, event: dict) -> Charge:
        ...

    @abstractmethod
    async def verify_transaction(self, reference: str) -> Charge: ...

    @abstractmethod
    async def initialize_transaction(
        self, *, reference: str, email: str, amount: int,
        metadata: dict, callback_url: Optional[str] = None,
    ) -> InitializeResult: ...

    @abstractmethod
    async def resolve_account(
        self, account_number: str, bank_code: str
    ) -> Optional[ResolvedAccount]: ...


def normalize_status(status: Optional[str]) -> str:
    s = (status or "").lower()
    if s == "success":
        return CHARGE_SUCCESS
    if s in _FAILED_STATUSES:
        return CHARGE_FAILED
    # ongoing, pending, queued, processing, unknown...
    return CHARGE_PENDING


def _charge_from(data: dict, fallback_ref: str = "") -> Charge:
    try:
        amount = int(data.get("amount") or 0)
    except (TypeError, ValueError):
        amount = 0
    status = str(data.get("status") or "")
    return Charge(
        reference=str(data.get("reference") or fallback_ref),
        outcome=normalize_status(status),
        amount=amount,
        channel=data.get("channel"),
        gateway_status=status,
        message=str(data.get("gateway_response") or ""),
    )


# ----------------------------
# Paystack implementation
# ----------------------------
class PaystackAdapter(PaymentAdapter):
    def __init__(self, http: httpx.AsyncClient, secret_key: str,
                 base_url: str = "https://api.paystack.co",
                 timeout_seconds: float = 10.0) -> None:
        self.http = http
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_seconds

    @property
    def _auth(self) -> dict:
        return {"Authorization": f"Bearer {self.secret_key}"}

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.secret_key.encode(), payload,
                        hashlib.sha512).hexdigest()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-paystack-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise ValidationError("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Invalid event")
        return event

    def event_kind(self, event: dict) -> str:
        return str(event.get("event", ""))

    def event_charge(self, event: dict) -> Charge:
        data = event.get("data") or {}
        if not isinstance(data, dict) or not data.get("reference"):
            raise ValidationError("missing reference")
        return _charge_from(data)

    async def _request(self, method: str, path: str, **kw) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = await self.http.request(
                method, url, headers=self._auth, timeout=self.timeout, **kw
            )
        except httpx.TimeoutException as e:
            logger.warning("paystack %s %s timed out", method, path)
            raise UpstreamError("Payment gateway timed out") from e
        except httpx.TransportError as e:
            logger.warning("paystack %s %s unreachable: %s", method, path, e)
            raise UpstreamError("Payment gateway unreachable") from e

        if resp.status_code >= 500:
            logger.warning("paystack %s %s -> %s", method, path,
                           resp.status_code)
            raise UpstreamError(f"Payment gateway error {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise UpstreamError("Payment gateway sent invalid JSON") from e
        if not isinstance(body, dict):
            raise UpstreamError("Payment gateway sent an unexpected body")
        body["_http_status"] = resp.status_code
        return body

    async def verify_transaction(self, reference: str) -> Charge:
        body = await self._request("GET", f"/transaction/verify/{reference}")
        data = body.get("data")
        if not body.get("status") or not isinstance(data, dict):
            # unknown to the gateway (yet): nothing is decided
            logger.info("paystack verify %s: %s", reference,
                        body.get("message"))
            return Charge(reference=reference, outcome=CHARGE_PENDING,
                          amount=0, message=str(body.get("message") or ""))
        return _charge_from(data, fallback_ref=reference)

    async def initialize_transaction(
        self, *, reference: str, email: str, amount: int,
        metadata: dict, callback_url: Optional[str] = None,
    ) -> InitializeResult:
        payload = {
            "reference": reference,
            "email": email,
            "amount": amount,
            "currency": "NGN",
            "metadata": metadata,
        }
        if callback_url:
            payload["callback_url"] = callback_url
        body = await self._request("POST", "/transaction/initialize",
                                   json=payload)
        data = body.get("data") or {}
        if not body.get("status") or not data.get("authorization_url"):
            raise UpstreamError(
                f"Payment initialization failed: {body.get('message', '')}",
                extra={"reference": reference},
            )
        return {
            "reference": data.get("reference", reference),
            "authorization_url": data["authorization_url"],
            "access_code": data.get("access_code", ""),
        }

    async def resolve_account(
        self, account_number: str, bank_code: str
    ) -> Optional[ResolvedAccount]:
        body = await self._request(
            "GET", "/bank/resolve",
            params={"account_number": account_number,
                    "bank_code": bank_code},
        )
        data = body.get("data") or {}
        if not body.get("status") or not data.get("account_name"):
            return None
        return {
            "account_number": data.get("account_number", account_number),
            "account_name": data["account_name"],
        }
