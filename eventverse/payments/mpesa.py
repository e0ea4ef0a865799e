from __future__ import annotations
import base64
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from .. import settings
from ..errors import MalformedPayloadError, ProviderError, ValidationError
from ..helpers import Clock, normalize_phone, now_ts
from ..infra.timings import timeit
from ..model.db import MM_CHECKOUT
from ..model.tokencache import TokenCache
from .base import Failed, PaymentOutcome, Pending, Succeeded

# Daraja answers a query for an unfinished push with HTTP 500 and this code
IN_PROGRESS_CODE = "500.001.1001"
TOKEN_REFRESH_MARGIN = 5 * 60


def settlement_amount(
    total_cents: int, currency: str,
    rates: Optional[Dict[str, float]] = None,
) -> int:
    """Whole shillings to charge for ``total_cents`` of ``currency``.

    Converted with the configured rate and rounded up; unknown currencies
    are charged at par.
    """
    rates = settings.EXCHANGE_RATES if rates is None else rates
    rate = rates.get(currency.upper())
    if rate is None:
        logger.warning("no exchange rate for {} -> KES, using 1", currency)
        rate = 1
    amount = Decimal(total_cents) / 100 * Decimal(str(rate))
    return int(math.ceil(amount))


def _expect(value: Any, kind: type, where: str) -> Any:
    if not isinstance(value, kind):
        raise MalformedPayloadError(
            f"{where} must be {'an object' if kind is dict else 'a list'}"
        )
    return value


def callback_metadata(callback: Dict[str, Any]) -> Dict[str, Any]:
    meta = _expect(callback.get("CallbackMetadata") or {}, dict,
                    "CallbackMetadata")
    items = _expect(meta.get("Item") or [], list, "CallbackMetadata.Item")
    values = {
        i.get("Name"): i.get("Value") for i in items if isinstance(i, dict)
    }
    return {
        "amount": float(values.get("Amount") or 0),
        "receipt": str(values.get("MpesaReceiptNumber") or ""),
        "transaction_date": str(values.get("TransactionDate") or ""),
        "phone": str(values.get("PhoneNumber") or ""),
    }


def parse_callback(body: Any) -> PaymentOutcome:
    """Normalize an STK callback body into a PaymentOutcome."""
    if not isinstance(body, dict):
        raise MalformedPayloadError("callback body must be an object")
    if "Body" in body:
        envelope = _expect(body["Body"], dict, "Body")
        callback = _expect(envelope.get("stkCallback"), dict,
                            "Body.stkCallback")
    else:
        callback = body
    checkout_id = callback.get("CheckoutRequestID")
    code = callback.get("ResultCode")
    if not checkout_id or code is None:
        raise MalformedPayloadError(
            "callback missing CheckoutRequestID or ResultCode"
        )
    try:
        code = int(code)
    except (TypeError, ValueError):
        raise MalformedPayloadError(f"invalid ResultCode: {code!r}")
    desc = str(callback.get("ResultDesc") or "")
    extra: Dict[str, Any] = {
        "merchant_request_id": callback.get("MerchantRequestID"),
        "result_code": code,
        "result_desc": desc,
    }

    if code == 0 and callback.get("CallbackMetadata"):
        meta = callback_metadata(callback)
        extra.update(meta)
        result = Succeeded(
            receipt=meta["receipt"] or None, amount=meta["amount"]
        )
    elif code == 0:
        result = Pending(reason="success reported without metadata",
                         code=str(code))
    else:
        result = Failed(reason=desc, code=str(code))
    return PaymentOutcome(
        column=MM_CHECKOUT, correlation_id=checkout_id, result=result,
        extra=extra,
    )


class MpesaClient:
    """Daraja STK Push over a shared httpx client."""

    def __init__(
        self, http: httpx.AsyncClient, cache: TokenCache, *,
        base_url: Optional[str] = None,
        consumer_key: Optional[str] = None,
        consumer_secret: Optional[str] = None,
        shortcode: Optional[str] = None,
        passkey: Optional[str] = None,
        callback_url: Optional[str] = None,
        clock: Clock = now_ts,
    ) -> None:
        self.http = http
        self.cache = cache
        self.base_url = (base_url or settings.MPESA_BASE_URL).rstrip("/")
        self.consumer_key = consumer_key or settings.MPESA_CONSUMER_KEY
        self.consumer_secret = (
            consumer_secret or settings.MPESA_CONSUMER_SECRET
        )
        self.shortcode = shortcode or settings.MPESA_SHORTCODE
        self.passkey = passkey or settings.MPESA_PASSKEY
        self.callback_url = callback_url or settings.MPESA_CALLBACK_URL
        self.clock = clock

    def _require(self, value: Optional[str], name: str) -> str:
        if not value:
            raise RuntimeError(
                f"Missing required M-Pesa environment variable: {name}"
            )
        return value

    def timestamp(self) -> str:
        return datetime.fromtimestamp(
            self.clock(), tz=timezone.utc
        ).strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        shortcode = self._require(self.shortcode, "MPESA_SHORTCODE")
        passkey = self._require(self.passkey, "MPESA_PASSKEY")
        return base64.b64encode(
            f"{shortcode}{passkey}{timestamp}".encode()
        ).decode()

    # ----------------------------
    # OAuth
    # ----------------------------
    async def access_token(self) -> str:
        token = await self.cache.get()
        if token:
            return token

        key = self._require(self.consumer_key, "MPESA_CONSUMER_KEY")
        secret = self._require(self.consumer_secret, "MPESA_CONSUMER_SECRET")
        try:
            async with timeit("mpesa.oauth"):
                resp = await self.http.get(
                    f"{self.base_url}/oauth/v1/generate",
                    params={"grant_type": "client_credentials"},
                    auth=(key, secret),
                    timeout=15.0,
                )
            if resp.status_code in (401, 403):
                raise ProviderError(
                    "Invalid M-Pesa API credentials. Please check your "
                    "MPESA_CONSUMER_KEY and MPESA_CONSUMER_SECRET.",
                    code=str(resp.status_code), provider="mpesa",
                )
            if resp.status_code >= 400:
                raise self._http_error(resp)
            data = resp.json()
            token = data.get("access_token")
            if not token:
                raise ProviderError(
                    "Failed to obtain M-Pesa access token", provider="mpesa"
                )
        except (ProviderError, httpx.HTTPError, ValueError) as e:
            await self.cache.clear()
            if isinstance(e, ProviderError):
                raise
            raise self._transport_error(e) from e

        expires_in = float(data.get("expires_in") or 3600)
        await self.cache.put(
            token, max(0.0, expires_in - TOKEN_REFRESH_MARGIN)
        )
        return token

    # ----------------------------
    # STK Push
    # ----------------------------
    async def stk_push(
        self, *, amount: int, phone: str, reference: str,
        description: str = "Event Ticket Purchase",
        callback_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        if amount <= 0:
            raise ValidationError("Amount must be a positive number")
        msisdn = normalize_phone(phone)
        if msisdn is None:
            raise ValidationError("Phone number must be in format 2547XXXXXXXX")

        token = await self.access_token()
        ts = self.timestamp()
        shortcode = self._require(self.shortcode, "MPESA_SHORTCODE")
        payload = {
            "BusinessShortCode": shortcode,
            "Password": self.password(ts),
            "Timestamp": ts,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": msisdn,
            "PartyB": shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": callback_url or self._require(
                self.callback_url, "MPESA_CALLBACK_URL"
            ),
            "AccountReference": reference[:12],
            "TransactionDesc": description[:20] or "Event Ticket",
        }
        data = await self._post(
            "/mpesa/stkpush/v1/processrequest", payload, token, timeout=20.0,
            kind="mpesa.stk_push",
        )
        if str(data.get("ResponseCode")) != "0":
            raise ProviderError(
                data.get("CustomerMessage")
                or data.get("ResponseDescription")
                or "Failed to initiate M-Pesa payment",
                code=str(data.get("ResponseCode")),
                provider="mpesa",
            )
        if not data.get("CheckoutRequestID"):
            raise ProviderError(
                "M-Pesa response missing CheckoutRequestID", provider="mpesa"
            )
        return data

    async def stk_query(self, checkout_id: str) -> PaymentOutcome:
        if not checkout_id:
            raise ValidationError("checkoutRequestId is required")
        token = await self.access_token()
        ts = self.timestamp()
        payload = {
            "BusinessShortCode": self._require(
                self.shortcode, "MPESA_SHORTCODE"
            ),
            "Password": self.password(ts),
            "Timestamp": ts,
            "CheckoutRequestID": checkout_id,
        }
        try:
            data = await self._post(
                "/mpesa/stkpushquery/v1/query", payload, token,
                timeout=15.0, kind="mpesa.stk_query",
            )
        except ProviderError as e:
            if e.code == IN_PROGRESS_CODE:
                return PaymentOutcome(
                    column=MM_CHECKOUT, correlation_id=checkout_id,
                    result=Pending(reason=e.description, code=e.code),
                )
            raise

        code = str(data.get("ResultCode", ""))
        desc = str(data.get("ResultDesc") or "")
        if code == "0":
            # the query response carries no receipt number
            result = Succeeded()
        elif code == "":
            result = Pending(reason=desc or "no result yet")
        else:
            result = Failed(reason=desc, code=code)
        return PaymentOutcome(
            column=MM_CHECKOUT, correlation_id=checkout_id, result=result,
            extra={"result_code": code, "result_desc": desc},
        )

    # ----------------------------
    # transport
    # ----------------------------
    async def _post(self, path: str, payload: Dict[str, Any], token: str,
                    *, timeout: float, kind: str) -> Dict[str, Any]:
        try:
            async with timeit(kind):
                resp = await self.http.post(
                    f"{self.base_url}{path}",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=timeout,
                )
        except httpx.HTTPError as e:
            raise self._transport_error(e) from e
        if resp.status_code >= 400:
            raise self._http_error(resp)
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(
                "Malformed M-Pesa API response", provider="mpesa"
            ) from e

    @staticmethod
    def _http_error(resp: httpx.Response) -> ProviderError:
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        status = resp.status_code
        code = data.get("errorCode") or str(status)
        message = (
            data.get("errorMessage")
            or data.get("error_description")
            or data.get("message")
        )
        if status == 429:
            return ProviderError(
                "M-Pesa API rate limit exceeded. Please wait a moment and "
                "try again.",
                code=code, retryable=True, provider="mpesa",
            )
        if status == 403:
            return ProviderError(
                "M-Pesa API access forbidden. Please check your API "
                "credentials.",
                code=code, provider="mpesa",
            )
        if status == 500 and code != IN_PROGRESS_CODE:
            return ProviderError(
                message or "M-Pesa API server error. Please try again later.",
                code=code, provider="mpesa",
            )
        return ProviderError(
            message or f"M-Pesa API error ({status})",
            code=code, provider="mpesa",
        )

    @staticmethod
    def _transport_error(e: Exception) -> ProviderError:
        if isinstance(e, httpx.TimeoutException):
            return ProviderError(
                "M-Pesa API request timeout. Please check your internet "
                "connection and try again.",
                code="timeout", provider="mpesa",
            )
        return ProviderError(
            f"M-Pesa request error: {e}", code="transport", provider="mpesa"
        )
