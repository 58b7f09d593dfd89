"""Telebirr payment gateway implementation.

Order creation flow:
1. Exchange the app secret for a short-lived token (never cached)
2. POST a signed ``payment.preorder`` envelope to obtain a prepay id
3. Sign a second, smaller field set into the checkout redirect URL

Callbacks carry their own ``sign``/``sign_type`` fields and are verified
against the provider public key with the same canonicalization rule.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl, urlencode

import httpx

from app.core.config import Settings
from app.core.logging import log_error, log_warning
from app.modules.payment_gateway.errors import (
    GatewayProtocolError,
    GatewayRejected,
    GatewayUnavailable,
    SignatureInvalid,
)
from app.modules.payment_gateway.interface import (
    CheckoutMode,
    CheckoutRequest,
    CheckoutResult,
    PaymentGatewayInterface,
    RedirectCheckout,
    VerifiedEvent,
)
from app.modules.payment_gateway.models import GatewayProvider
from app.modules.payment_gateway.signing import (
    CheckoutQuery,
    PreorderBizContent,
    RequestSigner,
    SignatureVerifier,
    SignedEnvelope,
)

logger = logging.getLogger(__name__)

# Characters the provider rejects in an order title
_FORBIDDEN_TITLE_CHARS = re.compile(r"[~`!#$%^*()\-=+|/<>?;:\"\[\]{}\\&]")
_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


@dataclass
class TelebirrConfig:
    """Credentials and endpoints for the Telebirr client."""
    fabric_app_id: str
    app_secret: str
    merchant_app_id: str
    merchant_code: str
    private_key: str
    public_key: str
    notify_url: str
    mode: str = "sandbox"
    currency: str = "ETB"
    timeout_seconds: float = 30.0
    sandbox_insecure_tls: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "TelebirrConfig":
        return cls(
            fabric_app_id=settings.TELEBIRR_FABRIC_APP_ID,
            app_secret=settings.TELEBIRR_APP_SECRET,
            merchant_app_id=settings.TELEBIRR_MERCHANT_APP_ID,
            merchant_code=settings.TELEBIRR_MERCHANT_CODE,
            private_key=settings.TELEBIRR_PRIVATE_KEY,
            public_key=settings.TELEBIRR_PUBLIC_KEY,
            notify_url=settings.TELEBIRR_NOTIFY_URL,
            mode=settings.TELEBIRR_MODE,
            currency=settings.TELEBIRR_CURRENCY,
            timeout_seconds=settings.TELEBIRR_TIMEOUT_SECONDS,
            sandbox_insecure_tls=settings.TELEBIRR_SANDBOX_INSECURE_TLS,
        )


def decode_json_body(response: httpx.Response, provider: str) -> dict[str, Any]:
    """Decode a provider response in two explicit stages.

    Stage one reads the raw text; stage two parses it as a JSON object.
    A stage-two failure raises GatewayProtocolError carrying the raw body.
    """
    raw_body = response.text
    try:
        parsed = json.loads(raw_body)
    except ValueError as e:
        raise GatewayProtocolError(
            f"{provider} returned a non-JSON response",
            raw_body=raw_body,
            provider=provider,
        ) from e
    if not isinstance(parsed, dict):
        raise GatewayProtocolError(
            f"{provider} returned a JSON {type(parsed).__name__}, expected an object",
            raw_body=raw_body,
            provider=provider,
        )
    return parsed


class TelebirrGateway(PaymentGatewayInterface):
    """Telebirr signed-REST gateway.

    Supports hosted (redirect) checkout only.
    """

    provider = GatewayProvider.TELEBIRR.value
    supported_modes = frozenset({CheckoutMode.HOSTED})

    SANDBOX_URL = "https://196.188.120.3:38443/apiaccess/payment/gateway"
    PRODUCTION_URL = "https://api.ethiotelebirr.et"

    SANDBOX_CHECKOUT_URL = "https://196.188.120.3:38443/payment/web/paygate"
    PRODUCTION_CHECKOUT_URL = "https://portal.ethiotelebirr.et/payment/web/paygate"

    TOKEN_PATH = "/payment/v1/token"
    PREORDER_PATH = "/payment/v1/merchant/preOrder"

    def __init__(
        self,
        config: TelebirrConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if config.mode not in ("sandbox", "production"):
            raise ValueError(f"Unknown Telebirr mode: {config.mode!r}")
        self.config = config
        self._transport = transport
        self._signer = RequestSigner.from_pem(config.private_key)
        self._verifier = (
            SignatureVerifier.from_pem(config.public_key) if config.public_key else None
        )
        # Relaxed TLS is decided once here and only ever in sandbox mode
        self._verify_tls = not (self.is_sandbox and config.sandbox_insecure_tls)
        if config.sandbox_insecure_tls and not self.is_sandbox:
            log_warning(
                logger,
                "Ignoring TELEBIRR_SANDBOX_INSECURE_TLS in production mode",
                provider=self.provider,
            )

    @property
    def is_sandbox(self) -> bool:
        return self.config.mode == "sandbox"

    @property
    def verify_tls(self) -> bool:
        return self._verify_tls

    @property
    def base_url(self) -> str:
        return self.SANDBOX_URL if self.is_sandbox else self.PRODUCTION_URL

    @property
    def checkout_base_url(self) -> str:
        return self.SANDBOX_CHECKOUT_URL if self.is_sandbox else self.PRODUCTION_CHECKOUT_URL

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
            verify=self._verify_tls,
            transport=self._transport,
        )

    @staticmethod
    def _timestamp() -> str:
        return str(int(time.time()))

    async def _post(
        self,
        client: httpx.AsyncClient,
        path: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> dict[str, Any]:
        """POST JSON and decode the reply, mapping failures to gateway errors."""
        try:
            response = await client.post(path, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(
                f"Telebirr request to {path} timed out", provider=self.provider
            ) from e
        except httpx.HTTPError as e:
            raise GatewayUnavailable(
                f"Telebirr request to {path} failed: {e}", provider=self.provider
            ) from e

        if 400 <= response.status_code < 500:
            raise GatewayRejected(
                f"Telebirr rejected {path}: {response.text}",
                status_code=response.status_code,
                provider=self.provider,
            )
        if response.status_code >= 500:
            raise GatewayUnavailable(
                f"Telebirr returned {response.status_code} for {path}",
                provider=self.provider,
            )
        return decode_json_body(response, self.provider)

    async def fetch_token(self, client: httpx.AsyncClient) -> str:
        """Exchange the app secret for a bearer token."""
        data = await self._post(
            client,
            self.TOKEN_PATH,
            {"appSecret": self.config.app_secret},
            {"X-APP-Key": self.config.fabric_app_id},
        )
        token = data.get("token")
        if not token:
            raise GatewayProtocolError(
                "Telebirr token response has no token",
                raw_body=json.dumps(data),
                provider=self.provider,
            )
        return token

    def build_preorder(self, request: CheckoutRequest) -> dict[str, Any]:
        """Build the signed preorder payload for a checkout request."""
        title = _FORBIDDEN_TITLE_CHARS.sub("", request.description or f"Order {request.order_id}")
        envelope = SignedEnvelope(
            biz_content=PreorderBizContent(
                appid=self.config.merchant_app_id,
                merch_code=self.config.merchant_code,
                merch_order_id=_NON_ALPHANUMERIC.sub("", request.order_id),
                title=title,
                total_amount=f"{request.amount:.2f}",
                trans_currency=request.currency or self.config.currency,
                notify_url=self.config.notify_url,
                redirect_url=request.return_url,
            ),
            timestamp=self._timestamp(),
        )
        return self._signer.sign_payload(envelope.to_payload())

    async def create_preorder(
        self,
        client: httpx.AsyncClient,
        request: CheckoutRequest,
        token: str,
    ) -> str:
        """Submit the preorder and return the provider prepay id."""
        data = await self._post(
            client,
            self.PREORDER_PATH,
            self.build_preorder(request),
            {"X-APP-Key": self.config.fabric_app_id, "Authorization": token},
        )
        biz_content = data.get("biz_content")
        prepay_id = biz_content.get("prepay_id") if isinstance(biz_content, dict) else None
        if not prepay_id:
            raise GatewayProtocolError(
                "Telebirr preorder response has no prepay_id",
                raw_body=json.dumps(data),
                provider=self.provider,
            )
        return prepay_id

    def build_checkout_url(self, prepay_id: str) -> str:
        """Sign the redirect fields into a checkout URL."""
        query = CheckoutQuery(
            appid=self.config.merchant_app_id,
            merch_code=self.config.merchant_code,
            prepay_id=prepay_id,
            timestamp=self._timestamp(),
        )
        signed = self._signer.sign_payload(query.to_payload())
        return f"{self.checkout_base_url}?{urlencode(signed)}&version=1.0&trade_type=Checkout"

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """Create a Telebirr hosted checkout.

        Args:
            request: Checkout data

        Returns:
            RedirectCheckout with the prepay id as session id
        """
        if not self.supports_mode(request.mode):
            raise GatewayRejected(
                f"Telebirr does not support {request.mode.value} checkout",
                provider=self.provider,
            )
        try:
            async with self._client() as client:
                token = await self.fetch_token(client)
                prepay_id = await self.create_preorder(client, request, token)
        except GatewayProtocolError as e:
            log_error(
                logger,
                "Telebirr returned an unusable response",
                e,
                order_id=request.order_id,
                raw_body=e.raw_body,
            )
            raise

        return RedirectCheckout(
            session_id=prepay_id,
            checkout_url=self.build_checkout_url(prepay_id),
        )

    @staticmethod
    def parse_callback_body(raw_body: bytes) -> dict[str, Any]:
        """Parse a notification body: JSON, or form-encoded as a fallback."""
        text = raw_body.decode("utf-8")
        try:
            payload = json.loads(text)
        except ValueError:
            payload = dict(parse_qsl(text, keep_blank_values=True))
        if not isinstance(payload, dict) or not payload:
            raise ValueError("Callback body is not an object")
        return payload

    def verify_callback(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> VerifiedEvent:
        """Verify a Telebirr notification.

        Any failure, including a missing public key, is SignatureInvalid.
        """
        if self._verifier is None:
            raise SignatureInvalid("Telebirr public key is not configured")
        try:
            payload = self.parse_callback_body(raw_body)
            self._verifier.verify_payload(payload)
        except SignatureInvalid:
            raise
        except Exception as e:
            raise SignatureInvalid(f"Telebirr callback verification error: {e}") from e

        return VerifiedEvent(
            gateway=self.provider,
            external_order_id=payload.get("merch_order_id"),
            outcome=str(payload.get("trade_status", "")),
            external_tx_id=payload.get("trans_id"),
            event_type="trade_status",
            amount=_parse_amount(payload.get("total_amount")),
        )

