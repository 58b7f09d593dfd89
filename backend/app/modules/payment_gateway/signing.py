"""Request canonicalization and RSA signing for the Telebirr protocol.

The provider signs and verifies over a single sorted ``key=value`` string
built from a flattened payload:

1. Transport fields (timestamp, nonce_str, method, version, ...) are copied
   as strings, except the fields in EXCLUDED_FIELDS.
2. Every key of the nested ``biz_content`` object is hoisted into the same
   flat namespace.
3. Keys are sorted, values URL-decoded and joined as ``k=v`` with ``&``.

Nothing here performs I/O, so the canonical form can be tested on its own.
"""

import base64
import secrets
import string
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping
from urllib.parse import unquote

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from app.modules.payment_gateway.errors import CanonicalizationError, SignatureInvalid

SIGN_TYPE = "SHA256WithRSA"
SCHEMA_VERSION = "1.0"
BIZ_CONTENT_KEY = "biz_content"

# Never part of the signed string
EXCLUDED_FIELDS = frozenset({
    "sign",
    "sign_type",
    "header",
    "refund_info",
    "openType",
    "raw_request",
})

NONCE_LENGTH = 32
NONCE_ALPHABET = string.ascii_letters + string.digits


def generate_nonce(length: int = NONCE_LENGTH) -> str:
    """Return a cryptographically random alphanumeric nonce."""
    return "".join(secrets.choice(NONCE_ALPHABET) for _ in range(length))


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flatten_for_sign(payload: Mapping[str, Any]) -> dict[str, str]:
    """Flatten a payload into the single-level map that gets signed.

    Raises:
        CanonicalizationError: a business field shares its name with a
            transport field, or biz_content is not an object.
    """
    flat: dict[str, str] = {}
    hoisted: dict[str, str] = {}

    for key, value in payload.items():
        if key in EXCLUDED_FIELDS or value is None:
            continue
        if key == BIZ_CONTENT_KEY:
            if not isinstance(value, Mapping):
                raise CanonicalizationError("biz_content must be an object")
            for biz_key, biz_value in value.items():
                if biz_key in EXCLUDED_FIELDS or biz_value is None:
                    continue
                hoisted[biz_key] = _stringify(biz_value)
            continue
        flat[key] = _stringify(value)

    collisions = sorted(set(flat) & set(hoisted))
    if collisions:
        raise CanonicalizationError(
            f"biz_content fields collide with transport fields: {', '.join(collisions)}"
        )

    flat.update(hoisted)
    return flat


def build_sign_string(flat: Mapping[str, str]) -> str:
    """Join a flattened map into the canonical signing string."""
    return "&".join(f"{key}={unquote(flat[key])}" for key in sorted(flat))


def canonicalize(payload: Mapping[str, Any]) -> str:
    """Flatten and join a payload in one step."""
    return build_sign_string(flatten_for_sign(payload))


def normalize_pem(key: str, kind: str) -> bytes:
    """Turn a key taken from the environment into PEM bytes.

    Accepts escaped newlines and bare base64 bodies without armour.

    Args:
        key: Key material
        kind: "PRIVATE KEY" or "PUBLIC KEY"
    """
    text = key.strip().replace("\\n", "\n").replace("\r\n", "\n")
    if "-----BEGIN" not in text:
        body = "".join(text.split())
        lines = [body[i:i + 64] for i in range(0, len(body), 64)]
        text = f"-----BEGIN {kind}-----\n" + "\n".join(lines) + f"\n-----END {kind}-----"
    return text.encode()


class RequestSigner:
    """Signs canonical strings with RSA-PSS / SHA-256."""

    def __init__(self, private_key: rsa.RSAPrivateKey):
        self._private_key = private_key

    @classmethod
    def from_pem(cls, pem: str) -> "RequestSigner":
        key = serialization.load_pem_private_key(
            normalize_pem(pem, "PRIVATE KEY"), password=None
        )
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError("Telebirr private key must be an RSA key")
        return cls(key)

    def sign(self, message: str) -> str:
        """Return the base64 RSA-PSS signature of message."""
        signature = self._private_key.sign(
            message.encode("utf-8"),
            padding.PSS(
                mgf=padding.MGF1(hashes.SHA256()),
                salt_length=padding.PSS.DIGEST_LENGTH,
            ),
            hashes.SHA256(),
        )
        return base64.b64encode(signature).decode("ascii")

    def sign_payload(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of payload with sign and sign_type appended."""
        signed = dict(payload)
        signed["sign"] = self.sign(canonicalize(payload))
        signed["sign_type"] = SIGN_TYPE
        return signed


class SignatureVerifier:
    """Verifies provider signatures with RSA-SHA256.

    PSS is what the provider uses for its own requests; PKCS#1 v1.5 is
    accepted as well since notifications from older merchant apps use it.
    """

    def __init__(self, public_key: rsa.RSAPublicKey):
        self._public_key = public_key

    @classmethod
    def from_pem(cls, pem: str) -> "SignatureVerifier":
        key = serialization.load_pem_public_key(normalize_pem(pem, "PUBLIC KEY"))
        if not isinstance(key, rsa.RSAPublicKey):
            raise ValueError("Telebirr public key must be an RSA key")
        return cls(key)

    def verify(self, message: str, signature_b64: str) -> None:
        """Verify signature_b64 over message.

        Raises:
            SignatureInvalid: on a mismatch or any decoding problem
        """
        try:
            signature = base64.b64decode(signature_b64, validate=True)
        except (ValueError, TypeError) as e:
            raise SignatureInvalid("Signature is not valid base64") from e

        data = message.encode("utf-8")
        paddings = (
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.AUTO),
            padding.PKCS1v15(),
        )
        for candidate in paddings:
            try:
                self._public_key.verify(signature, data, candidate, hashes.SHA256())
                return
            except InvalidSignature:
                continue
        raise SignatureInvalid("Signature does not match payload")

    def verify_payload(self, payload: Mapping[str, Any]) -> None:
        """Verify a received payload carrying its own sign/sign_type."""
        sign_type = payload.get("sign_type")
        if sign_type != SIGN_TYPE:
            raise SignatureInvalid(f"Unsupported sign_type: {sign_type!r}")
        signature = payload.get("sign")
        if not isinstance(signature, str) or not signature:
            raise SignatureInvalid("Missing signature")
        try:
            message = canonicalize(payload)
        except CanonicalizationError as e:
            raise SignatureInvalid(str(e)) from e
        self.verify(message, signature)


@dataclass
class PreorderBizContent:
    """Business content of a ``payment.preorder`` request (schema 1.0)."""
    appid: str
    merch_code: str
    merch_order_id: str
    title: str
    total_amount: str
    trans_currency: str
    notify_url: str
    redirect_url: str
    trade_type: str = "Checkout"
    timeout_express: str = "120m"
    business_type: str = "BuyGoods"
    callback_info: str = "From web"


@dataclass
class SignedEnvelope:
    """Transport envelope wrapping business content."""
    biz_content: PreorderBizContent
    timestamp: str
    nonce_str: str = field(default_factory=generate_nonce)
    method: str = "payment.preorder"
    version: str = SCHEMA_VERSION

    def to_payload(self) -> dict[str, Any]:
        """Unsigned wire representation."""
        return {
            "timestamp": self.timestamp,
            "nonce_str": self.nonce_str,
            "method": self.method,
            "version": self.version,
            BIZ_CONTENT_KEY: asdict(self.biz_content),
        }


@dataclass
class CheckoutQuery:
    """Fields signed into the checkout redirect URL."""
    appid: str
    merch_code: str
    prepay_id: str
    timestamp: str
    nonce_str: str = field(default_factory=generate_nonce)

    def to_payload(self) -> dict[str, str]:
        return asdict(self)


__all__ = [
    "SIGN_TYPE",
    "SCHEMA_VERSION",
    "EXCLUDED_FIELDS",
    "generate_nonce",
    "flatten_for_sign",
    "build_sign_string",
    "canonicalize",
    "normalize_pem",
    "RequestSigner",
    "SignatureVerifier",
    "PreorderBizContent",
    "SignedEnvelope",
    "CheckoutQuery",
]
