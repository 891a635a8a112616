"""
Inbound webhook authentication, one scheme per platform.

- Shopify, WooCommerce: base64 HMAC-SHA256 of the raw body in a header
- BigCommerce: no body signature; hooks are registered with a secret
  header which is compared in constant time
- eBay: X-EBAY-SIGNATURE carries an ECDSA signature whose public key is
  fetched from the Notification API by key id and cached
- Amazon: SP-API delivers notifications to SQS/EventBridge only, so there
  is no HTTP scheme

Verifiers work on the raw, unparsed body. A missing signature header is
reported by has_signature() so callers can reject before verifying.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Awaitable, Callable, Dict, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from platform_bridge.core.exceptions import SignatureVerificationError
from platform_bridge.schemas.canonical import Platform

logger = logging.getLogger("webhook_signatures")

SHOPIFY_SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"
WOOCOMMERCE_SIGNATURE_HEADER = "X-WC-Webhook-Signature"
BIGCOMMERCE_TOKEN_HEADER = "X-Bridge-Webhook-Token"
EBAY_SIGNATURE_HEADER = "X-EBAY-SIGNATURE"

PUBLIC_KEY_CACHE_TTL = 3600  # 1 hour


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works for plain dicts too."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


def compute_hmac_sha256(secret: str, body: bytes) -> str:
    """Base64-encoded HMAC-SHA256 digest of body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class WebhookVerifier:
    """Base verifier: knows its header; subclasses implement verify()."""

    platform: Platform
    signature_header: str

    def has_signature(self, headers: Mapping[str, str]) -> bool:
        return bool(header_value(headers, self.signature_header))

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        raise NotImplementedError


class HmacSha256Verifier(WebhookVerifier):
    def __init__(self, platform: Platform, secret: Optional[str], signature_header: str):
        self.platform = platform
        self.signature_header = signature_header
        self._secret = secret

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        provided = header_value(headers, self.signature_header)
        if not provided:
            return False
        if not self._secret:
            raise SignatureVerificationError(
                f"no webhook secret configured for {self.platform.value}", platform=self.platform.value
            )
        expected = compute_hmac_sha256(self._secret, raw_body)
        return hmac.compare_digest(expected.encode("ascii"), provided.strip().encode("utf-8"))


class SharedTokenVerifier(WebhookVerifier):
    def __init__(self, platform: Platform, token: Optional[str], header: str = BIGCOMMERCE_TOKEN_HEADER):
        self.platform = platform
        self.signature_header = header
        self._token = token

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        provided = header_value(headers, self.signature_header)
        if not provided:
            return False
        if not self._token:
            raise SignatureVerificationError(
                f"no webhook token configured for {self.platform.value}", platform=self.platform.value
            )
        return hmac.compare_digest(self._token.encode("utf-8"), provided.strip().encode("utf-8"))


# ---------------------------------------------------------------------------
# eBay
# ---------------------------------------------------------------------------

def format_pem(key: str) -> str:
    """eBay returns PEM keys without line breaks; re-wrap them for the loader."""
    body = (
        key.replace("-----BEGIN PUBLIC KEY-----", "")
        .replace("-----END PUBLIC KEY-----", "")
        .replace("\n", "")
        .replace("\r", "")
        .strip()
    )
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return "-----BEGIN PUBLIC KEY-----\n" + "\n".join(lines) + "\n-----END PUBLIC KEY-----\n"


class PublicKeyCache:
    """Key-id to PEM cache with TTL, refilled through an async fetcher."""

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[str]],
        ttl: float = PUBLIC_KEY_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch = fetch
        self._ttl = ttl
        self._clock = clock
        self._keys: Dict[str, tuple] = {}

    async def get(self, kid: str) -> str:
        cached = self._keys.get(kid)
        now = self._clock()
        if cached and now - cached[1] < self._ttl:
            return cached[0]
        pem = await self._fetch(kid)
        self._keys[kid] = (pem, now)
        logger.info("ebay public key cached kid=%s", kid)
        return pem


def decode_ebay_signature_header(value: str) -> dict:
    """X-EBAY-SIGNATURE is base64 JSON: {alg, kid, signature, digest}."""
    try:
        decoded = json.loads(base64.b64decode(value))
    except (binascii.Error, ValueError) as exc:
        raise SignatureVerificationError("malformed X-EBAY-SIGNATURE header", platform="ebay") from exc
    if not isinstance(decoded, dict) or not decoded.get("kid") or not decoded.get("signature"):
        raise SignatureVerificationError("incomplete X-EBAY-SIGNATURE header", platform="ebay")
    return decoded


class EbaySignatureVerifier(WebhookVerifier):
    platform = Platform.EBAY
    signature_header = EBAY_SIGNATURE_HEADER

    _DIGESTS = {"SHA1": hashes.SHA1, "SHA256": hashes.SHA256}

    def __init__(self, keys: PublicKeyCache):
        self._keys = keys

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        value = header_value(headers, self.signature_header)
        if not value:
            return False
        try:
            envelope = decode_ebay_signature_header(value)
        except SignatureVerificationError as exc:
            logger.info("ebay signature rejected: %s", exc)
            return False

        digest_cls = self._DIGESTS.get(str(envelope.get("digest", "SHA1")).upper())
        if digest_cls is None:
            logger.info("ebay signature rejected: unsupported digest=%s", envelope.get("digest"))
            return False

        pem = await self._keys.get(envelope["kid"])
        try:
            public_key = load_pem_public_key(format_pem(pem).encode("ascii"))
            signature = base64.b64decode(envelope["signature"])
            public_key.verify(signature, raw_body, ec.ECDSA(digest_cls()))
        except (InvalidSignature, ValueError, TypeError, binascii.Error) as exc:
            logger.info("ebay signature rejected kid=%s error=%s", envelope["kid"], type(exc).__name__)
            return False
        return True


def ebay_challenge_response(challenge_code: str, verification_token: str, endpoint: str) -> str:
    """Response to eBay's endpoint validation GET: sha256(code + token + endpoint)."""
    digest = hashlib.sha256()
    digest.update(challenge_code.encode("utf-8"))
    digest.update(verification_token.encode("utf-8"))
    digest.update(endpoint.encode("utf-8"))
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class VerifierRegistry:
    """Platform to verifier lookup; platforms without HTTP webhooks are absent."""

    def __init__(self, verifiers: Mapping[Platform, WebhookVerifier]):
        self._verifiers = dict(verifiers)

    def for_platform(self, platform: Platform) -> Optional[WebhookVerifier]:
        return self._verifiers.get(platform)

    def platforms(self) -> list:
        return list(self._verifiers)


def build_verifier(platform: Platform, settings, transport=None) -> Optional[WebhookVerifier]:
    if platform == Platform.SHOPIFY:
        return HmacSha256Verifier(platform, settings.shopify_api_secret, SHOPIFY_SIGNATURE_HEADER)
    if platform == Platform.WOOCOMMERCE:
        return HmacSha256Verifier(platform, settings.woocommerce_webhook_secret, WOOCOMMERCE_SIGNATURE_HEADER)
    if platform == Platform.BIGCOMMERCE:
        return SharedTokenVerifier(platform, settings.bigcommerce_webhook_token)
    if platform == Platform.EBAY:
        # Lazy import: circular dependency avoidance
        from platform_bridge.adapters.ebay import EbayNotificationKeyClient

        key_client = EbayNotificationKeyClient(settings, transport=transport)
        return EbaySignatureVerifier(PublicKeyCache(key_client.get_public_key))
    return None


def build_verifier_registry(settings, transport=None) -> VerifierRegistry:
    verifiers = {}
    for platform in Platform:
        verifier = build_verifier(platform, settings, transport=transport)
        if verifier is not None:
            verifiers[platform] = verifier
    return VerifierRegistry(verifiers)
