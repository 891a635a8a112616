"""
Unit tests for inbound webhook authentication.

Tests cover:
- HMAC-SHA256 over the raw body: accepted, tampered body, wrong secret
- Missing signature header detected before verification
- BigCommerce shared token header
- eBay ECDSA signatures with a cached public key
- eBay endpoint validation challenge

Version: 1.0.0
"""
import base64
import hashlib
import hmac
import json

import pytest
from unittest.mock import AsyncMock

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from platform_bridge.core.exceptions import SignatureVerificationError
from platform_bridge.schemas.canonical import Platform
from platform_bridge.utils.webhook_signatures import (
    BIGCOMMERCE_TOKEN_HEADER,
    EBAY_SIGNATURE_HEADER,
    SHOPIFY_SIGNATURE_HEADER,
    EbaySignatureVerifier,
    HmacSha256Verifier,
    PublicKeyCache,
    SharedTokenVerifier,
    build_verifier_registry,
    compute_hmac_sha256,
    ebay_challenge_response,
    format_pem,
    header_value,
)

pytestmark = pytest.mark.unit

BODY = b'{"customer_id":42}'


def _shopify(secret="S"):
    return HmacSha256Verifier(Platform.SHOPIFY, secret, SHOPIFY_SIGNATURE_HEADER)


# ---------------------------------------------------------------------------
# HMAC
# ---------------------------------------------------------------------------

class TestHmacVerifier:

    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self):
        headers = {SHOPIFY_SIGNATURE_HEADER: compute_hmac_sha256("S", BODY)}
        assert await _shopify("S").verify(BODY, headers) is True

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self):
        headers = {SHOPIFY_SIGNATURE_HEADER: compute_hmac_sha256("S", BODY)}
        assert await _shopify("S-prime").verify(BODY, headers) is False

    @pytest.mark.asyncio
    async def test_flipped_byte_rejected(self):
        headers = {SHOPIFY_SIGNATURE_HEADER: compute_hmac_sha256("S", BODY)}
        tampered = bytearray(BODY)
        tampered[-2] ^= 0x01
        assert await _shopify("S").verify(bytes(tampered), headers) is False

    def test_missing_header_detected(self):
        assert _shopify().has_signature({}) is False

    def test_header_lookup_is_case_insensitive(self):
        headers = {"x-shopify-hmac-sha256": "abc"}
        assert header_value(headers, SHOPIFY_SIGNATURE_HEADER) == "abc"
        assert _shopify().has_signature(headers) is True

    @pytest.mark.asyncio
    async def test_unconfigured_secret_raises(self):
        verifier = HmacSha256Verifier(Platform.WOOCOMMERCE, None, "X-WC-Webhook-Signature")
        with pytest.raises(SignatureVerificationError):
            await verifier.verify(BODY, {"X-WC-Webhook-Signature": "abc"})

    def test_digest_matches_reference(self):
        expected = base64.b64encode(hmac.new(b"S", BODY, hashlib.sha256).digest()).decode()
        assert compute_hmac_sha256("S", BODY) == expected


class TestSharedTokenVerifier:

    @pytest.mark.asyncio
    async def test_matching_token(self):
        verifier = SharedTokenVerifier(Platform.BIGCOMMERCE, "tok")
        assert await verifier.verify(BODY, {BIGCOMMERCE_TOKEN_HEADER: "tok"}) is True

    @pytest.mark.asyncio
    async def test_wrong_token(self):
        verifier = SharedTokenVerifier(Platform.BIGCOMMERCE, "tok")
        assert await verifier.verify(BODY, {BIGCOMMERCE_TOKEN_HEADER: "other"}) is False


# ---------------------------------------------------------------------------
# eBay
# ---------------------------------------------------------------------------

@pytest.fixture
def ebay_key():
    private_key = ec.generate_private_key(ec.SECP256R1())
    pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    # eBay serves the key on one line
    one_line = pem.replace("\n", "")
    return private_key, one_line


def _ebay_header(private_key, body, kid="kid-1"):
    signature = private_key.sign(body, ec.ECDSA(hashes.SHA1()))
    envelope = {
        "alg": "ecdsa",
        "kid": kid,
        "signature": base64.b64encode(signature).decode(),
        "digest": "SHA1",
    }
    return base64.b64encode(json.dumps(envelope).encode()).decode()


class TestEbayVerifier:

    @pytest.mark.asyncio
    async def test_valid_signature(self, ebay_key):
        private_key, pem = ebay_key
        fetch = AsyncMock(return_value=pem)
        verifier = EbaySignatureVerifier(PublicKeyCache(fetch))

        headers = {EBAY_SIGNATURE_HEADER: _ebay_header(private_key, BODY)}
        assert await verifier.verify(BODY, headers) is True
        fetch.assert_awaited_once_with("kid-1")

    @pytest.mark.asyncio
    async def test_tampered_body(self, ebay_key):
        private_key, pem = ebay_key
        verifier = EbaySignatureVerifier(PublicKeyCache(AsyncMock(return_value=pem)))

        headers = {EBAY_SIGNATURE_HEADER: _ebay_header(private_key, BODY)}
        assert await verifier.verify(b'{"customer_id":43}', headers) is False

    @pytest.mark.asyncio
    async def test_malformed_header(self):
        verifier = EbaySignatureVerifier(PublicKeyCache(AsyncMock()))
        assert await verifier.verify(BODY, {EBAY_SIGNATURE_HEADER: "not-base64-json"}) is False

    @pytest.mark.asyncio
    async def test_key_cached_until_ttl(self, ebay_key):
        _, pem = ebay_key
        now = [1000.0]
        fetch = AsyncMock(return_value=pem)
        cache = PublicKeyCache(fetch, ttl=60, clock=lambda: now[0])

        await cache.get("kid-1")
        await cache.get("kid-1")
        assert fetch.await_count == 1

        now[0] += 61
        await cache.get("kid-1")
        assert fetch.await_count == 2

    def test_format_pem_rewraps(self):
        pem = format_pem("-----BEGIN PUBLIC KEY-----" + "A" * 100 + "-----END PUBLIC KEY-----")
        lines = pem.strip().split("\n")
        assert lines[0] == "-----BEGIN PUBLIC KEY-----"
        assert lines[1] == "A" * 64
        assert lines[2] == "A" * 36
        assert lines[-1] == "-----END PUBLIC KEY-----"

    def test_challenge_response(self):
        expected = hashlib.sha256(b"code" + b"token" + b"https://e.test/hook").hexdigest()
        assert ebay_challenge_response("code", "token", "https://e.test/hook") == expected


class TestRegistry:

    def test_amazon_has_no_http_verifier(self, test_settings):
        registry = build_verifier_registry(test_settings)
        assert registry.for_platform(Platform.AMAZON) is None
        assert set(registry.platforms()) == {
            Platform.SHOPIFY, Platform.WOOCOMMERCE, Platform.BIGCOMMERCE, Platform.EBAY,
        }
