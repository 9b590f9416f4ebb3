"""Webhook signature verification for the supported payment providers.

Every provider signs its deliveries with an HMAC over a shared secret, but
each one feeds the HMAC a different byte string:

* CoinPayments IPN: HMAC-SHA512 over the ``application/x-www-form-urlencoded``
  body exactly as posted. Header ``HMAC``.
* NowPayments: HMAC-SHA512 over the JSON body re-serialized with its
  top-level keys sorted, in JavaScript ``JSON.stringify`` formatting.
  Header ``x-nowpayments-sig``.
* Coinbase Commerce: HMAC-SHA256 over the raw JSON body exactly as posted.
  Header ``X-CC-Webhook-Signature``.
* Direct on-chain notifier: HMAC-SHA256, sent as ``sha256=<hex>`` in
  ``X-Crypto-Signature``. Either the raw body or its compact re-serialization
  (``JSON.stringify`` of the parsed body) is accepted as the signed input.

These rules are wire contracts fixed by the providers. Feeding one provider's
canonicalization to another's signature always produces a mismatch, so each
rule lives in its own function.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any
from urllib.parse import quote

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    """Payment providers that can deliver webhooks to the gateway."""

    COINPAYMENTS = "coinpayments"
    NOWPAYMENTS = "nowpayments"
    COINBASE_COMMERCE = "coinbase-commerce"
    DIRECT_CRYPTO = "direct-crypto"


class CanonicalizationError(ValueError):
    """The payload cannot be turned into the provider's signing input."""


@dataclass(frozen=True)
class SignatureScheme:
    """How one provider turns a delivery into an HMAC input and where it puts the result."""

    header: str
    digest: Callable[[], Any]
    canonicalize: Callable[[bytes], bytes]
    prefix: str = ""
    alternate: Callable[[bytes], bytes] | None = None
    """A second accepted signing input, tried when the first does not match."""


# ---------------------------------------------------------------------------
# Canonicalization rules
# ---------------------------------------------------------------------------


def _raw_body(raw_body: bytes) -> bytes:
    return raw_body


def _js_number(value: int | float) -> str:
    if isinstance(value, bool):
        raise TypeError("bool is not a number")
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        # JSON.stringify renders NaN and Infinity as null
        return "null"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    text = repr(value)
    if "e" not in text:
        return text
    # JavaScript stays positional down to 1e-6; Python switches at 1e-4
    if 1e-6 <= abs(value) < 1e21:
        return format(Decimal(text), "f")
    # Python writes 1e-07 where JavaScript writes 1e-7
    mantissa, exponent = text.split("e")
    sign = "-" if exponent.startswith("-") else "+"
    return f"{mantissa}e{sign}{int(exponent.lstrip('+-'))}"


def canonical_json(value: Any) -> str:
    """Serialize *value* the way JavaScript's ``JSON.stringify`` does.

    Key order is preserved as given; no whitespace is emitted; non-ASCII
    characters are written verbatim.
    """
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, int | float):
        return _js_number(value)
    if isinstance(value, Mapping):
        items = (f"{json.dumps(str(k), ensure_ascii=False)}:{canonical_json(v)}" for k, v in value.items())
        return "{" + ",".join(items) + "}"
    if isinstance(value, list | tuple):
        return "[" + ",".join(canonical_json(v) for v in value) + "]"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def sorted_json(raw_body: bytes) -> bytes:
    """NowPayments signing input: the body object with its top-level keys sorted."""
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CanonicalizationError("body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise CanonicalizationError("body is not a JSON object")
    ordered = {key: payload[key] for key in sorted(payload)}
    return canonical_json(ordered).encode("utf-8")


def compact_json(raw_body: bytes) -> bytes:
    """The body re-serialized as ``JSON.stringify`` writes the parsed object: compact, key order kept."""
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CanonicalizationError("body is not valid JSON") from exc
    return canonical_json(payload).encode("utf-8")


def encode_form_body(fields: Mapping[str, Any]) -> str:
    """Build an IPN-style form body, percent-encoding like ``encodeURIComponent``."""
    safe = "-_.!~*'()"
    return "&".join(f"{quote(str(key), safe=safe)}={quote(str(value), safe=safe)}" for key, value in fields.items())


SCHEMES: dict[Provider, SignatureScheme] = {
    Provider.COINPAYMENTS: SignatureScheme(header="hmac", digest=hashlib.sha512, canonicalize=_raw_body),
    Provider.NOWPAYMENTS: SignatureScheme(header="x-nowpayments-sig", digest=hashlib.sha512, canonicalize=sorted_json),
    Provider.COINBASE_COMMERCE: SignatureScheme(
        header="x-cc-webhook-signature", digest=hashlib.sha256, canonicalize=_raw_body
    ),
    Provider.DIRECT_CRYPTO: SignatureScheme(
        header="x-crypto-signature",
        digest=hashlib.sha256,
        canonicalize=_raw_body,
        prefix="sha256=",
        alternate=compact_json,
    ),
}


# ---------------------------------------------------------------------------
# Signing and verification
# ---------------------------------------------------------------------------


def signature_header(provider: Provider) -> str:
    """Name of the (lower-cased) HTTP header carrying *provider*'s signature."""
    return SCHEMES[provider].header


def compute_signature(provider: Provider, raw_body: bytes | str, secret: str) -> str:
    """Return the hex digest *provider* would send for *raw_body*, without any prefix.

    Raises:
        CanonicalizationError: if the body cannot be canonicalized for this provider.
    """
    scheme = SCHEMES[provider]
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    message = scheme.canonicalize(raw_body)
    return hmac.new(secret.encode("utf-8"), message, scheme.digest).hexdigest()


def format_signature(provider: Provider, digest: str) -> str:
    """Render a hex digest the way *provider* puts it in its header."""
    return f"{SCHEMES[provider].prefix}{digest}"


def verify(provider: Provider, raw_body: bytes | str, received_signature: str | None, secret: str | None) -> bool:
    """Check *received_signature* against the signature recomputed from *raw_body*.

    Never raises. Returns False when the secret is not configured, when no
    signature was received, or when the body cannot be canonicalized. The hex
    comparison is case-insensitive and constant-time.
    """
    if not secret:
        logger.debug("No webhook secret configured for %s; verification unavailable", provider.value)
        return False
    if not received_signature:
        return False

    scheme = SCHEMES[provider]
    candidate = received_signature.strip()
    if scheme.prefix:
        if not candidate.lower().startswith(scheme.prefix):
            return False
        candidate = candidate[len(scheme.prefix) :]
    received = candidate.lower().encode("utf-8")

    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    for canonicalize in (scheme.canonicalize, scheme.alternate):
        if canonicalize is None:
            continue
        try:
            message = canonicalize(raw_body)
        except CanonicalizationError as exc:
            logger.info("Cannot canonicalize %s payload for verification: %s", provider.value, exc)
            continue
        expected = hmac.new(secret.encode("utf-8"), message, scheme.digest).hexdigest()
        if hmac.compare_digest(expected.encode("ascii"), received):
            return True
    return False
