"""
HMAC signing.

Outbound jobs are signed once, at creation: the canonical JSON of the payload
is hashed with the job's secret and the result is written into the job's
headers. Later payload changes never re-sign.

Poll and ack requests from pull consumers are authenticated with the same
per-job secret over short canonical strings (see ``poll_string_to_sign`` and
``ack_string_to_sign``).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from collections.abc import Mapping
from typing import Any, Optional, Protocol

from pgqueue.core.codec.serde import canonical_json
from pgqueue.core.models.job import (
    SigningAlgorithm,
    SigningConfig,
    SigningEncoding,
    SigningStyle,
)

_DIGESTS = {
    SigningAlgorithm.MD5: hashlib.md5,
    SigningAlgorithm.SHA1: hashlib.sha1,
    SigningAlgorithm.SHA224: hashlib.sha224,
    SigningAlgorithm.SHA256: hashlib.sha256,
    SigningAlgorithm.SHA384: hashlib.sha384,
    SigningAlgorithm.SHA512: hashlib.sha512,
}


class SecretLookup(Protocol):
    async def resolve(self, name: str) -> bytes: ...


def compute_signature(
    message: str | bytes,
    secret: bytes,
    *,
    algorithm: SigningAlgorithm = SigningAlgorithm.SHA256,
    encoding: SigningEncoding = SigningEncoding.HEX,
    style: SigningStyle = SigningStyle.PLAIN,
) -> str:
    data = message.encode('utf-8') if isinstance(message, str) else message
    digest = hmac.new(secret, data, _DIGESTS[algorithm]).digest()

    if encoding == SigningEncoding.BASE64:
        encoded = base64.b64encode(digest).decode('ascii')
    else:
        encoded = digest.hex()

    if style == SigningStyle.PREFIXED:
        return f'{algorithm.value}={encoded}'
    return encoded


async def resolve_signing_secret(
    signing: SigningConfig | None, resolver: Optional[SecretLookup],
) -> bytes | None:
    """Direct secret wins; otherwise look the vault name up; otherwise no key."""
    if signing is None:
        return None
    if signing.secret:
        return signing.secret
    if signing.vault:
        if resolver is None:
            raise LookupError(
                f"signing vault '{signing.vault}' set but no secret resolver configured"
            )
        return await resolver.resolve(signing.vault)
    return None


async def sign_job_headers(
    payload: Mapping[str, Any],
    headers: Mapping[str, str],
    signing: SigningConfig,
    resolver: Optional[SecretLookup] = None,
) -> dict[str, str]:
    """
    Return ``headers`` with the payload signature added under ``signing.header``.

    Without a secret the headers come back unchanged.
    """
    signed = dict(headers)
    secret = await resolve_signing_secret(signing, resolver)
    if not secret:
        return signed

    signed[signing.header] = compute_signature(
        canonical_json(payload),
        secret,
        algorithm=signing.algorithm,
        encoding=signing.encoding,
        style=signing.style,
    )
    return signed


def poll_string_to_sign(owner: str, timestamp: str, caller_id: str | None = None) -> str:
    return f'{owner}{timestamp}{caller_id or ""}POLL'


def ack_string_to_sign(job_id: str) -> str:
    return f'{job_id}ACK'


def verify_hex_hmac(message: str, secret: bytes, supplied: str) -> bool:
    """Constant-time check of a hex sha256 HMAC supplied by a pull consumer."""
    expected = compute_signature(message, secret)
    return hmac.compare_digest(expected, supplied.strip().lower())
