"""AWS Signature Version 4 request signing.

Only the header-based flavour is implemented (no presigned URLs, no chunked
payload signing), which is all the streaming invoke endpoint needs.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import parse_qsl, quote

ALGORITHM = "AWS4-HMAC-SHA256"


@dataclass(frozen=True)
class AwsCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str | None = None


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def signing_key(secret_access_key: str, date_stamp: str, region: str, service: str) -> bytes:
    k_date = _hmac(("AWS4" + secret_access_key).encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def canonical_uri(path: str) -> str:
    # The path is re-encoded as sent, so "%3A" in a model id becomes "%253A".
    return quote(path or "/", safe="/~")


def canonical_query(query: str) -> str:
    if not query:
        return ""
    pairs = parse_qsl(query, keep_blank_values=True)
    encoded = sorted((quote(k, safe="-_.~"), quote(v, safe="-_.~")) for k, v in pairs)
    return "&".join(f"{k}={v}" for k, v in encoded)


def _normalize_header_value(value: str) -> str:
    return " ".join(value.strip().split())


def canonical_request(
    method: str,
    path: str,
    query: str,
    headers: dict[str, str],
    payload_hash: str,
) -> tuple[str, str]:
    """Return ``(canonical_request, signed_headers)`` for lower-cased ``headers``."""
    names = sorted(headers)
    canonical_headers = "".join(f"{name}:{_normalize_header_value(headers[name])}\n" for name in names)
    signed_headers = ";".join(names)
    request = "\n".join([
        method.upper(),
        canonical_uri(path),
        canonical_query(query),
        canonical_headers,
        signed_headers,
        payload_hash,
    ])
    return request, signed_headers


def sign_request(
    *,
    method: str,
    host: str,
    path: str,
    query: str = "",
    headers: dict[str, str] | None = None,
    payload_hash: str,
    region: str,
    service: str,
    credentials: AwsCredentials,
    timestamp: datetime | None = None,
) -> dict[str, str]:
    """Compute the signature headers for one request.

    Returns the headers to add to the outgoing request: ``x-amz-date``,
    ``x-amz-security-token`` (temporary credentials only) and ``authorization``.
    ``host`` and every header passed in are signed.
    """
    now = (timestamp or datetime.now(UTC)).astimezone(UTC)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = now.strftime("%Y%m%d")

    added: dict[str, str] = {"x-amz-date": amz_date}
    if credentials.session_token:
        added["x-amz-security-token"] = credentials.session_token

    to_sign = {k.lower(): v for k, v in (headers or {}).items()}
    to_sign["host"] = host
    to_sign.update(added)

    request, signed_headers = canonical_request(method, path, query, to_sign, payload_hash)
    scope = f"{date_stamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join([ALGORITHM, amz_date, scope, sha256_hex(request.encode("utf-8"))])
    key = signing_key(credentials.secret_access_key, date_stamp, region, service)
    signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    added["authorization"] = (
        f"{ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return added
