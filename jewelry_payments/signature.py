"""Request signing shared by outbound gateway calls and inbound callbacks.

The signed message binds the HTTP method, a SHA-512 hash of the exact body
bytes, the content type, the ``Date`` header and the request path::

    POST
    <sha512 hex of body>
    application/json; charset=utf-8
    Tue, 07 Oct 2025 10:00:00 GMT
    /api/v3/transaction/<api key>/debit

and is authenticated with HMAC-SHA512 under the shared secret, base64
encoded. The body must be hashed as transmitted: callers serialize once
and send those same bytes.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import Dict, Optional

from jewelry_payments.errors import ErrorCode, SignatureError

CONTENT_TYPE = "application/json; charset=utf-8"


def body_hash(body: bytes) -> str:
    return hashlib.sha512(body).hexdigest()


def canonical_message(method: str, body: bytes, content_type: str, timestamp: str, request_path: str) -> str:
    return "\n".join([method.upper(), body_hash(body), content_type, timestamp, request_path])


def sign(method: str, body: bytes, content_type: str, timestamp: str, request_path: str, secret: str) -> str:
    message = canonical_message(method, body, content_type, timestamp, request_path)
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512).digest()
    return base64.b64encode(digest).decode("ascii")


def verify(
    method: str,
    body: bytes,
    content_type: Optional[str],
    timestamp: Optional[str],
    request_path: str,
    secret: str,
    signature: Optional[str],
    max_age: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    """Raise ``SignatureError`` unless ``signature`` matches the request.

    With ``max_age`` set, the ``Date`` header must also lie within that many
    seconds of ``now`` in either direction.
    """
    if not signature or not timestamp or not content_type:
        raise SignatureError(ErrorCode.MISSING_SIGNATURE)

    expected = sign(method, body, content_type, timestamp, request_path, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore")):
        raise SignatureError(ErrorCode.INVALID_SIGNATURE)

    if max_age:
        try:
            sent_at = parsedate_to_datetime(timestamp)
        except (TypeError, ValueError):
            raise SignatureError(ErrorCode.EXPIRED_SIGNATURE)
        if sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        if abs((now - sent_at).total_seconds()) > max_age:
            raise SignatureError(ErrorCode.EXPIRED_SIGNATURE)


def basic_auth(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def http_date() -> str:
    return formatdate(usegmt=True)


def signed_headers(
    method: str,
    body: bytes,
    request_path: str,
    secret: str,
    username: str,
    password: str,
    timestamp: Optional[str] = None,
) -> Dict[str, str]:
    timestamp = timestamp or http_date()
    return {
        "Content-Type": CONTENT_TYPE,
        "Accept": "application/json",
        "Authorization": basic_auth(username, password),
        "Date": timestamp,
        "X-Signature": sign(method, body, CONTENT_TYPE, timestamp, request_path, secret),
    }
