"""HTTP Signatures for authenticating federated requests.

Implements the draft-cavage HTTP Signatures profile used by Mastodon and
other Fediverse servers: RSA-SHA256 over ``(request-target)``, ``host``
and ``date`` (plus ``digest`` when a body is signed).
"""

import base64
import hashlib
import re
from collections.abc import Mapping, MutableMapping
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urldefrag, urlparse

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

logger = structlog.get_logger()

DEFAULT_SIGNED_HEADERS = ["(request-target)", "host", "date"]

_SIGNATURE_PARAM_RE = re.compile(r'\s*([A-Za-z]+)\s*=\s*"([^"]*)"\s*')


def compute_digest(body: bytes) -> str:
    """Compute SHA-256 digest of request body.

    Args:
        body: Request body bytes

    Returns:
        Base64-encoded digest with algorithm prefix
    """
    digest = hashlib.sha256(body).digest()
    return f"SHA-256={base64.b64encode(digest).decode()}"


def http_date(now: datetime | None = None) -> str:
    """Format a timestamp as an IMF-fixdate (Tue, 15 Nov 1994 08:12:31 GMT)."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%a, %d %b %Y %H:%M:%S GMT")


def create_signature_string(
    method: str,
    path: str,
    headers: Mapping[str, str],
    signed_headers: list[str],
) -> str:
    """Create the string to sign for HTTP signatures.

    Args:
        method: HTTP method
        path: Request path (with query string)
        headers: Request headers keyed by lowercase name
        signed_headers: Headers to include in signature, in order

    Returns:
        Signature string, lines joined by newlines

    Raises:
        ValueError: If a signed header is not present
    """
    lines = []
    for header in signed_headers:
        if header == "(request-target)":
            lines.append(f"(request-target): {method.lower()} {path}")
        else:
            value = headers.get(header)
            if value is None:
                raise ValueError(f"Missing signed header: {header}")
            lines.append(f"{header}: {value}")
    return "\n".join(lines)


def parse_signature_header(value: str) -> dict[str, str]:
    """Parse ``key="value"`` pairs of a Signature header.

    Values may contain ``=`` (base64 padding) and are taken verbatim
    between the quotes.
    """
    params: dict[str, str] = {}
    for match in _SIGNATURE_PARAM_RE.finditer(value):
        params[match.group(1)] = match.group(2)
    return params


def key_id_to_actor_url(key_id: str) -> str:
    """Strip the fragment from a keyId (actor#main-key -> actor)."""
    return urldefrag(key_id).url


def _set_header(headers: MutableMapping[str, str], name: str, value: str) -> None:
    for key in [k for k in headers if k.lower() == name]:
        del headers[key]
    headers[name] = value


def sign_request(
    url: str,
    method: str,
    headers: MutableMapping[str, str],
    private_key_pem: str,
    key_id: str,
    body: bytes | None = None,
) -> MutableMapping[str, str]:
    """Sign an outgoing request.

    Args:
        url: Full URL
        method: HTTP method
        headers: Request headers (mutated to add date, host, digest, signature)
        private_key_pem: RSA private key in PEM format
        key_id: Public key ID (actor#main-key)
        body: Optional request body; when given its digest is signed too

    Returns:
        The same header mapping
    """
    private_key = serialization.load_pem_private_key(
        private_key_pem.encode(),
        password=None,
    )

    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path += f"?{parsed.query}"

    _set_header(headers, "date", http_date())
    if not any(k.lower() == "host" for k in headers):
        headers["host"] = parsed.netloc

    signed_headers = list(DEFAULT_SIGNED_HEADERS)
    if body is not None:
        _set_header(headers, "digest", compute_digest(body))
        signed_headers.append("digest")

    sig_string = create_signature_string(
        method=method,
        path=path,
        headers={k.lower(): v for k, v in headers.items()},
        signed_headers=signed_headers,
    )

    # Sign with RSA-SHA256
    signature = private_key.sign(
        sig_string.encode(),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )
    sig_b64 = base64.b64encode(signature).decode()

    _set_header(
        headers,
        "signature",
        f'keyId="{key_id}",'
        f'algorithm="rsa-sha256",'
        f'headers="{" ".join(signed_headers)}",'
        f'signature="{sig_b64}"',
    )
    return headers


def verify_signature(
    method: str,
    path: str,
    headers: Mapping[str, str],
    public_key_pem: str,
    body: bytes | None = None,
) -> bool:
    """Verify the Signature header of an incoming request.

    Never raises: any parse or crypto error yields False.

    Args:
        method: HTTP method
        path: Request path (with query string)
        headers: Request headers (any case)
        public_key_pem: Signer's RSA public key in PEM format
        body: Request body, checked against a signed digest header

    Returns:
        True if the signature is valid for the listed headers
    """
    try:
        lowered = {k.lower(): v for k, v in headers.items()}
        signature_header = lowered.get("signature")
        if not signature_header or not lowered.get("date") or not lowered.get("host"):
            return False

        params = parse_signature_header(signature_header)
        signature_value = params.get("signature")
        if not signature_value:
            return False
        signed_headers = params.get("headers", "date").split()

        if "digest" in signed_headers and body is not None:
            if lowered.get("digest") != compute_digest(body):
                logger.debug("Digest does not match body", key_id=params.get("keyId"))
                return False

        sig_string = create_signature_string(
            method=method,
            path=path,
            headers=lowered,
            signed_headers=signed_headers,
        )

        public_key = serialization.load_pem_public_key(public_key_pem.encode())
        public_key.verify(
            base64.b64decode(signature_value),
            sig_string.encode(),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return True
    except InvalidSignature:
        return False
    except Exception as e:
        logger.debug("Signature verification error", error=str(e))
        return False


def verify_request(request: Any, public_key_pem: str, body: bytes | None = None) -> bool:
    """Verify an aiohttp request (anything with method, path_qs and headers)."""
    return verify_signature(
        method=request.method,
        path=request.path_qs,
        headers=request.headers,
        public_key_pem=public_key_pem,
        body=body,
    )
