"""
utils/encoding.py
Base64 helpers for the attestation protocol's web-safe token format.
"""

import base64


def base64_to_bytes(text: str) -> bytes:
    """
    Decode standard or web-safe base64, with or without padding.

    Web-safe tokens may use '-', '_' and '.' in place of '+', '/' and '='.
    """
    normalized = text.replace("-", "+").replace("_", "/").replace(".", "=")
    normalized = normalized.rstrip("=")
    normalized += "=" * (-len(normalized) % 4)
    return base64.b64decode(normalized, validate=True)


def bytes_to_websafe(data: bytes) -> str:
    """Encode bytes as URL-safe base64 (padding kept)."""
    return base64.urlsafe_b64encode(data).decode("ascii")
