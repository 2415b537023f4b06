from __future__ import annotations

import base64
import hashlib
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..settings import settings

_VERSION = "v1"


def _get_key() -> bytes:
    raw = settings.pagination_token_key or "primechances-dev-pagination-key"
    return hashlib.sha256(str(raw).encode("utf-8")).digest()  # 32 bytes


def encrypt_string(plain_text: Any) -> str | None:
    """
    AES-GCM encrypt to "v1:<iv>:<tag>:<ciphertext>" (urlsafe base64 parts).

    Used for opaque pagination cursors so clients cannot forge table keys.
    """
    if plain_text is None:
        return None

    iv = os.urandom(12)
    ct_with_tag = AESGCM(_get_key()).encrypt(iv, str(plain_text).encode("utf-8"), None)
    ciphertext, tag = ct_with_tag[:-16], ct_with_tag[-16:]

    return ":".join(
        [_VERSION]
        + [base64.urlsafe_b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)]
    )


def decrypt_string(cipher_text: Any) -> str | None:
    if not cipher_text:
        return None

    parts = str(cipher_text).split(":")
    if len(parts) != 4 or parts[0] != _VERSION:
        return None

    try:
        iv, tag, data = (base64.urlsafe_b64decode(p) for p in parts[1:])
    except (ValueError, TypeError):
        return None
    if len(iv) != 12 or len(tag) != 16:
        return None

    try:
        return AESGCM(_get_key()).decrypt(iv, data + tag, None).decode("utf-8")
    except (InvalidTag, UnicodeDecodeError):
        return None
