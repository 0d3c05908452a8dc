"""
storage/crypto.py

Fernet-based sealing of stored documents (patients, family members,
appointments).

Key lifecycle
-------------
The Fernet key comes from ``Settings.data_key`` (environment variable
APP_DATA_KEY), a URL-safe base64-encoded 32-byte key as produced by
``Fernet.generate_key()``.

If no key is configured a fresh one is generated on first use and kept in
memory only.  That is enough for tests and local demos; a warning is logged
because sealed documents will not survive a process restart.

Public API
----------
seal_document(document: dict) -> str
open_document(token: str) -> dict
reset_cipher() -> None
"""

import json
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from storage.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _cipher() -> Fernet:
    raw_key = get_settings().data_key
    if raw_key:
        return Fernet(raw_key.encode("ascii"))

    logger.warning(
        "APP_DATA_KEY is not set; using a temporary in-memory key. "
        "Stored records will NOT be readable after a restart."
    )
    return Fernet(Fernet.generate_key())


def reset_cipher() -> None:
    """Forget the cached key so the next call re-reads the settings."""
    _cipher.cache_clear()


def seal_document(document: dict) -> str:
    """
    Serialise *document* to JSON and encrypt it.

    Returns:
        Fernet token as text, suitable for a TEXT column.
    """
    plaintext = json.dumps(document, ensure_ascii=False, default=str).encode("utf-8")
    return _cipher().encrypt(plaintext).decode("ascii")


def open_document(token: str) -> dict:
    """
    Decrypt a token produced by :func:`seal_document`.

    Raises:
        cryptography.fernet.InvalidToken: wrong key or corrupted token.
    """
    try:
        plaintext = _cipher().decrypt(token.encode("ascii"))
    except InvalidToken:
        logger.error("Could not open stored document: wrong APP_DATA_KEY or corrupted data.")
        raise
    return json.loads(plaintext.decode("utf-8"))
