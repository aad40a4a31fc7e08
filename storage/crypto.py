"""
storage/crypto.py

Fernet encryption for report documents held by the SQLite store.

Only the indexed columns (status, priority, reporter id, timestamps) are kept
in the clear; side effects, medicine, triage analysis and review remarks live
inside the encrypted document.

The key comes from ``Settings.app_data_key`` (env ``APP_DATA_KEY``), a
URL-safe base64 32-byte key as produced by ``Fernet.generate_key()``.  Without
it a process-local key is generated and a warning is logged: documents written
in that mode cannot be read after a restart.
"""

import json
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from storage.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _get_fernet() -> Fernet:
    raw_key = get_settings().app_data_key

    if raw_key:
        key = raw_key.encode()
        logger.debug("Fernet key loaded from settings.")
    else:
        key = Fernet.generate_key()
        logger.warning(
            "APP_DATA_KEY is not set. A temporary in-memory key has been generated; "
            "stored reports will NOT be readable after a process restart."
        )

    return Fernet(key)


def encrypt_json(data: dict) -> str:
    """
    Serialise *data* to JSON and encrypt it.

    Returns:
        Fernet token as a UTF-8 string, suitable for TEXT storage in SQLite.
    """
    plaintext = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
    return _get_fernet().encrypt(plaintext).decode("utf-8")


def decrypt_json(token: str) -> dict:
    """
    Decrypt a token produced by :func:`encrypt_json`.

    Raises:
        cryptography.fernet.InvalidToken: wrong key or corrupted token.
    """
    try:
        plaintext = _get_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        logger.error("Report document decryption failed (wrong key or corrupted token).")
        raise

    return json.loads(plaintext.decode("utf-8"))
