from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from prompttrain_gateway.errors import DecryptionError, EncryptionKeyError

MIN_MASTER_KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12
KEY_LENGTH = 32
KDF_ITERATIONS = 100_000
CLIENT_TOKEN_PREFIX = "ptk_"


def validate_master_key(master_key: str) -> str:
    if not master_key or len(master_key) < MIN_MASTER_KEY_LENGTH:
        raise EncryptionKeyError(
            f"Credential encryption key must be at least {MIN_MASTER_KEY_LENGTH} characters."
        )
    return master_key


def _derive_key(master_key: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(master_key.encode("utf-8"))


def encrypt_secret(plaintext: str, master_key: str) -> str:
    """Encrypt ``plaintext`` with AES-256-GCM.

    A fresh salt and IV are drawn per call; the output is
    ``base64(salt || iv || ciphertext+tag)``.
    """
    validate_master_key(master_key)
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(_derive_key(master_key, salt)).encrypt(
        iv, plaintext.encode("utf-8"), None
    )
    return base64.b64encode(salt + iv + ciphertext).decode("ascii")


def decrypt_secret(encoded: str, master_key: str) -> str:
    validate_master_key(master_key)
    try:
        raw = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise DecryptionError("Encrypted secret is not valid base64.") from exc
    if len(raw) <= SALT_LENGTH + IV_LENGTH:
        raise DecryptionError("Encrypted secret is truncated.")
    salt = raw[:SALT_LENGTH]
    iv = raw[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
    ciphertext = raw[SALT_LENGTH + IV_LENGTH :]
    try:
        plaintext = AESGCM(_derive_key(master_key, salt)).decrypt(iv, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError(
            "Encrypted secret failed authentication (wrong key or tampered data)."
        ) from exc
    return plaintext.decode("utf-8")


def hash_client_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_client_token(token: str, token_hash: str) -> bool:
    return hmac.compare_digest(hash_client_token(token), token_hash)


def generate_client_token() -> str:
    return CLIENT_TOKEN_PREFIX + secrets.token_urlsafe(24)
