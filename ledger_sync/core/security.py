from __future__ import annotations

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken


@lru_cache(maxsize=4)
def _get_cipher(key: str) -> Fernet:
    return Fernet(key.encode("utf-8"))


def encrypt_refresh_token(key: str, value: str) -> str:
    cipher = _get_cipher(key)
    return cipher.encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_refresh_token(key: str, value: str) -> str:
    cipher = _get_cipher(key)
    try:
        decrypted = cipher.decrypt(value.encode("utf-8"))
    except InvalidToken as exc:
        raise ValueError("Invalid refresh token payload") from exc
    return decrypted.decode("utf-8")
