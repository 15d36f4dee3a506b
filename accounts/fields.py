"""Model fields that keep OAuth secrets encrypted at rest.

Values are Fernet tokens in the database and plain strings on the model
instance, so the rest of the code never handles ciphertext.
"""
import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import models


@lru_cache(maxsize=None)
def _fernet_for(key: str) -> Fernet:
    return Fernet(key.encode() if isinstance(key, str) else key)


def get_fernet() -> Fernet:
    key = getattr(settings, "FIELD_ENCRYPTION_KEY", "")
    if not key:
        # Fall back to a key derived from SECRET_KEY so dev setups work out of the box
        digest = hashlib.sha256(settings.SECRET_KEY.encode()).digest()
        key = base64.urlsafe_b64encode(digest).decode()
    try:
        return _fernet_for(key)
    except ValueError as exc:
        raise ImproperlyConfigured("FIELD_ENCRYPTION_KEY must be a valid Fernet key") from exc


def encrypt_value(value: str) -> str:
    return get_fernet().encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_value(value: str) -> str:
    try:
        return get_fernet().decrypt(value.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Stored secret could not be decrypted (wrong FIELD_ENCRYPTION_KEY?)") from exc


class EncryptedTextField(models.TextField):
    """TextField whose contents are Fernet-encrypted in the database."""

    def from_db_value(self, value, expression, connection):
        if value is None or value == "":
            return value
        return decrypt_value(value)

    def get_prep_value(self, value):
        value = super().get_prep_value(value)
        if value is None or value == "":
            return value
        return encrypt_value(value)
