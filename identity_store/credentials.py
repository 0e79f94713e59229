"""
Password encoding strategies.

Identity stores never pick a hash algorithm themselves; they delegate to a
PasswordEncoder supplied by the caller and only store the encoded value.
"""

import hashlib
import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from identity_store.model import User

logger = logging.getLogger(__name__)

PASSWORD_SALT_ATTRIBUTE = 'passwordSalt'


class PasswordEncoder(ABC):
    """Encodes raw passwords and validates raw passwords against stored values."""

    @abstractmethod
    def encode(self, user: User, raw_password: str) -> str:
        pass

    def validate(self, user: User, raw_password: str, stored: str) -> bool:
        if stored is None or raw_password is None:
            return False
        return hmac.compare_digest(self.encode(user, raw_password), stored)


class PlainTextPasswordEncoder(PasswordEncoder):
    """Stores passwords as given. Suitable for directories that hash on write."""

    def encode(self, user: User, raw_password: str) -> str:
        return raw_password


class SHASaltedPasswordEncoder(PasswordEncoder):
    """
    Salted SHA hash of the password.

    The salt is kept in the user's passwordSalt attribute and generated on the
    first encode for that user.
    """

    SUPPORTED_STRENGTHS = (1, 256, 384, 512)

    def __init__(self, strength: int = 256):
        if strength not in self.SUPPORTED_STRENGTHS:
            raise ValueError(f"No such algorithm: SHA-{strength}")
        self.strength = strength

    @property
    def algorithm(self) -> str:
        return f"sha{self.strength}"

    def encode(self, user: User, raw_password: str) -> str:
        salt = user.get_attribute(PASSWORD_SALT_ATTRIBUTE)
        if salt is None:
            salt = secrets.token_hex(16)
            user.set_attribute(PASSWORD_SALT_ATTRIBUTE, salt)
            logger.debug(f"Generated password salt for user {user.key}")
        return self._digest(raw_password, salt)

    def validate(self, user: User, raw_password: str, stored: str) -> bool:
        salt = user.get_attribute(PASSWORD_SALT_ATTRIBUTE)
        if salt is None or stored is None or raw_password is None:
            return False
        return hmac.compare_digest(self._digest(raw_password, salt), stored)

    def _digest(self, raw_password: str, salt: str) -> str:
        digest = hashlib.new(self.algorithm)
        digest.update((raw_password + salt).encode('utf-8'))
        return digest.hexdigest()


ENCODERS = {
    'plain': PlainTextPasswordEncoder,
    'sha_salted': SHASaltedPasswordEncoder,
}


def create_password_encoder(config: Optional[Dict[str, Any]] = None) -> PasswordEncoder:
    """
    Build a password encoder from the credentials configuration section.

    Args:
        config: Dictionary with 'encoder' ('plain' or 'sha_salted') and optional 'strength'

    Returns:
        Configured PasswordEncoder

    Raises:
        ValueError: If the encoder name is unknown
    """
    config = config or {}
    name = config.get('encoder', 'plain')
    if name not in ENCODERS:
        raise ValueError(f"Unknown password encoder: {name}")
    if name == 'sha_salted':
        return SHASaltedPasswordEncoder(int(config.get('strength', 256)))
    return PlainTextPasswordEncoder()
