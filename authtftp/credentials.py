#!/usr/bin/env python3
"""
Credential store used by the server's authentication handler.

The file format is one ``username:secret`` per line. A secret is either a
plaintext password or an scrypt hash produced by ``hash_password``
(``scrypt$<salt hex>$<key hex>``); both are checked by ``verify`` so hashed
secrets can be rolled out without touching the wire protocol.
"""

import argparse
import getpass
import logging
import os
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import constant_time
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .constants import DEFAULT_CREDENTIALS_FILE

logger = logging.getLogger(__name__)

SCRYPT_PREFIX = 'scrypt'
SCRYPT_SALT_SIZE = 16
SCRYPT_KEY_LENGTH = 32
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


def _scrypt(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=SCRYPT_KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    """Derive a storable scrypt secret for a password"""
    if salt is None:
        salt = os.urandom(SCRYPT_SALT_SIZE)
    key = _scrypt(salt).derive(password.encode('utf-8'))
    return f"{SCRYPT_PREFIX}${salt.hex()}${key.hex()}"


def check_password(stored: str, password: str) -> bool:
    """Compare a supplied password against a stored secret"""
    if not stored.startswith(SCRYPT_PREFIX + '$'):
        return constant_time.bytes_eq(stored.encode('utf-8'), password.encode('utf-8'))

    try:
        _, salt_hex, key_hex = stored.split('$')
        salt, key = bytes.fromhex(salt_hex), bytes.fromhex(key_hex)
    except ValueError:
        logger.warning("Malformed hashed credential entry")
        return False

    try:
        _scrypt(salt).verify(password.encode('utf-8'), key)
    except InvalidKey:
        return False
    return True


class CredentialStore:
    """Read-only username -> secret lookup"""

    def __init__(self, credentials: Optional[Mapping[str, str]] = None):
        self._credentials = MappingProxyType(dict(credentials or {}))

    @classmethod
    def from_file(cls, path: str = DEFAULT_CREDENTIALS_FILE) -> 'CredentialStore':
        """Load every ``username:secret`` line of a credentials file"""
        credentials: Dict[str, str] = {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                for lineno, line in enumerate(f, 1):
                    line = line.strip()
                    if not line or line.startswith('#'):
                        continue
                    username, sep, secret = line.partition(':')
                    if not sep or not username.strip():
                        logger.warning("Skipping malformed credential on line %d of %s", lineno, path)
                        continue
                    credentials[username.strip()] = secret.strip()
        except OSError as e:
            logger.error("Failed to load credentials from %s: %s", path, e)

        logger.info("Loaded %d credential(s) from %s", len(credentials), path)
        return cls(credentials)

    def __contains__(self, username: object) -> bool:
        return username in self._credentials

    def __len__(self) -> int:
        return len(self._credentials)

    def verify(self, username: str, password: str) -> bool:
        stored = self._credentials.get(username)
        if stored is None:
            return False
        return check_password(stored, password)


def main():
    """Print a hashed credentials line for a user"""
    parser = argparse.ArgumentParser(description='Generate a hashed credentials entry')
    parser.add_argument('username', help='Username for the entry')
    args = parser.parse_args()

    if ':' in args.username:
        parser.error("username may not contain ':'")

    password = getpass.getpass('Password: ')
    print(f"{args.username}:{hash_password(password)}")


if __name__ == '__main__':
    main()
