"""bcrypt password hashing."""
from functools import lru_cache

import bcrypt

from bulletin.config import settings

# bcrypt ignores (newer releases reject) anything past 72 bytes.
BCRYPT_MAX_BYTES = 72


def _encode(raw_password: str) -> bytes:
    return raw_password.encode("utf-8")[:BCRYPT_MAX_BYTES]


@lru_cache(maxsize=1)
def _dummy_hash() -> bytes:
    # Checked against when the username is unknown so a failed login costs
    # the same whether or not the account exists.
    return bcrypt.hashpw(b"not-a-real-password", bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS))


def hash_password(raw_password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(_encode(raw_password), salt).decode("utf-8")


def verify_password(raw_password: str, password_hash: str | None) -> bool:
    if not password_hash:
        bcrypt.checkpw(_encode(raw_password), _dummy_hash())
        return False
    return bcrypt.checkpw(_encode(raw_password), password_hash.encode("utf-8"))
