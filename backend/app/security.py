import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError

from .config import RESET_PASSWORD_BYTES

_ph = PasswordHasher(time_cost=2, memory_cost=65536, parallelism=1, hash_len=32, salt_len=16)


def hash_password(password: str) -> str:
    return _ph.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    try:
        return _ph.verify(password_hash, password)
    except (VerifyMismatchError, InvalidHashError):
        return False


def generate_password() -> str:
    return secrets.token_urlsafe(RESET_PASSWORD_BYTES)


def compute_lock_seconds(failed_count: int) -> int:
    if failed_count < 3:
        return 0
    if failed_count < 5:
        return 30
    if failed_count < 7:
        return 120
    if failed_count < 9:
        return 300
    return 600
