"""Local password hashing and credential checks.

Stands in for the external identity provider in development and tests.
"""
import bcrypt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

HASH_MODES = ("argon2id", "bcrypt")

argon2_hasher = PasswordHasher(time_cost=1, memory_cost=65536, parallelism=1, hash_len=32)


def _apply_pepper(password: str, pepper: str) -> bytes:
    combo = password + pepper
    return combo.encode()


def hash_password(password: str, salt: str, pepper: str, mode: str) -> str:
    if mode == "bcrypt":
        return bcrypt.hashpw(_apply_pepper(password, pepper), bcrypt.gensalt(rounds=12)).decode()
    if mode == "argon2id":
        return argon2_hasher.hash(salt + password + pepper)
    raise ValueError(f"Unsupported hash mode: {mode}")


def verify_password(password: str, salt: str, pepper: str, stored_hash: str, mode: str) -> bool:
    if mode == "bcrypt":
        return bcrypt.checkpw(_apply_pepper(password, pepper), stored_hash.encode())
    if mode == "argon2id":
        try:
            return argon2_hasher.verify(stored_hash, salt + password + pepper)
        except (VerificationError, InvalidHashError):
            return False
    raise ValueError(f"Unsupported hash mode: {mode}")
