"""
Password hashing for account login.

bcrypt with a per-hash salt; the work factor comes from
``config.password_hash_rounds`` so tests can run with a cheap one.
Accounts created implicitly by an OAuth callback have no hash and can
never log in with a password.
"""

from __future__ import annotations

from typing import Optional

import bcrypt


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Constant-time check; a missing or malformed hash never matches."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except (ValueError, TypeError):
        return False
