"""Unlock PIN generation.

PINs are numeric (0-9), generated server-side with a cryptographic random
source, and unique across all issued codes.
"""

from __future__ import annotations

import secrets
import string

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.db.models import UnlockCode

CODE_CHARSET = string.digits
CODE_LENGTH = 8
MAX_ATTEMPTS = 10


def generate_code(length: int = CODE_LENGTH) -> str:
    """Generate a cryptographically random numeric PIN."""
    return "".join(secrets.choice(CODE_CHARSET) for _ in range(length))


def normalize_code(code: str) -> str:
    """Strip whitespace and the separators people type when copying a PIN."""
    return "".join(ch for ch in code if ch.isdigit())


async def generate_unique_code(
    db: AsyncSession,
    length: int = CODE_LENGTH,
    reserved: set[str] | None = None,
) -> str:
    """Generate a PIN that is not already issued nor in ``reserved`` (same batch)."""
    reserved = reserved or set()
    for _ in range(MAX_ATTEMPTS):
        code = generate_code(length)
        if code in reserved:
            continue
        existing = await db.execute(select(UnlockCode.id).where(UnlockCode.code == code))
        if existing.scalar_one_or_none() is None:
            return code
    raise RuntimeError(f"Failed to generate unique unlock code after {MAX_ATTEMPTS} attempts")
