from __future__ import annotations

import asyncio

import bcrypt

# bcrypt only reads the first 72 bytes; newer releases refuse anything longer.
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    """bcrypt hashing run off the event loop; the work factor is fixed per instance."""

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = int(rounds)

    @staticmethod
    def fits(plain: str) -> bool:
        return len(plain.encode("utf-8")) <= MAX_PASSWORD_BYTES

    def hash_sync(self, plain: str) -> str:
        hashed = bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds))
        return hashed.decode("utf-8")

    def verify_sync(self, plain: str, hashed: str) -> bool:
        if not self.fits(plain):
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Malformed or non-bcrypt digest.
            return False

    async def hash(self, plain: str) -> str:
        return await asyncio.to_thread(self.hash_sync, plain)

    async def verify(self, plain: str, hashed: str) -> bool:
        if not plain or not hashed:
            return False
        return await asyncio.to_thread(self.verify_sync, plain, hashed)
