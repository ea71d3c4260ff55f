#!/usr/bin/env python3
"""Purge 2FA setups that were started but never confirmed.

A pending setup keeps a sealed secret and a batch of backup code hashes until
it is enabled. Once the setup window has passed they can never be enabled, so
this resets such profiles to DISABLED and deletes their backup codes.

Usage:
    docker exec secondfactor-backend python scripts/purge_expired_setups.py
"""

import asyncio

from secondfactor.database import async_session_maker, close_db
from secondfactor.services.enrollment import EnrollmentService


async def purge_expired_setups() -> int:
    """Reset expired pending setups and return how many were purged."""
    async with async_session_maker() as session:
        purged = await EnrollmentService(session).purge_expired_setups()
        await session.commit()
    await close_db()
    print(f"Purged {purged} expired 2FA setups.")
    return purged


if __name__ == "__main__":
    asyncio.run(purge_expired_setups())
