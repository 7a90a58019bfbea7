# backend/digitaltwin/core/auth/user_service.py
"""
User service mapping external identities to numeric owner ids.

``find_or_create_user`` is idempotent: the first request from a subject
creates its ``users`` row, later requests reuse it and re-sync roles when
they changed at the identity provider.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from digitaltwin.core.auth.identity import Identity
from digitaltwin.core.database.models import User
from digitaltwin.core.shared.database_service import DatabaseService

logger = logging.getLogger("digitaltwin.auth.users")


class UserService:
    def __init__(self, db: DatabaseService):
        self._db = db

    async def get_by_external_id(self, external_id: str) -> Optional[User]:
        async with self._db.get_session() as session:
            result = await session.execute(select(User).where(User.external_id == external_id))
            return result.scalar_one_or_none()

    async def find_or_create_user(self, identity: Identity) -> User:
        """
        Return the user row for ``identity``, creating it on first sight.

        Two concurrent first requests for the same subject race on the unique
        ``external_id`` index; the loser re-reads the winner's row.
        """
        roles = list(identity.roles)

        async with self._db.get_session() as session:
            result = await session.execute(select(User).where(User.external_id == identity.id))
            user = result.scalar_one_or_none()
            if user is not None:
                if list(user.roles or []) != roles:
                    user.roles = roles
                    user.updated_at = datetime.utcnow()
                    logger.debug(f"Synced roles for user {user.id}: {roles}")
                return user

        try:
            async with self._db.get_session() as session:
                user = User(external_id=identity.id, roles=roles)
                session.add(user)
                await session.flush()
                await session.refresh(user)
            logger.info(f"Created user {user.id} for subject {identity.id}")
            return user
        except IntegrityError:
            existing = await self.get_by_external_id(identity.id)
            if existing is None:
                raise
            return existing
