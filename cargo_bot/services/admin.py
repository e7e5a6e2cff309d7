"""Admin roles and authorization checks."""

import logging
from collections.abc import Iterable

from ..errors import Unauthorized
from ..models import Admin, AdminRole
from .database import Database

logger = logging.getLogger(__name__)


class AdminDirectory:
    """Resolves Telegram users to admin roles.

    Telegram IDs listed in ADMIN_IDS act as SUPER_ADMIN without a database
    row; SUPER_ADMIN passes every role check.
    """

    def __init__(self, database: Database, super_admin_ids: Iterable[int] = ()):
        self.database = database
        self.super_admin_ids = set(super_admin_ids)

    async def get_role(self, telegram_id: int) -> AdminRole | None:
        if telegram_id in self.super_admin_ids:
            return AdminRole.SUPER_ADMIN
        admin = await self.database.run(
            lambda repo: repo.get_admin_by_telegram_id(telegram_id), write=False
        )
        if admin is None or not admin.is_active:
            return None
        return admin.role

    async def is_authorized(self, telegram_id: int, roles: Iterable[AdminRole]) -> bool:
        role = await self.get_role(telegram_id)
        if role is None:
            return False
        return role is AdminRole.SUPER_ADMIN or role in set(roles)

    async def require(self, telegram_id: int, roles: Iterable[AdminRole]) -> AdminRole:
        """Return the actor's role or raise Unauthorized."""
        roles = set(roles)
        if not await self.is_authorized(telegram_id, roles):
            logger.warning(f"User {telegram_id} denied, requires one of {sorted(roles)}")
            raise Unauthorized(telegram_id=telegram_id)
        role = await self.get_role(telegram_id)
        assert role is not None
        return role

    async def add_admin(self, telegram_id: int, role: AdminRole, first_name: str = "") -> Admin:
        admin = await self.database.run(
            lambda repo: repo.add_admin(
                Admin(telegram_id=telegram_id, role=role, first_name=first_name)
            )
        )
        logger.info(f"Admin {telegram_id} added with role {role}")
        return admin
