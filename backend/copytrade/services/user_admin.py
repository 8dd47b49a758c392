"""
User Admin
Account listing and the admin edits the original console allowed: display
name, role and the enabled flag that gates every authenticated route.
"""

from typing import Optional
import logging

from copytrade.core.exceptions import NotFound, ValidationError
from copytrade.models.common import enum_value
from copytrade.models.user import User, UserAccountUpdate, UserRole
from copytrade.services.record_store import RecordStore

logger = logging.getLogger(__name__)


class UserAdmin:

    def __init__(self, store: RecordStore):
        self.store = store

    async def list_users(self, role: Optional[str] = None, enabled: Optional[bool] = None) -> list[User]:
        where = {}
        if role is not None:
            where["role"] = enum_value(role)
        if enabled is not None:
            where["enabled"] = enabled
        return await self.store.list(User, where)

    async def update_user(self, user_id: str, changes: UserAccountUpdate, acting_admin_id: str) -> User:
        """
        Apply an admin edit. Only the fields set on `changes` are written, so a
        concurrent wallet credit is never overwritten. Admins cannot disable or
        demote their own account.
        """
        values = {k: enum_value(v) for k, v in changes.model_dump(exclude_unset=True).items() if v is not None}
        if not values:
            raise ValidationError("Nothing to update")

        if user_id == acting_admin_id and (
            values.get("enabled") is False
            or values.get("role", UserRole.ADMIN.value) != UserRole.ADMIN.value
        ):
            raise ValidationError("Admins cannot disable or demote their own account")

        if not await self.store.compare_and_set(User, user_id, values):
            raise NotFound(f"User {user_id} not found")
        logger.info(f"User {user_id} updated by {acting_admin_id}: {sorted(values)}")
        return await self.store.get(User, user_id)
