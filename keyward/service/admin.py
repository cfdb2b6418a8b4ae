from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from keyward.logging import get_logger
from keyward.service.errors import (
    AdminAlreadyExistsError,
    AdminNotMajorError,
    CannotDeleteMajorAdminError,
    UserNotFoundError,
    translate_internal_errors,
)
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import AdminGrant, AdminScale, User

logger = get_logger(__name__)


class AdminGrantStore(Protocol):
    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_admin_grant(self, user_id: str) -> Optional[AdminGrant]: ...

    def save_admin_grant(self, user_id: str, scale: AdminScale) -> AdminGrant: ...

    def delete_admin_grant(self, user_id: str) -> bool: ...

    def list_admin_grants(
        self,
        *,
        scale: Optional[AdminScale] = None,
        username: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AdminGrant], int]: ...


def _require_major(actor_scale: Optional[AdminScale]) -> None:
    if actor_scale != AdminScale.MAJOR:
        raise AdminNotMajorError()


class AdminService:
    """Two-tier admin grants.

    Only a ``major`` admin may grant or revoke, every grant it hands out is
    ``minor``, and a ``major`` grant is never revoked through this service.
    ``bootstrap`` is the one path that creates a ``major`` grant and must only
    be reachable from the host itself.
    """

    def __init__(self, store: AdminGrantStore) -> None:
        self.store = store
        self.logger = logger

    def _insert(self, username: str, scale: AdminScale) -> AdminGrant:
        user = self.store.get_user_by_username(username)
        if not user or user.is_deleted:
            raise UserNotFoundError()
        if self.store.get_admin_grant(user.id):
            raise AdminAlreadyExistsError()
        try:
            return self.store.save_admin_grant(user.id, scale)
        except ConstraintViolation as exc:
            if exc.field == "user_id":
                raise UserNotFoundError() from exc
            # lost a race with a concurrent grant for the same user
            raise AdminAlreadyExistsError() from exc

    @translate_internal_errors("admin_grant_failed")
    def grant(
        self,
        actor_scale: Optional[AdminScale],
        username: str,
        requested_scale: Optional[AdminScale] = None,
    ) -> AdminGrant:
        _require_major(actor_scale)
        if requested_scale not in (None, AdminScale.MINOR):
            self.logger.warning(
                "admin_grant_scale_downgraded", requested=requested_scale.value
            )
        grant = self._insert(username, AdminScale.MINOR)
        self.logger.info("admin_granted", user_id=grant.user_id, scale=grant.scale.value)
        return grant

    @translate_internal_errors("admin_revoke_failed")
    def revoke(self, actor_scale: Optional[AdminScale], user_id: str) -> None:
        _require_major(actor_scale)
        existing = self.store.get_admin_grant(user_id)
        if not existing:
            return
        if existing.scale == AdminScale.MAJOR:
            raise CannotDeleteMajorAdminError()
        self.store.delete_admin_grant(user_id)
        self.logger.info("admin_revoked", user_id=user_id)

    @translate_internal_errors("admin_bootstrap_failed")
    def bootstrap(self, username: str) -> AdminGrant:
        grant = self._insert(username, AdminScale.MAJOR)
        self.logger.warning("admin_bootstrapped", user_id=grant.user_id)
        return grant

    @translate_internal_errors("admin_list_failed")
    def list_admins(
        self,
        *,
        scale: Optional[AdminScale] = None,
        username: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AdminGrant], int]:
        limit = max(1, min(limit, 500))
        offset = max(0, offset)
        return self.store.list_admin_grants(
            scale=scale, username=username, limit=limit, offset=offset
        )

    def get_grant(self, user_id: str) -> Optional[AdminGrant]:
        return self.store.get_admin_grant(user_id)
