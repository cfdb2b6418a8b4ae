from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from keyward.logging import get_logger
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import (
    AdminGrant,
    AdminScale,
    AuthProvider,
    ExternalIdentity,
    User,
    UserUpdate,
    new_user_id,
    utcnow,
)

_UNIQUE_USER_FIELDS = ("username", "email", "phone")


class MemoryStore:
    """In-memory credential store used for tests and local development.

    When ``fs_root`` is given the users and admin grants are written to
    ``<fs_root>/state/memory_store.json`` after every mutation and reloaded on
    start-up.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.admin_grants: Dict[str, AdminGrant] = {}
        self.external_identities: Dict[Tuple[str, str], ExternalIdentity] = {}
        # RLock so helpers can re-enter while the caller holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users -----------------------------------------------------------------

    def _check_unique(self, values: Dict[str, Optional[str]], *, exclude: Optional[str] = None) -> None:
        for name in _UNIQUE_USER_FIELDS:
            candidate = values.get(name)
            if candidate is None:
                continue
            for existing in self.users.values():
                if existing.id == exclude:
                    continue
                if getattr(existing, name) == candidate:
                    raise ConstraintViolation(f"{name} already exists", {"field": name})

    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        email_verified: bool = False,
        phone_verified: bool = False,
    ) -> User:
        with self._data_lock:
            self._check_unique({"username": username, "email": email, "phone": phone})
            now = utcnow()
            user = User(
                id=new_user_id(),
                username=username,
                password_hash=password_hash,
                email=email,
                phone=phone,
                email_verified=email_verified,
                phone_verified=phone_verified,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def _find_by(self, name: str, value: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if getattr(u, name) == value), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._find_by("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._find_by("email", email)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        return self._find_by("phone", phone)

    def update_user(self, user_id: str, update: UserUpdate) -> Optional[User]:
        changes = update.changes()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if not changes:
                return replace(user)
            self._check_unique(changes, exclude=user_id)
            updated = replace(user, **changes, updated_at=utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def soft_delete_user(self, user_id: str) -> Optional[User]:
        return self.update_user(
            user_id,
            UserUpdate(
                email=None,
                phone=None,
                email_verified=False,
                phone_verified=False,
                is_deleted=True,
            ),
        )

    # external identities ---------------------------------------------------

    def get_user_by_external_id(self, provider: AuthProvider, external_id: str) -> Optional[User]:
        with self._data_lock:
            link = self.external_identities.get((provider.value, external_id))
            if not link:
                return None
            user = self.users.get(link.user_id)
            return replace(user) if user else None

    def has_external_identity(self, user_id: str) -> bool:
        with self._data_lock:
            return any(link.user_id == user_id for link in self.external_identities.values())

    def add_external_user(
        self,
        username: str,
        password_hash: str,
        *,
        provider: AuthProvider,
        external_id: str,
    ) -> User:
        """Create a user and link it to a provider identity in one step."""
        with self._data_lock:
            key = (provider.value, external_id)
            if key in self.external_identities:
                raise ConstraintViolation(
                    "external identity already linked", {"field": "external_identity"}
                )
            user = self.create_user(username, password_hash)
            self.external_identities[key] = ExternalIdentity(
                provider=provider, external_id=external_id, user_id=user.id
            )
            self._persist_state()
            return user

    # admin grants ----------------------------------------------------------

    def get_admin_grant(self, user_id: str) -> Optional[AdminGrant]:
        with self._data_lock:
            grant = self.admin_grants.get(user_id)
            if not grant:
                return None
            user = self.users.get(user_id)
            return replace(grant, username=user.username if user else grant.username)

    def save_admin_grant(self, user_id: str, scale: AdminScale) -> AdminGrant:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("admin grant references unknown user", {"field": "user_id"})
            if user_id in self.admin_grants:
                raise ConstraintViolation("admin grant already exists", {"field": "admin_grant"})
            grant = AdminGrant(user_id=user_id, username=user.username, scale=scale)
            self.admin_grants[user_id] = grant
            self._persist_state()
            return replace(grant)

    def delete_admin_grant(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.admin_grants.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def list_admin_grants(
        self,
        *,
        scale: Optional[AdminScale] = None,
        username: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AdminGrant], int]:
        with self._data_lock:
            results = []
            for grant in self.admin_grants.values():
                user = self.users.get(grant.user_id)
                name = user.username if user else grant.username
                if scale is not None and grant.scale != scale:
                    continue
                if username and username.lower() not in name.lower():
                    continue
                results.append(replace(grant, username=name))
            results.sort(key=lambda g: g.created_at)
            return results[offset : offset + limit], len(results)

    # persistence -----------------------------------------------------------

    def _state_path(self) -> Path:
        if self.fs_root is None:
            raise RuntimeError("memory store has no fs_root")
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "admin_grants": [
                {
                    "user_id": g.user_id,
                    "username": g.username,
                    "scale": g.scale.value,
                    "created_at": g.created_at.isoformat(),
                }
                for g in self.admin_grants.values()
            ],
            "external_identities": [
                {
                    "provider": link.provider.value,
                    "external_id": link.external_id,
                    "user_id": link.user_id,
                    "created_at": link.created_at.isoformat(),
                }
                for link in self.external_identities.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.admin_grants = {
            g["user_id"]: AdminGrant(
                user_id=g["user_id"],
                username=g["username"],
                scale=AdminScale(g["scale"]),
                created_at=datetime.fromisoformat(g["created_at"]),
            )
            for g in data.get("admin_grants", [])
        }
        self.external_identities = {}
        for link in data.get("external_identities", []):
            provider = AuthProvider(link["provider"])
            self.external_identities[(provider.value, link["external_id"])] = ExternalIdentity(
                provider=provider,
                external_id=link["external_id"],
                user_id=link["user_id"],
                created_at=datetime.fromisoformat(link["created_at"]),
            )
        self.logger.info("memory_store_loaded", users=len(self.users), admins=len(self.admin_grants))
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "password_hash": user.password_hash,
            "email": user.email,
            "phone": user.phone,
            "email_verified": user.email_verified,
            "phone_verified": user.phone_verified,
            "is_deleted": user.is_deleted,
            "created_at": user.created_at.isoformat(),
            "updated_at": user.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            password_hash=data["password_hash"],
            email=data.get("email"),
            phone=data.get("phone"),
            email_verified=data.get("email_verified", False),
            phone_verified=data.get("phone_verified", False),
            is_deleted=data.get("is_deleted", False),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
