from __future__ import annotations

from typing import Optional, Protocol

from keyward.logging import get_logger
from keyward.service.errors import (
    AlreadyDeletedError,
    UserNotFoundError,
    VerificationCodeNotValidError,
    already_exists_for,
    translate_internal_errors,
)
from keyward.service.tokens import PasswordService
from keyward.service.verification import UserReader, UserWriter, VerificationCodeStore
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import ChannelType, CodePurpose, User, UserUpdate

logger = get_logger(__name__)


class ProfileStore(UserReader, UserWriter, Protocol):
    def soft_delete_user(self, user_id: str) -> Optional[User]: ...


class UserService:
    """Profile reads, edits and soft deletion."""

    def __init__(
        self,
        store: ProfileStore,
        codes: VerificationCodeStore,
        passwords: PasswordService,
    ) -> None:
        self.store = store
        self.codes = codes
        self.passwords = passwords
        self.logger = logger

    @translate_internal_errors("user_get_failed")
    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    async def _check_contact_code(
        self, channel: ChannelType, value: str, code: Optional[str]
    ) -> None:
        if not code:
            raise VerificationCodeNotValidError(channel)
        record = await self.codes.pop_verification_code(code)
        if (
            record is None
            or record.purpose != CodePurpose.VERIFY
            or record.channel != channel
            or record.value != value
        ):
            raise VerificationCodeNotValidError(channel)

    @translate_internal_errors("user_update_failed")
    async def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        email_code: Optional[str] = None,
        phone_code: Optional[str] = None,
        old_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> User:
        """Apply a profile edit.

        A new email or phone must come with a code proving it, which also marks
        that channel verified. Changing the password requires the old one.
        """
        user = self.get_user(user_id)
        if user.is_deleted:
            raise AlreadyDeletedError()

        update = UserUpdate()
        if new_password is not None:
            self.passwords.verify(user.password_hash, old_password or "")
            update.password_hash = self.passwords.hash(new_password)
        if username is not None and username != user.username:
            update.username = username
        if email is not None and email != user.email:
            await self._check_contact_code(ChannelType.EMAIL, email, email_code)
            update.email = email
            update.email_verified = True
        if phone is not None and phone != user.phone:
            await self._check_contact_code(ChannelType.PHONE, phone, phone_code)
            update.phone = phone
            update.phone_verified = True

        try:
            updated = self.store.update_user(user_id, update)
        except ConstraintViolation as exc:
            raise already_exists_for(exc.field) from exc
        if not updated:
            raise UserNotFoundError()
        self.logger.info("user_updated", user_id=user_id, fields=sorted(update.changes()))
        return updated

    @translate_internal_errors("user_delete_failed")
    def delete_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if user.is_deleted:
            raise AlreadyDeletedError()
        deleted = self.store.soft_delete_user(user_id)
        if not deleted:
            raise UserNotFoundError()
        self.logger.info("user_deleted", user_id=user_id)
        return deleted
