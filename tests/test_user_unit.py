"""Tests for profile edits and soft deletion."""

import pytest

from keyward.service.errors import (
    AlreadyDeletedError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    UsernameAlreadyExistsError,
    UserNotFoundError,
    VerificationCodeNotValidError,
)
from keyward.service.verification import ContactSelector
from keyward.storage.models import ChannelType

PASSWORD = "CorrectHorse123!"


class TestGetUser:
    def test_get_existing(self, user_service, make_user):
        user = make_user()
        assert user_service.get_user(user.id).username == "alice"

    def test_get_missing(self, user_service):
        with pytest.raises(UserNotFoundError):
            user_service.get_user("missing")


class TestUpdateUser:
    async def test_change_username(self, user_service, make_user):
        user = make_user()
        updated = await user_service.update_user(user.id, username="alice2")
        assert updated.username == "alice2"
        assert updated.updated_at >= user.updated_at

    async def test_username_conflict(self, user_service, make_user):
        user = make_user()
        make_user("bob", email="bob@example.com")
        with pytest.raises(UsernameAlreadyExistsError):
            await user_service.update_user(user.id, username="bob")

    async def test_change_password_requires_old(self, user_service, make_user, passwords):
        user = make_user()
        with pytest.raises(InvalidCredentialsError):
            await user_service.update_user(
                user.id, old_password="wrong", new_password="NewPassword456!"
            )
        with pytest.raises(InvalidCredentialsError):
            await user_service.update_user(user.id, new_password="NewPassword456!")

        updated = await user_service.update_user(
            user.id, old_password=PASSWORD, new_password="NewPassword456!"
        )
        passwords.verify(updated.password_hash, "NewPassword456!")

    async def test_change_email_with_code(self, user_service, verification, make_user):
        user = make_user()
        record = await verification.send_email(ContactSelector.bare_email("new@example.com"))

        updated = await user_service.update_user(
            user.id, email="new@example.com", email_code=record.code
        )

        assert updated.email == "new@example.com"
        assert updated.email_verified is True

    async def test_change_email_without_code(self, user_service, make_user):
        user = make_user()
        with pytest.raises(VerificationCodeNotValidError):
            await user_service.update_user(user.id, email="new@example.com")

    async def test_code_for_other_address_rejected(self, user_service, verification, make_user):
        user = make_user()
        record = await verification.send_email(ContactSelector.bare_email("other@example.com"))
        with pytest.raises(VerificationCodeNotValidError) as excinfo:
            await user_service.update_user(
                user.id, email="new@example.com", email_code=record.code
            )
        assert excinfo.value.channel == ChannelType.EMAIL

    async def test_change_phone_with_code(self, user_service, verification, make_user):
        user = make_user()
        record = await verification.send_sms(ContactSelector.bare_phone("+15550009"))
        updated = await user_service.update_user(
            user.id, phone="+15550009", phone_code=record.code
        )
        assert updated.phone == "+15550009"
        assert updated.phone_verified is True

    async def test_email_taken(self, user_service, verification, make_user):
        user = make_user()
        make_user("bob", email="bob@example.com")
        record = await verification.send_email(ContactSelector.bare_email("bob@example.com"))
        with pytest.raises(EmailAlreadyExistsError):
            await user_service.update_user(
                user.id, email="bob@example.com", email_code=record.code
            )

    async def test_deleted_user_cannot_update(self, user_service, make_user):
        user = make_user()
        user_service.delete_user(user.id)
        with pytest.raises(AlreadyDeletedError):
            await user_service.update_user(user.id, username="ghost")


class TestDeleteUser:
    def test_soft_delete_blanks_contacts(self, user_service, make_user, memory_store):
        user = make_user(phone="+15550001")
        deleted = user_service.delete_user(user.id)

        assert deleted.is_deleted is True
        assert deleted.email is None
        assert deleted.phone is None
        assert memory_store.get_user(user.id) is not None
        assert memory_store.get_user_by_email("alice@example.com") is None

    def test_delete_releases_contact_for_reuse(self, user_service, make_user):
        user = make_user()
        user_service.delete_user(user.id)
        other = make_user("alice2", email="alice@example.com")
        assert other.email == "alice@example.com"

    def test_delete_twice(self, user_service, make_user):
        user = make_user()
        user_service.delete_user(user.id)
        with pytest.raises(AlreadyDeletedError):
            user_service.delete_user(user.id)

    def test_delete_missing(self, user_service):
        with pytest.raises(UserNotFoundError):
            user_service.delete_user("missing")
