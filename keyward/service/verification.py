from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from typing import Optional, Protocol

from keyward.logging import get_logger
from keyward.service.delivery import DeliveryDispatcher, DeliveryJob
from keyward.service.errors import (
    AlreadyDeletedError,
    ChannelNotProvidedError,
    InternalError,
    UserNotFoundError,
    VerificationCodeNotValidError,
    translate_internal_errors,
)
from keyward.storage.models import (
    ChannelType,
    CodePurpose,
    User,
    UserUpdate,
    VerificationCode,
)

logger = get_logger(__name__)

DEFAULT_CODE_LENGTH = 6
DEFAULT_CODE_TTL_SECONDS = 5 * 60
# Collisions in a 10**6 keyspace are rare; a handful of redraws is plenty
MAX_CODE_ATTEMPTS = 5


class UserReader(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...


class UserWriter(Protocol):
    def update_user(self, user_id: str, update: UserUpdate) -> Optional[User]: ...


class VerificationCodeStore(Protocol):
    async def set_verification_code(self, code: VerificationCode, ttl_seconds: int) -> bool: ...

    async def pop_verification_code(self, code: str) -> Optional[VerificationCode]: ...


def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


@dataclass(frozen=True)
class ContactTarget:
    user_id: Optional[str]
    email: Optional[str] = None
    phone: Optional[str] = None

    def contact(self, channel: ChannelType) -> Optional[str]:
        return self.email if channel == ChannelType.EMAIL else self.phone


@dataclass(frozen=True)
class ContactSelector:
    """Says who a code is for: a known user, a lookup, or a bare contact."""

    kind: str
    value: Optional[str] = None
    user: Optional[User] = None

    @classmethod
    def for_user(cls, user: User) -> "ContactSelector":
        return cls(kind="user", user=user)

    @classmethod
    def lookup_email(cls, email: str) -> "ContactSelector":
        return cls(kind="lookup_email", value=email)

    @classmethod
    def lookup_phone(cls, phone: str) -> "ContactSelector":
        return cls(kind="lookup_phone", value=phone)

    @classmethod
    def bare_email(cls, email: str) -> "ContactSelector":
        return cls(kind="bare_email", value=email)

    @classmethod
    def bare_phone(cls, phone: str) -> "ContactSelector":
        return cls(kind="bare_phone", value=phone)

    def resolve(self, users: UserReader) -> ContactTarget:
        if self.kind == "user":
            if self.user is None:
                raise ValueError("user selector without a user")
            return ContactTarget(self.user.id, self.user.email, self.user.phone)
        if self.kind == "bare_email":
            return ContactTarget(None, email=self.value)
        if self.kind == "bare_phone":
            return ContactTarget(None, phone=self.value)
        if self.kind == "lookup_email":
            found = users.get_user_by_email(self.value) if self.value else None
        elif self.kind == "lookup_phone":
            found = users.get_user_by_phone(self.value) if self.value else None
        else:
            raise ValueError(f"unknown contact selector {self.kind!r}")
        if not found:
            raise UserNotFoundError()
        return ContactTarget(found.id, found.email, found.phone)


class VerificationService:
    """Issues and redeems single-use contact verification codes."""

    def __init__(
        self,
        users: UserReader,
        writer: UserWriter,
        codes: VerificationCodeStore,
        dispatcher: DeliveryDispatcher,
        *,
        code_length: int = DEFAULT_CODE_LENGTH,
        code_ttl_seconds: int = DEFAULT_CODE_TTL_SECONDS,
    ) -> None:
        self.users = users
        self.writer = writer
        self.codes = codes
        self.dispatcher = dispatcher
        self.code_length = code_length
        self.code_ttl_seconds = code_ttl_seconds
        self.logger = logger

    @translate_internal_errors("verification_issue_failed")
    async def issue(
        self,
        selector: ContactSelector,
        channel: ChannelType,
        *,
        ip_addr: Optional[str] = None,
        purpose: CodePurpose = CodePurpose.VERIFY,
    ) -> VerificationCode:
        """Store a fresh code for the selected contact and queue its delivery.

        Earlier outstanding codes for the same contact stay valid until they
        expire or are redeemed.
        """
        target = selector.resolve(self.users)
        destination = target.contact(channel)
        if not destination:
            raise ChannelNotProvidedError(channel)

        for _ in range(MAX_CODE_ATTEMPTS):
            record = VerificationCode(
                code=generate_code(self.code_length),
                channel=channel,
                value=destination,
                ip_addr=ip_addr,
                user_id=target.user_id,
                purpose=purpose,
            )
            if await self.codes.set_verification_code(record, self.code_ttl_seconds):
                break
        else:
            self.logger.error("verification_code_keyspace_exhausted", channel=channel.value)
            raise InternalError("could not allocate verification code")

        queued = self.dispatcher.submit(DeliveryJob(channel, destination, record.code))
        self.logger.info(
            "verification_code_issued",
            channel=channel.value,
            purpose=purpose.value,
            user_id=target.user_id,
            queued=queued,
        )
        return record

    async def send_email(
        self,
        selector: ContactSelector,
        *,
        ip_addr: Optional[str] = None,
        purpose: CodePurpose = CodePurpose.VERIFY,
    ) -> VerificationCode:
        return await self.issue(selector, ChannelType.EMAIL, ip_addr=ip_addr, purpose=purpose)

    async def send_sms(
        self,
        selector: ContactSelector,
        *,
        ip_addr: Optional[str] = None,
        purpose: CodePurpose = CodePurpose.VERIFY,
    ) -> VerificationCode:
        return await self.issue(selector, ChannelType.PHONE, ip_addr=ip_addr, purpose=purpose)

    async def request_code(
        self,
        selector: ContactSelector,
        channel: ChannelType,
        *,
        ip_addr: Optional[str] = None,
        purpose: CodePurpose = CodePurpose.VERIFY,
    ) -> Optional[VerificationCode]:
        """Like ``issue`` but an unknown user or missing contact is a silent no-op.

        Callers facing the public never learn whether an address is registered.
        """
        try:
            return await self.issue(selector, channel, ip_addr=ip_addr, purpose=purpose)
        except (UserNotFoundError, ChannelNotProvidedError) as exc:
            self.logger.info(
                "verification_code_request_ignored",
                channel=channel.value,
                reason=exc.error_code,
            )
            return None

    async def request_password_reset(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Optional[VerificationCode]:
        if email:
            selector, channel = ContactSelector.lookup_email(email), ChannelType.EMAIL
        elif phone:
            selector, channel = ContactSelector.lookup_phone(phone), ChannelType.PHONE
        else:
            raise ChannelNotProvidedError()
        return await self.request_code(
            selector, channel, ip_addr=ip_addr, purpose=CodePurpose.RESET
        )

    @translate_internal_errors("verification_redeem_failed")
    async def redeem(self, code: str) -> User:
        """Consume a code and mark the attested channel verified."""
        record = await self.codes.pop_verification_code(code)
        if record is None or record.purpose != CodePurpose.VERIFY or not record.user_id:
            raise VerificationCodeNotValidError(record.channel if record else None)

        user = self.users.get_user(record.user_id)
        if not user:
            raise VerificationCodeNotValidError(record.channel)
        if user.is_deleted:
            raise AlreadyDeletedError()
        if user.contact(record.channel) != record.value:
            # The contact changed after the code was sent
            self.logger.info(
                "verification_code_contact_changed",
                user_id=user.id,
                channel=record.channel.value,
            )
            raise VerificationCodeNotValidError(record.channel)

        updated = self.writer.update_user(user.id, UserUpdate.verified(record.channel))
        if not updated:
            raise VerificationCodeNotValidError(record.channel)
        self.logger.info(
            "contact_verified", user_id=updated.id, channel=record.channel.value
        )
        return updated
