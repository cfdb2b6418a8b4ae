from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Tuple

from keyward.logging import get_logger
from keyward.service.errors import (
    AlreadyDeletedError,
    ChannelNotProvidedError,
    ChannelNotVerifiedError,
    InvalidCredentialsError,
    RefreshTokenNotValidError,
    ServiceError,
    ValidationFailedError,
    VerificationCodeNotValidError,
    already_exists_for,
    translate_internal_errors,
)
from keyward.service.tokens import PasswordService, TokenSigner
from keyward.service.verification import (
    ContactSelector,
    UserReader,
    UserWriter,
    VerificationCodeStore,
    VerificationService,
)
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import (
    AdminGrant,
    AuthContext,
    AuthProvider,
    ChannelType,
    CodePurpose,
    ExternalProfile,
    NewUser,
    TokenPair,
    User,
    UserUpdate,
)

logger = get_logger(__name__)

EXTERNAL_USERNAME_MIN = 2
EXTERNAL_USERNAME_MAX = 32


class CredentialStore(UserReader, UserWriter, Protocol):
    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        email_verified: bool = False,
        phone_verified: bool = False,
    ) -> User: ...

    def get_admin_grant(self, user_id: str) -> Optional[AdminGrant]: ...

    def get_user_by_external_id(self, provider: AuthProvider, external_id: str) -> Optional[User]: ...

    def has_external_identity(self, user_id: str) -> bool: ...

    def add_external_user(
        self,
        username: str,
        password_hash: str,
        *,
        provider: AuthProvider,
        external_id: str,
    ) -> User: ...


class RefreshTokenStore(Protocol):
    async def set_refresh_token(self, token_id: str, user_id: str, ttl_seconds: int) -> None: ...

    async def get_refresh_token(self, token_id: str) -> Optional[str]: ...

    async def delete_refresh_token(self, token_id: str) -> None: ...

    async def replace_refresh_token(
        self, old_token_id: str, new_token_id: str, user_id: str, ttl_seconds: int
    ) -> bool: ...


class SessionCache(RefreshTokenStore, VerificationCodeStore, Protocol):
    pass


def _single_channel(
    email: Optional[str], phone: Optional[str]
) -> Tuple[ChannelType, str]:
    if email and not phone:
        return ChannelType.EMAIL, email
    if phone and not email:
        return ChannelType.PHONE, phone
    raise ChannelNotProvidedError()


class AuthService:
    """Login, signup, refresh rotation and password reset."""

    def __init__(
        self,
        store: CredentialStore,
        cache: SessionCache,
        signer: TokenSigner,
        passwords: PasswordService,
        verification: VerificationService,
        *,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.cache = cache
        self.signer = signer
        self.passwords = passwords
        self.verification = verification
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def _refresh_ttl_seconds(self) -> int:
        return int(self.refresh_ttl.total_seconds())

    def _admin_scale(self, user_id: str):
        grant = self.store.get_admin_grant(user_id)
        return grant.scale if grant else None

    def _access_token(self, user_id: str) -> Tuple[str, datetime]:
        token = self.signer.sign(
            user_id, self.access_ttl, admin_scale=self._admin_scale(user_id)
        )
        return token, self._now() + self.access_ttl

    async def _issue_pair(self, user_id: str) -> TokenPair:
        access, expires_at = self._access_token(user_id)
        refresh_id = str(uuid.uuid4())
        await self.cache.set_refresh_token(refresh_id, user_id, self._refresh_ttl_seconds)
        return TokenPair(access_token=access, refresh_token=refresh_id, expires_at=expires_at)

    async def _reissue_code(self, user: User, channel: ChannelType, ip_addr: Optional[str]) -> None:
        try:
            await self.verification.issue(
                ContactSelector.for_user(user), channel, ip_addr=ip_addr
            )
        except ServiceError as exc:
            self.logger.warning(
                "login_code_reissue_failed",
                user_id=user.id,
                channel=channel.value,
                error_code=exc.error_code,
            )

    @translate_internal_errors("login_failed")
    async def login(
        self,
        password: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> TokenPair:
        channel, value = _single_channel(email, phone)
        if channel == ChannelType.EMAIL:
            user = self.store.get_user_by_email(value)
        else:
            user = self.store.get_user_by_phone(value)
        if not user:
            raise InvalidCredentialsError()
        if user.is_deleted:
            raise AlreadyDeletedError()
        if user.contact(channel) != value:
            raise InvalidCredentialsError()
        if not user.is_verified(channel):
            await self._reissue_code(user, channel, ip_addr)
            raise ChannelNotVerifiedError(channel)
        self.passwords.verify(user.password_hash, password)

        pair = await self._issue_pair(user.id)
        self.logger.info("login_succeeded", user_id=user.id, channel=channel.value)
        return pair

    async def _consume_signup_code(
        self,
        channel: ChannelType,
        contact: Optional[str],
        code: Optional[str],
        ip_addr: Optional[str],
    ) -> bool:
        if not code:
            return False
        # Pop first so a rejected code cannot be retried
        record = await self.cache.pop_verification_code(code)
        if (
            not contact
            or record is None
            or record.purpose != CodePurpose.VERIFY
            or record.channel != channel
            or record.value != contact
            or record.ip_addr != ip_addr
        ):
            raise VerificationCodeNotValidError(channel)
        return True

    @translate_internal_errors("signup_failed")
    async def signup(
        self,
        new_user: NewUser,
        *,
        email_code: Optional[str] = None,
        phone_code: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> User:
        if not new_user.email and not new_user.phone:
            raise ChannelNotProvidedError()
        email_verified = await self._consume_signup_code(
            ChannelType.EMAIL, new_user.email, email_code, ip_addr
        )
        phone_verified = await self._consume_signup_code(
            ChannelType.PHONE, new_user.phone, phone_code, ip_addr
        )
        password_hash = self.passwords.hash(new_user.password)
        try:
            user = self.store.create_user(
                new_user.username,
                password_hash,
                email=new_user.email,
                phone=new_user.phone,
                email_verified=email_verified,
                phone_verified=phone_verified,
            )
        except ConstraintViolation as exc:
            raise already_exists_for(exc.field) from exc
        self.logger.info(
            "signup_completed",
            user_id=user.id,
            email_verified=email_verified,
            phone_verified=phone_verified,
        )
        return user

    def _register_external(self, profile: ExternalProfile) -> User:
        errors = {}
        if not EXTERNAL_USERNAME_MIN <= len(profile.username or "") <= EXTERNAL_USERNAME_MAX:
            errors["username"] = (
                f"length must be {EXTERNAL_USERNAME_MIN}..{EXTERNAL_USERNAME_MAX}"
            )
        if not profile.external_id:
            errors["external_id"] = "required"
        if errors:
            raise ValidationFailedError(errors)
        # Random suffix keeps provider handles from colliding with local usernames
        username = f"{profile.username}{secrets.randbelow(10**6):06d}"
        # Nobody knows this password; the account signs in through the provider
        password_hash = self.passwords.hash(secrets.token_urlsafe(32))
        try:
            user = self.store.add_external_user(
                username,
                password_hash,
                provider=profile.provider,
                external_id=profile.external_id,
            )
        except ConstraintViolation as exc:
            if exc.field == "external_identity":
                linked = self.store.get_user_by_external_id(profile.provider, profile.external_id)
                if linked:
                    return linked
            raise already_exists_for(exc.field) from exc
        self.logger.info(
            "external_user_created", user_id=user.id, provider=profile.provider.value
        )
        return user

    @translate_internal_errors("external_login_failed")
    async def login_external(self, profile: ExternalProfile) -> TokenPair:
        """Sign in with an identity an external provider already vouched for.

        The first login creates the account and links it to the provider;
        later logins only look the link up.
        """
        user = self.store.get_user_by_external_id(profile.provider, profile.external_id)
        if user is None:
            user = self._register_external(profile)
        if user.is_deleted:
            raise AlreadyDeletedError()
        pair = await self._issue_pair(user.id)
        self.logger.info(
            "external_login_succeeded", user_id=user.id, provider=profile.provider.value
        )
        return pair

    @translate_internal_errors("refresh_failed")
    async def refresh_tokens(self, refresh_token: str) -> TokenPair:
        user_id = await self.cache.get_refresh_token(refresh_token)
        if not user_id:
            raise RefreshTokenNotValidError()

        user = self.store.get_user(user_id)
        failure: Optional[ServiceError] = None
        if not user:
            failure = RefreshTokenNotValidError()
        elif user.is_deleted:
            failure = AlreadyDeletedError()
        elif not user.has_verified_channel and not self.store.has_external_identity(user.id):
            failure = ChannelNotVerifiedError(None)
        if failure is not None:
            await self.cache.delete_refresh_token(refresh_token)
            raise failure

        new_id = str(uuid.uuid4())
        rotated = await self.cache.replace_refresh_token(
            refresh_token, new_id, user_id, self._refresh_ttl_seconds
        )
        if not rotated:
            self.logger.info("refresh_token_rotation_lost", user_id=user_id)
            raise RefreshTokenNotValidError()
        access, expires_at = self._access_token(user_id)
        return TokenPair(access_token=access, refresh_token=new_id, expires_at=expires_at)

    @translate_internal_errors("password_reset_failed")
    async def reset_password(self, code: str, new_password: str) -> User:
        record = await self.cache.pop_verification_code(code)
        if record is None or record.purpose != CodePurpose.RESET or not record.user_id:
            raise VerificationCodeNotValidError(record.channel if record else None)
        user = self.store.get_user(record.user_id)
        if not user:
            raise VerificationCodeNotValidError(record.channel)
        if user.is_deleted:
            raise AlreadyDeletedError()
        if user.contact(record.channel) != record.value:
            raise VerificationCodeNotValidError(record.channel)
        updated = self.store.update_user(
            user.id, UserUpdate(password_hash=self.passwords.hash(new_password))
        )
        if not updated:
            raise VerificationCodeNotValidError(record.channel)
        self.logger.info("password_reset", user_id=user.id)
        return updated

    def authenticate(self, access_token: str) -> AuthContext:
        claims = self.signer.verify(access_token)
        return AuthContext(user_id=claims.subject, admin_scale=claims.admin_scale)

    @translate_internal_errors("revoke_failed")
    async def revoke(self, refresh_token: str) -> None:
        await self.cache.delete_refresh_token(refresh_token)
