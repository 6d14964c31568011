from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from crmcore.config import Settings
from crmcore.logging import get_logger
from crmcore.service.audit import AuditService
from crmcore.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    AuthenticationError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidTokenError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionRevokedError,
)
from crmcore.service.lockout import LockoutPolicy, LockoutState, remaining_minutes
from crmcore.service.sessions import SessionManager, SessionStore
from crmcore.service.tokens import TokenClaims, TokenCodec, TokenError, TokenType
from crmcore.storage.errors import ConstraintViolation
from crmcore.storage.models import (
    AuditAction,
    AuditOutcome,
    Organization,
    Role,
    Session,
    User,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(SessionStore, Protocol):
    def count_users(self) -> int: ...

    def create_organization_with_user(
        self,
        org_name: str,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        role: Role = Role.REP,
        email_verified: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Tuple[Organization, User]: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_login_state(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthContext:
    """Identity attached to a request after a successful bearer check."""

    user_id: str
    email: Optional[str]
    org_id: Optional[str]
    role: Role
    session_id: str
    token_family: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    token_family: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class UserProfile:
    id: str
    email: str
    role: Role
    org_id: str
    organization_name: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: bool = False
    last_login_at: Optional[datetime] = None


@dataclass
class AuthResult:
    user: UserProfile
    tokens: TokenPair


class AuthService:
    """Registration, login, refresh rotation, logout and one-shot tokens.

    Storage calls are synchronous; the flows are ``async`` so route handlers
    can await them uniformly.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        audit: Optional[AuditService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.codec = TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=self.clock,
        )
        self.sessions = SessionManager(
            store,
            session_ttl=timedelta(days=settings.refresh_token_ttl_days),
            clock=self.clock,
        )
        self.lockout = LockoutPolicy(
            max_failed_attempts=settings.max_failed_login_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_duration_minutes),
        )
        self.audit = audit or AuditService(store)
        self.access_token_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.password_reset_ttl = timedelta(minutes=settings.password_reset_ttl_minutes)
        self.email_verification_ttl = timedelta(hours=settings.email_verification_ttl_hours)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_dummy_verification(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    @staticmethod
    def _password_fingerprint(record: Optional[tuple[str, str]]) -> str:
        # A reset token stops matching as soon as the hash it was issued for changes
        stored_hash = record[0] if record else ""
        return hashlib.sha256(stored_hash.encode()).hexdigest()[:32]

    # -- tokens ------------------------------------------------------------

    def _issue_token_pair(self, user: User, session: Session) -> TokenPair:
        now = self._now()
        access_claims = TokenClaims(
            type=TokenType.ACCESS,
            sub=user.id,
            jti=session.id,
            org_id=user.org_id,
            role=user.role.value,
            email=user.email,
            token_family=session.token_family,
        )
        refresh_ttl = session.expires_at - now
        return TokenPair(
            access_token=self.codec.issue(access_claims, self.access_token_ttl),
            refresh_token=self.codec.issue(
                replace(access_claims, type=TokenType.REFRESH), refresh_ttl
            ),
            session_id=session.id,
            token_family=session.token_family,
            access_expires_at=now + self.access_token_ttl,
            refresh_expires_at=session.expires_at,
        )

    def _verify_token(self, token: str, expected_type: TokenType) -> TokenClaims:
        try:
            return self.codec.verify(token, expected_type)
        except TokenError as exc:
            # The specific failure stays in the logs; callers only see a 401
            self.logger.info(
                "token_rejected",
                expected_type=expected_type.value,
                reason=type(exc).__name__,
            )
            raise InvalidTokenError() from None

    # -- profiles ----------------------------------------------------------

    def _profile(self, user: User, org: Optional[Organization] = None) -> UserProfile:
        if org is None:
            org = self.store.get_organization(user.org_id)
        return UserProfile(
            id=user.id,
            email=user.email,
            role=user.role,
            org_id=user.org_id,
            organization_name=org.name if org else None,
            first_name=user.first_name,
            last_name=user.last_name,
            email_verified=user.email_verified,
            last_login_at=user.last_login_at,
        )

    async def get_current_user(self, user_id: str) -> Optional[UserProfile]:
        user = self.store.get_user(user_id)
        if not user:
            return None
        return self._profile(user)

    # -- flows -------------------------------------------------------------

    async def register(
        self,
        org_name: str,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        email = self._normalize_email(email)
        # Uniqueness is global across organizations
        if self.store.get_user_by_email(email):
            self.logger.info("registration_duplicate_email")
            raise DuplicateEmailError()
        pwd_hash, algo = self._hash_password(password)
        first_user = self.store.count_users() == 0
        role = Role.ADMIN if first_user else Role.REP
        try:
            org, user = self.store.create_organization_with_user(
                org_name,
                email,
                pwd_hash,
                algo,
                role=role,
                email_verified=first_user,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation:
            raise DuplicateEmailError()
        session = self.sessions.create_session(
            user.id, ip_address=ip_address, user_agent=user_agent
        )
        tokens = self._issue_token_pair(user, session)
        self.audit.record(
            AuditAction.CREATE,
            org_id=org.id,
            user_id=user.id,
            object_type="User",
            object_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(
            "user_registered",
            user_id=user.id,
            org_id=org.id,
            role=user.role.value,
        )
        return AuthResult(user=self._profile(user, org), tokens=tokens)

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        email = self._normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            self._burn_dummy_verification(password)
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()

        now = self._now()
        state = LockoutState(user.failed_login_attempts, user.locked_until)
        remaining = self.lockout.remaining_lockout(state, now)
        if remaining is not None:
            self._audit_login_failure(user, "account locked", ip_address, user_agent)
            self.logger.warning("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(remaining_minutes(remaining))

        if not user.is_active:
            self._audit_login_failure(user, "account deactivated", ip_address, user_agent)
            self.logger.warning("login_rejected_deactivated", user_id=user.id)
            raise AccountDeactivatedError()

        if not self.verify_password(user.id, password):
            failed = self.lockout.register_failure(state, now)
            self.store.update_login_state(
                user.id,
                failed_login_attempts=failed.failed_attempts,
                locked_until=failed.locked_until,
            )
            self._audit_login_failure(user, "invalid password", ip_address, user_agent)
            self.logger.warning(
                "login_failed",
                reason="invalid_password",
                user_id=user.id,
                failed_attempts=failed.failed_attempts,
                locked=failed.locked_until is not None,
            )
            raise InvalidCredentialsError()

        cleared = self.lockout.register_success(state)
        user = (
            self.store.update_login_state(
                user.id,
                failed_login_attempts=cleared.failed_attempts,
                locked_until=cleared.locked_until,
                last_login_at=now,
            )
            or user
        )
        session = self.sessions.create_session(
            user.id, ip_address=ip_address, user_agent=user_agent
        )
        tokens = self._issue_token_pair(user, session)
        self.audit.record(
            AuditAction.LOGIN,
            org_id=user.org_id,
            user_id=user.id,
            object_type="Session",
            object_id=session.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return AuthResult(user=self._profile(user), tokens=tokens)

    def _audit_login_failure(
        self,
        user: User,
        reason: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        self.audit.record(
            AuditAction.LOGIN,
            org_id=user.org_id,
            user_id=user.id,
            object_type="User",
            object_id=user.id,
            outcome=AuditOutcome.FAILURE,
            error_message=reason,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def logout(
        self,
        user_id: str,
        refresh_token: Optional[str] = None,
        *,
        org_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Revoke one session (when a refresh token is given) or all of them.

        Never fails: an unusable refresh token just means nothing is revoked.
        """
        revoked = 0
        if refresh_token:
            try:
                claims = self.codec.verify(refresh_token, TokenType.REFRESH)
            except TokenError as exc:
                self.logger.info(
                    "logout_refresh_token_ignored",
                    user_id=user_id,
                    reason=type(exc).__name__,
                )
            else:
                if claims.sub != user_id:
                    self.logger.warning(
                        "logout_refresh_token_foreign", user_id=user_id
                    )
                elif self.sessions.revoke(claims.jti):
                    revoked = 1
        else:
            revoked = self.sessions.revoke_all_for_user(user_id)
        self.audit.record(
            AuditAction.LOGOUT,
            org_id=org_id,
            user_id=user_id,
            object_type="Session",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(
            "logout_completed",
            user_id=user_id,
            scope="session" if refresh_token else "all",
            revoked=revoked,
        )
        return revoked

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        claims = self._verify_token(refresh_token, TokenType.REFRESH)
        session = self.sessions.get_session(claims.jti)
        if session is None or session.user_id != claims.sub:
            # token_family ties a replayed token back to its original login
            self.logger.warning(
                "refresh_session_missing",
                user_id=claims.sub,
                session_id=claims.jti,
                token_family=claims.token_family,
            )
            raise SessionNotFoundError()
        if session.is_expired(self._now()):
            self.sessions.revoke(session.id)
            raise SessionExpiredError()
        user = self.store.get_user(claims.sub)
        if not user or not user.is_active:
            self.logger.warning("refresh_rejected_inactive", user_id=claims.sub)
            raise AccountDeactivatedError()
        new_session = self.sessions.rotate_session(
            session.id, ip_address=ip_address, user_agent=user_agent
        )
        tokens = self._issue_token_pair(user, new_session)
        self.logger.info(
            "tokens_refreshed",
            user_id=user.id,
            session_id=new_session.id,
            token_family=new_session.token_family,
        )
        return tokens

    async def verify_access_token(self, token: str) -> AuthContext:
        claims = self._verify_token(token, TokenType.ACCESS)
        if not self.sessions.is_live(claims.jti):
            self.logger.info("access_token_session_revoked", session_id=claims.jti)
            raise SessionRevokedError()
        return AuthContext(
            user_id=claims.sub,
            email=claims.email,
            org_id=claims.org_id,
            role=Role(claims.role),
            session_id=claims.jti,
            token_family=claims.token_family,
        )

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        return await self.verify_access_token(token)

    async def authenticate_optional(
        self, authorization: Optional[str]
    ) -> Optional[AuthContext]:
        """Like :meth:`authenticate` but an absent or bad token yields None."""
        if not authorization:
            return None
        try:
            return await self.authenticate(authorization)
        except AuthenticationError:
            return None

    # -- one-shot tokens ---------------------------------------------------

    async def forgot_password(self, email: str) -> Optional[str]:
        """Return a reset token, or None for an unknown email.

        Callers must answer identically in both cases.
        """
        user = self.store.get_user_by_email(self._normalize_email(email))
        if not user:
            self.logger.info("password_reset_requested", known=False)
            return None
        token = self.codec.issue(
            TokenClaims(
                type=TokenType.PASSWORD_RESET,
                sub=user.id,
                jti=str(uuid.uuid4()),
                org_id=user.org_id,
                email=user.email,
                pwd=self._password_fingerprint(self.store.get_password_record(user.id)),
            ),
            self.password_reset_ttl,
        )
        self.logger.info("password_reset_requested", known=True, user_id=user.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> None:
        claims = self._verify_token(token, TokenType.PASSWORD_RESET)
        user = self.store.get_user(claims.sub)
        if not user:
            raise InvalidTokenError()
        current = self._password_fingerprint(self.store.get_password_record(user.id))
        if not claims.pwd or not hmac.compare_digest(claims.pwd, current):
            self.logger.warning("password_reset_token_stale", user_id=user.id)
            raise InvalidTokenError()
        pwd_hash, algo = self._hash_password(new_password)
        self.store.save_password(user.id, pwd_hash, algo)
        self.store.update_login_state(
            user.id, failed_login_attempts=0, locked_until=None
        )
        revoked = self.sessions.revoke_all_for_user(user.id)
        self.audit.record(
            AuditAction.UPDATE,
            org_id=user.org_id,
            user_id=user.id,
            object_type="User",
            object_id=user.id,
        )
        self.logger.info(
            "password_reset_completed", user_id=user.id, sessions_revoked=revoked
        )

    def _issue_email_verification_token(self, user: User) -> str:
        return self.codec.issue(
            TokenClaims(
                type=TokenType.EMAIL_VERIFICATION,
                sub=user.id,
                jti=str(uuid.uuid4()),
                org_id=user.org_id,
                email=user.email,
            ),
            self.email_verification_ttl,
        )

    async def verify_email(self, token: str) -> bool:
        """Mark the token's user verified; False when it already was."""
        claims = self._verify_token(token, TokenType.EMAIL_VERIFICATION)
        user = self.store.get_user(claims.sub)
        if not user or (claims.email and claims.email != user.email):
            raise InvalidTokenError()
        if user.email_verified:
            self.logger.info("email_already_verified", user_id=user.id)
            return False
        self.store.mark_email_verified(user.id)
        self.audit.record(
            AuditAction.UPDATE,
            org_id=user.org_id,
            user_id=user.id,
            object_type="User",
            object_id=user.id,
        )
        self.logger.info("email_verified", user_id=user.id)
        return True

    async def resend_verification_email(self, email: str) -> Optional[str]:
        user = self.store.get_user_by_email(self._normalize_email(email))
        if not user or user.email_verified:
            self.logger.info("email_verification_resend_skipped")
            return None
        self.logger.info("email_verification_resent", user_id=user.id)
        return self._issue_email_verification_token(user)
