"""
Identity Provider Adapter
=========================
Wraps Supabase auth behind the small contract the session gate needs:
password sign-in, auth change subscription, sign-out, reset email and
operator account creation.

The Supabase client is synchronous, so calls run in the default executor.
Auth change callbacks may therefore arrive on executor threads.

BearerIdentity narrows the provider to one API caller: it is pinned to that
caller's access token and feeds auth changes for that token only.
"""

import asyncio
import logging
import re
from typing import Callable, Optional, Any
from dataclasses import dataclass

from supabase import Client, ClientOptions, create_client
from supabase import AuthError as ProviderAuthError


logger = logging.getLogger(__name__)


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthError(Exception):
    """Raised on bad credentials, unreachable provider or unusable email."""
    pass


@dataclass(frozen=True)
class AuthUser:
    """Opaque authenticated-user handle."""
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None

    def to_dict(self):
        return {"id": self.id, "email": self.email, "display_name": self.display_name}


@dataclass(frozen=True)
class AuthSession:
    """Result of a password sign-in."""
    user: AuthUser
    access_token: str


AuthCallback = Callable[[Optional[AuthUser]], None]


def validate_email(email: str) -> str:
    """
    Normalize an email address.

    Raises:
        AuthError: If the address is not shaped like an email
    """
    email = (email or "").strip()
    if not EMAIL_PATTERN.match(email):
        raise AuthError(f"Invalid email address: {email!r}")
    return email


def _to_auth_user(user: Any) -> Optional[AuthUser]:
    if user is None:
        return None
    metadata = getattr(user, "user_metadata", None) or {}
    return AuthUser(
        id=str(user.id),
        email=getattr(user, "email", None),
        display_name=metadata.get("display_name"),
    )


def create_sign_in_client(url: str, key: str) -> Client:
    """
    Client used for a single password sign-in.

    Signing in on the shared client would swap its service role session for
    the operator's, so every sign-in gets its own short-lived client.
    """
    return create_client(
        url,
        key,
        options=ClientOptions(auto_refresh_token=False, persist_session=False)
    )


class SupabaseIdentityProvider:
    """Identity provider backed by Supabase auth."""

    def __init__(
        self,
        client: Client,
        reset_redirect_url: Optional[str] = None,
        sign_in_client: Optional[Callable[[], Client]] = None
    ):
        self.client = client
        self.reset_redirect_url = reset_redirect_url
        self.sign_in_client = sign_in_client

    async def _call(self, action: str, call: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, call)
        except ProviderAuthError as e:
            logger.warning(f"Auth {action} rejected: {e}")
            raise AuthError(str(e)) from e
        except Exception as e:
            logger.error(f"Auth {action} failed: {e}")
            raise AuthError(f"Identity provider unavailable: {e}") from e

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        email = validate_email(email)
        client = self.sign_in_client() if self.sign_in_client else self.client
        response = await self._call(
            "sign_in",
            lambda: client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        )

        user = _to_auth_user(response.user)
        if user is None or response.session is None:
            raise AuthError("Sign-in returned no session")
        return AuthSession(user=user, access_token=response.session.access_token)

    async def get_user(self, access_token: str) -> AuthUser:
        """
        User an access token belongs to.

        Raises:
            AuthError: If the token is invalid, expired or revoked
        """
        response = await self._call("get_user", lambda: self.client.auth.get_user(access_token))

        user = _to_auth_user(response.user if response else None)
        if user is None:
            raise AuthError("Access token has no user")
        return user

    async def create_user(self, email: str, password: str, display_name: str) -> AuthUser:
        """
        Create a confirmed account without touching the current session.
        Needs the service role key.
        """
        email = validate_email(email)
        response = await self._call(
            "create_user",
            lambda: self.client.auth.admin.create_user({
                "email": email,
                "password": password,
                "email_confirm": True,
                "user_metadata": {"display_name": display_name},
            })
        )

        user = _to_auth_user(response.user)
        if user is None:
            raise AuthError("Account creation returned no user")
        return user

    async def sign_out(self, access_token: Optional[str] = None):
        """Sign out this client's session, or revoke access_token when given."""
        if access_token is None:
            await self._call("sign_out", self.client.auth.sign_out)
        else:
            await self._call("sign_out", lambda: self.client.auth.admin.sign_out(access_token))

    async def send_reset(self, email: str):
        email = validate_email(email)
        options = {"redirect_to": self.reset_redirect_url} if self.reset_redirect_url else {}
        await self._call(
            "reset_password",
            lambda: self.client.auth.reset_password_for_email(email, options)
        )

    def subscribe_auth_changes(self, callback: AuthCallback) -> Callable[[], None]:
        """
        Register for sign-in/sign-out notifications.

        The current session is reported immediately so subscribers always get
        a first callback.

        Returns:
            Function that cancels the subscription
        """
        def on_change(event, session):
            logger.debug(f"Auth event: {event}")
            callback(_to_auth_user(session.user) if session else None)

        subscription = self.client.auth.on_auth_state_change(on_change)

        try:
            session = self.client.auth.get_session()
        except ProviderAuthError as e:
            logger.warning(f"No stored session: {e}")
            session = None

        callback(_to_auth_user(session.user) if session else None)

        return subscription.unsubscribe


class BearerIdentity:
    """
    One API caller's view of the identity provider, pinned to its bearer token.

    Feeds the same changes a client-side SDK would: the token's user on
    subscribe (verified with the provider unless already known), the new user
    after a password sign-in, and None after sign-out. Must be used from
    inside the running event loop.
    """

    def __init__(self, provider, access_token: Optional[str] = None, user: Optional[AuthUser] = None):
        self.provider = provider
        self.access_token = access_token
        self.user = user
        self._callback: Optional[AuthCallback] = None
        self._verify_task: Optional[asyncio.Task] = None

    def _emit(self, user: Optional[AuthUser]):
        if self._callback is not None:
            self._callback(user)

    def subscribe_auth_changes(self, callback: AuthCallback) -> Callable[[], None]:
        self._callback = callback

        if self.access_token is None or self.user is not None:
            callback(self.user)
        else:
            self._verify_task = asyncio.get_running_loop().create_task(
                self._verify(self.access_token)
            )

        return self._unsubscribe

    def _unsubscribe(self):
        self._callback = None
        if self._verify_task is not None:
            self._verify_task.cancel()

    async def _verify(self, access_token: str):
        try:
            user = await self.provider.get_user(access_token)
        except AuthError as e:
            logger.info(f"Bearer token rejected: {e}")
            user = None

        # A sign-in or sign-out may have replaced the token meanwhile
        if access_token == self.access_token:
            self.user = user
            self._emit(user)

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        auth = await self.provider.sign_in_with_password(email, password)
        self.access_token = auth.access_token
        self.user = auth.user
        self._emit(auth.user)
        return auth

    async def sign_out(self):
        access_token = self.access_token
        self.access_token = None
        self.user = None
        self._emit(None)

        if access_token is not None:
            await self.provider.sign_out(access_token)

    async def create_user(self, email: str, password: str, display_name: str) -> AuthUser:
        return await self.provider.create_user(email, password, display_name)

    async def send_reset(self, email: str):
        await self.provider.send_reset(email)
