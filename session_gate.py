"""
Session Gate
============
Decides whether a caller is authenticated and privileged.

The gate is an explicit state holder. Identity provider callbacks and the
gate's own operations dispatch AuthEvents into it; each event bumps a
generation counter and only the newest event's outcome is kept, so a slow
privilege lookup can never overwrite a later sign-out.

State flow:
    UNKNOWN -> UNAUTHENTICATED | AUTHENTICATED_NON_PRIVILEGED | AUTHENTICATED_PRIVILEGED
    any     -> UNAUTHENTICATED  (sign_out)

Privilege checks fail closed: a missing operator record, an unknown role or
a store failure all mean "not privileged".

SessionRegistry keeps one gate per bearer token for the HTTP API.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set, Dict, Any, Callable, List, Tuple

from prometheus_client import Counter

from db import DocumentStore, StoreError, utc_now, to_store_timestamp
from identity import AuthUser, AuthError, BearerIdentity
from models import Operator, OperatorRole


logger = logging.getLogger(__name__)


ADMIN_USERS_TABLE = "admin_users"


sign_ins = Counter(
    'dashboard_sign_ins_total',
    'Operator sign-in attempts',
    ['result']
)


class SessionState(Enum):
    UNKNOWN = "unknown"  # First auth callback not seen yet
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED_NON_PRIVILEGED = "authenticated_non_privileged"
    AUTHENTICATED_PRIVILEGED = "authenticated_privileged"


class RouteDecision(Enum):
    """What a protected view should do for a given session state."""
    WAIT = "wait"  # Show a waiting indicator, never redirect
    REDIRECT_LOGIN = "redirect_login"
    REDIRECT_UNAUTHORIZED = "redirect_unauthorized"
    GRANT = "grant"


_ROUTES = {
    SessionState.UNKNOWN: RouteDecision.WAIT,
    SessionState.UNAUTHENTICATED: RouteDecision.REDIRECT_LOGIN,
    SessionState.AUTHENTICATED_NON_PRIVILEGED: RouteDecision.REDIRECT_UNAUTHORIZED,
    SessionState.AUTHENTICATED_PRIVILEGED: RouteDecision.GRANT,
}


def route_decision(state: SessionState) -> RouteDecision:
    return _ROUTES[state]


@dataclass(frozen=True)
class Session:
    state: SessionState
    user: Optional[AuthUser] = None
    role: Optional[OperatorRole] = None
    display_name: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def is_privileged(self) -> bool:
        return self.state == SessionState.AUTHENTICATED_PRIVILEGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "user": self.user.to_dict() if self.user else None,
            "is_privileged": self.is_privileged,
            "role": self.role.value if self.role else None,
            "display_name": self.display_name,
        }


UNKNOWN_SESSION = Session(SessionState.UNKNOWN)
SIGNED_OUT_SESSION = Session(SessionState.UNAUTHENTICATED)


@dataclass(frozen=True)
class AuthEvent:
    """A change of authenticated user, tagged with its dispatch generation."""
    generation: int
    user: Optional[AuthUser]


class SessionGate:
    """
    Holds one caller's session and keeps it in step with the identity provider.

    Call start() from inside the running event loop before use.
    """

    def __init__(self, identity, store: DocumentStore):
        self.identity = identity
        self.store = store

        self._session: Session = UNKNOWN_SESSION
        self._generation = 0
        self._current_user: Optional[AuthUser] = None
        self._inflight: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._pending: Set[asyncio.Task] = set()

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self):
        """Subscribe to identity provider changes."""
        if self._unsubscribe is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self.identity.subscribe_auth_changes(self._on_auth_change)
        logger.debug("Session gate subscribed to auth changes")

    async def stop(self):
        """Unsubscribe and wait for in-flight privilege checks."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    # ========================================================================
    # EVENT DISPATCH
    # ========================================================================

    def _on_auth_change(self, user: Optional[AuthUser]):
        # Provider callbacks can fire on executor threads
        self._loop.call_soon_threadsafe(self._handle_provider_change, user)

    def _handle_provider_change(self, user: Optional[AuthUser]):
        if user is not None and self._is_current_user(user):
            # Token refreshes and the echo of our own sign_in
            logger.debug(f"Auth change for current user {user.id}, already resolved")
            return
        self._dispatch(user)

    def _is_current_user(self, user: AuthUser) -> bool:
        return self._current_user is not None and self._current_user.id == user.id

    def _dispatch(self, user: Optional[AuthUser]) -> Optional[asyncio.Task]:
        """Open a new generation for user; returns its privilege check, if any."""
        self._generation += 1
        self._current_user = user
        event = AuthEvent(self._generation, user)

        if user is None:
            self._inflight = None
            self._apply(event, SIGNED_OUT_SESSION)
            return None

        task = self._loop.create_task(self._resolve(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        self._inflight = task
        return task

    def _apply(self, event: AuthEvent, session: Session) -> bool:
        """Store the outcome of event unless a newer event superseded it."""
        if event.generation != self._generation:
            logger.debug(
                "Discarding stale session result",
                extra={"generation": event.generation, "current": self._generation}
            )
            return False

        old_state = self._session.state
        self._session = session
        self._ready.set()

        if old_state != session.state:
            logger.info(
                f"Session state: {old_state.value} -> {session.state.value}",
                extra={
                    "user_id": session.user.id if session.user else None,
                    "from_state": old_state.value,
                    "to_state": session.state.value
                }
            )

        return True

    async def _resolve(self, event: AuthEvent) -> Session:
        operator = await self.lookup_operator(event.user.id)

        if operator is None:
            session = Session(
                SessionState.AUTHENTICATED_NON_PRIVILEGED,
                user=event.user,
                display_name=event.user.display_name
            )
        else:
            session = Session(
                SessionState.AUTHENTICATED_PRIVILEGED,
                user=event.user,
                role=operator.role,
                display_name=operator.display_name or event.user.display_name
            )

        self._apply(event, session)
        return session

    # ========================================================================
    # QUERIES
    # ========================================================================

    async def current_session(self) -> Session:
        """Current session, once the identity provider has reported in."""
        await self._ready.wait()
        return self._session

    def snapshot(self) -> Session:
        """Current session without waiting; may be UNKNOWN."""
        return self._session

    def route_decision(self) -> RouteDecision:
        return route_decision(self._session.state)

    async def lookup_operator(self, uid: str) -> Optional[Operator]:
        """Operator record for uid, or None. Never raises."""
        try:
            row = await self.store.get(ADMIN_USERS_TABLE, uid, id_field="uid")
        except StoreError as e:
            logger.warning(f"Operator lookup failed for {uid}, treating as unprivileged: {e}")
            return None

        if row is None:
            return None

        try:
            return Operator.from_record(row)
        except (KeyError, ValueError, TypeError, StoreError) as e:
            logger.warning(f"Unusable operator record for {uid}: {e}")
            return None

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    async def sign_in(self, email: str, password: str) -> Session:
        """
        Sign in and resolve privileges before returning.

        The provider also reports the new user as an auth change. Whichever
        arrives first starts the privilege check and the other joins it, so
        each sign-in is looked up exactly once.

        Raises:
            AuthError: On bad credentials or provider failure; the session
                state is left as it was
        """
        generation = self._generation

        try:
            auth = await self.identity.sign_in_with_password(email, password)
        except AuthError:
            sign_ins.labels(result="failure").inc()
            raise

        sign_ins.labels(result="success").inc()
        user = auth.user
        await self._touch_last_login(user)

        if self._generation > generation and self._is_current_user(user) and self._inflight is not None:
            return await self._inflight

        return await self._dispatch(user)

    async def _touch_last_login(self, user: AuthUser):
        try:
            await self.store.update(
                ADMIN_USERS_TABLE,
                user.id,
                {"last_login": to_store_timestamp(utc_now())},
                id_field="uid"
            )
        except StoreError as e:
            logger.warning(f"Failed to update last login for {user.id}: {e}")

    async def sign_out(self):
        """Drop the local session, then tell the provider. Idempotent."""
        self._dispatch(None)
        await self.identity.sign_out()


class SessionRegistry:
    """
    One SessionGate per bearer token, so every API caller is judged on its
    own session only.

    Gates are created on first sight of a token and dropped on sign-out,
    once their session is no longer authenticated, after ttl seconds, or
    when more than max_sessions are held (oldest first).
    """

    def __init__(
        self,
        identity,
        store: DocumentStore,
        ttl: float = 300.0,
        max_sessions: int = 1000,
        wait_timeout: float = 5.0
    ):
        self.identity = identity
        self.store = store
        self.ttl = ttl
        self.max_sessions = max_sessions
        self.wait_timeout = wait_timeout
        self._gates: "OrderedDict[str, Tuple[SessionGate, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._gates)

    def _remember(self, token: str, gate: SessionGate) -> List[SessionGate]:
        """Cache gate under token; returns the gates it displaced."""
        displaced = []

        previous = self._gates.pop(token, None)
        if previous is not None:
            displaced.append(previous[0])

        self._gates[token] = (gate, asyncio.get_running_loop().time())

        while len(self._gates) > self.max_sessions:
            _, (evicted, _) = self._gates.popitem(last=False)
            displaced.append(evicted)

        return displaced

    async def _forget(self, token: str, gate: SessionGate):
        entry = self._gates.get(token)
        if entry is not None and entry[0] is gate:
            del self._gates[token]
        await gate.stop()

    async def _gate_for(self, token: str) -> SessionGate:
        entry = self._gates.get(token)
        if entry is not None:
            gate, created = entry
            if asyncio.get_running_loop().time() - created <= self.ttl:
                return gate

        gate = SessionGate(BearerIdentity(self.identity, access_token=token), self.store)
        gate.start()

        for displaced in self._remember(token, gate):
            await displaced.stop()

        return gate

    async def session_for(self, token: Optional[str]) -> Session:
        """
        Session behind a bearer token.

        A token still being verified after wait_timeout comes back UNKNOWN.
        """
        if not token:
            return SIGNED_OUT_SESSION

        gate = await self._gate_for(token)

        try:
            session = await asyncio.wait_for(gate.current_session(), self.wait_timeout)
        except asyncio.TimeoutError:
            return gate.snapshot()

        if not session.is_authenticated:
            await self._forget(token, gate)

        return session

    async def sign_in(self, email: str, password: str) -> Tuple[str, Session]:
        """
        Sign in a new caller.

        Returns:
            The caller's access token and resolved session

        Raises:
            AuthError: On bad credentials or provider failure
        """
        identity = BearerIdentity(self.identity)
        gate = SessionGate(identity, self.store)
        gate.start()
        await gate.current_session()

        try:
            session = await gate.sign_in(email, password)
        except AuthError:
            await gate.stop()
            raise

        for displaced in self._remember(identity.access_token, gate):
            await displaced.stop()

        return identity.access_token, session

    async def sign_out(self, token: str):
        """Sign the token's caller out. Other callers are untouched."""
        entry = self._gates.pop(token, None)
        if entry is None:
            await self.identity.sign_out(token)
            return

        gate = entry[0]
        try:
            await gate.sign_out()
        finally:
            await gate.stop()

    async def request_password_reset(self, email: str):
        await self.identity.send_reset(email)
        logger.info("Password reset email requested")

    async def register_operator(self, email: str, password: str, display_name: str) -> Operator:
        """
        Create an account and its admin operator record.

        Raises:
            AuthError: If the identity provider refuses the account
            StoreError: If the operator record cannot be written
        """
        user = await self.identity.create_user(email, password, display_name)
        created_at = utc_now()

        await self.store.create(
            ADMIN_USERS_TABLE,
            {
                "uid": user.id,
                "email": user.email or email,
                "display_name": display_name,
                "role": OperatorRole.ADMIN.value,
                "created_at": to_store_timestamp(created_at),
            },
            id_field="uid"
        )

        logger.info(f"Registered operator {user.id}")

        return Operator(
            id=user.id,
            role=OperatorRole.ADMIN,
            email=user.email or email,
            display_name=display_name,
            created_at=created_at,
        )

    async def stop(self):
        gates = [gate for gate, _ in self._gates.values()]
        self._gates.clear()
        for gate in gates:
            await gate.stop()
        logger.info("Session registry stopped")
