"""Cookie-backed session store.

Owns the durable session records and their lifecycle:

    UNAUTHENTICATED --create_session/adopt/restore--> ACTIVE
    ACTIVE --refresh_token--> ACTIVE (expires_at = now + session_timeout)
    ACTIVE --time passes--> EXPIRED --validate_session--> UNAUTHENTICATED
    any --signout--> UNAUTHENTICATED

Each record is persisted in a KeyValueStore under "<storage_key>:<session_id>"
and its id is mirrored into a cookie, so one store holds the sessions of
many callers. Instances sharing a store, cookie jar and broadcast channel
(tabs of one origin) converge through SyncMessages: create/refresh make
siblings re-read storage, signout makes them drop their in-memory copy.
Delivery is asynchronous, so this is eventually consistent; a record
deleted elsewhere is never written back.
"""

import asyncio
import contextlib
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from multiauth.domain.models import (
    AuthErrorType,
    AuthResult,
    AuthSession,
    ProviderType,
    SessionConfig,
    SessionData,
    SyncEventType,
    SyncMessage,
)
from multiauth.infrastructure.auth import MemoryUserDirectory, UserDirectory, UserExistsError
from multiauth.infrastructure.storage import (
    BroadcastChannel,
    Cookie,
    CookieJar,
    KeyValueStore,
    MemoryKeyValueStore,
)

from .errors import AuthenticationError, auth_boundary
from .permissions import map_groups_to_permissions
from .provider import AuthProvider, Credentials

logger = logging.getLogger(__name__)


class SessionProvider(AuthProvider):
    """Session manager value owned by its caller.

    Each instance holds its own current session, refresh task and channel
    subscription; nothing is module-global, so independent instances never
    collide. Share the storage, cookie jar and channel between instances
    to model several tabs of one origin.
    """

    provider_type = ProviderType.SESSION

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        storage: Optional[KeyValueStore] = None,
        cookie_jar: Optional[CookieJar] = None,
        channel: Optional[BroadcastChannel] = None,
        user_directory: Optional[UserDirectory] = None,
        **kwargs: Any
    ):
        """Initialize session store.

        Args:
            config: Timeout, refresh and cookie policy
            storage: Durable store for the session record
            cookie_jar: Cookie jar mirroring the session id
            channel: Broadcast channel for cross-instance sync
            user_directory: Verifies email/password pairs and registrations
        """
        super().__init__(**kwargs)
        self.config = config or SessionConfig()
        self.storage = storage or MemoryKeyValueStore(clock=self._clock)
        self.cookie_jar = cookie_jar or CookieJar(clock=self._clock)
        self.channel = channel
        self.user_directory = user_directory or MemoryUserDirectory(clock=self._clock)

        self.instance_id = uuid.uuid4().hex
        self.session_data: Optional[SessionData] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._unsubscribe = None
        self._sequence = 0
        self._applied: Dict[str, int] = {}

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(seconds=self.config.session_timeout)

    @property
    def refresh_task(self) -> Optional[asyncio.Task]:
        return self._refresh_task

    async def _setup(self) -> None:
        if self.channel is not None and self.config.enable_cross_tab_sync:
            self._unsubscribe = self.channel.subscribe(self._on_sync_message)
        data = await self._load(self._cookie_id())
        if data is not None and not data.is_expired(self.now()):
            self._apply(data)
            self._start_refresh()
            logger.info(f"Restored session for {data.user_id} from storage")

    def fork(self) -> "SessionProvider":
        """Request-scoped copy with its own empty cookie jar.

        Shares storage, user directory and channel; it never subscribes to
        the channel and never runs an auto-refresh task.
        """
        clone = super().fork()
        clone.config = self.config.model_copy(update={"enable_auto_refresh": False})
        return clone

    def reset_caller_state(self) -> None:
        super().reset_caller_state()
        self.cookie_jar = CookieJar(clock=self._clock)
        self.instance_id = uuid.uuid4().hex
        self.session_data = None
        self._refresh_task = None
        self._unsubscribe = None
        self._sequence = 0
        self._applied = {}

    def bind(self, session_id: Optional[str]) -> None:
        """Present a caller's session cookie; the record is read lazily"""
        if not session_id:
            return
        self.cookie_jar.set_cookie(
            Cookie(
                name=self.config.cookie_name,
                value=session_id,
                path=self.config.cookie_path,
                domain=self.config.cookie_domain,
                secure=self.config.secure,
                http_only=self.config.http_only,
                same_site=self.config.same_site,
            )
        )

    # Lifecycle

    @auth_boundary("SESSION_AUTH_ERROR")
    async def authenticate(self, credentials: Credentials) -> AuthResult:
        """Sign in with email/password, or restore by session id or cookie"""
        creds = self.coerce_credentials(credentials)
        if creds.email and creds.password:
            return await self.create_session(creds)
        if creds.session_id:
            return AuthResult.ok(await self._restore(creds.session_id))
        if creds.use_cookie:
            session_id = self.cookie_jar.get(self.config.cookie_name)
            if not session_id:
                raise AuthenticationError(
                    AuthErrorType.TOKEN_INVALID, "No session cookie present", "SESSION_COOKIE_MISSING"
                )
            return AuthResult.ok(await self._restore(session_id))
        raise AuthenticationError(
            AuthErrorType.VALIDATION_ERROR,
            "Email and password, a session id, or a session cookie is required",
            "SESSION_MISSING_CREDENTIALS",
        )

    @auth_boundary("SESSION_CREATE_ERROR")
    async def create_session(self, credentials: Credentials) -> AuthResult:
        """Authenticate through the user directory and start a new session.

        A fresh random session id is issued on every login, replacing any
        session this instance held before (session fixation protection).
        """
        creds = self.coerce_credentials(credentials)
        if not creds.email or not creds.password:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                "Email and password are required",
                "SESSION_MISSING_CREDENTIALS",
            )

        user = await self.user_directory.verify(creds.email, creds.password)
        if user is None or not user.is_active:
            raise AuthenticationError(
                AuthErrorType.CREDENTIALS_INVALID, "Invalid email or password", "SESSION_INVALID_CREDENTIALS"
            )

        now = self.now()
        data = SessionData(
            session_id=secrets.token_urlsafe(32),
            user_id=user.user_id,
            email=user.email,
            username=user.username,
            roles=list(user.roles),
            permissions=map_groups_to_permissions(user.roles, ()),
            created_at=now,
            expires_at=now + self.session_timeout,
            last_accessed=now,
            ip_address=await self.client_ip(creds),
            user_agent=creds.user_agent or "unknown",
        )
        await self._establish(data, "create")
        logger.info(f"Session created for {user.user_id}")
        return AuthResult.ok(data.to_auth_session())

    @auth_boundary("SESSION_ADOPT_ERROR")
    async def adopt(self, session: AuthSession) -> AuthResult:
        """Take over an active session produced by another provider"""
        if not session.is_active:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR, "Only active sessions can be persisted", "SESSION_NOT_ACTIVE"
            )

        now = self.now()
        data = SessionData(
            session_id=secrets.token_urlsafe(32),
            user_id=session.user.id,
            email=session.user.email,
            username=session.user.username,
            roles=list(session.user.roles),
            permissions=list(session.user.permissions),
            profile=dict(session.user.profile),
            created_at=session.created_at,
            expires_at=session.expires_at,
            last_accessed=now,
            ip_address=session.metadata.get("ipAddress"),
            user_agent=session.metadata.get("userAgent"),
            provider=session.provider,
            access_token=session.token.access_token,
            refresh_token=session.token.refresh_token,
            token_type=session.token.token_type,
            scope=list(session.token.scope),
            metadata={
                key: value for key, value in session.metadata.items()
                if key not in ("ipAddress", "userAgent")
            },
        )
        await self._establish(data, "adopt")
        logger.info(f"Adopted {session.provider.value} session for {session.user.id}")
        return AuthResult.ok(data.to_auth_session())

    async def _establish(self, data: SessionData, reason: str) -> None:
        if self.session_data is not None:
            logger.info(f"Replacing session for {self.session_data.user_id} ({reason})")
        previous_id = self._current_id()
        if previous_id and previous_id != data.session_id:
            await self.storage.delete(self._record_key(previous_id))
        self._apply(data)
        await self._persist(data)
        await self._broadcast(SyncEventType.CREATE)
        await self._stop_refresh()
        self._start_refresh()

    async def _restore(self, session_id: str) -> AuthSession:
        data = await self._load(session_id)
        if data is None or not secrets.compare_digest(data.session_id, session_id):
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, "Session not found", "SESSION_NOT_FOUND"
            )

        now = self.now()
        if data.is_expired(now):
            await self._clear(local_only=False)
            raise AuthenticationError(
                AuthErrorType.TOKEN_EXPIRED, "Session has expired", "SESSION_EXPIRED"
            )

        data.last_accessed = now
        self._apply(data)
        await self._persist(data)
        if self._refresh_task is None:
            self._start_refresh()
        logger.info(f"Session restored for {data.user_id}")
        return data.to_auth_session()

    @auth_boundary("SESSION_REGISTER_ERROR")
    async def register(self, credentials: Credentials) -> AuthResult:
        """Register a user and sign them in.

        The activation code is returned in the result metadata; delivering
        it to the user is the caller's job.
        """
        creds = self.coerce_credentials(credentials)
        if not creds.email or not creds.password:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                "Email and password are required",
                "SESSION_MISSING_CREDENTIALS",
            )
        try:
            user, code = await self.user_directory.register(creds.email, creds.password, creds.username)
        except UserExistsError:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR, "Email is already registered", "SESSION_USER_EXISTS"
            )

        result = await self.create_session(creds)
        if result.success:
            result.metadata["activationCode"] = code
            result.metadata["userId"] = user.user_id
        return result

    @auth_boundary("SESSION_ACTIVATE_ERROR")
    async def activate(self, code: str) -> AuthResult:
        user = await self.user_directory.activate(code)
        if user is None:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, "Unknown or used activation code", "SESSION_INVALID_ACTIVATION_CODE"
            )
        return AuthResult.ok(True, userId=user.user_id)

    @auth_boundary("SESSION_SIGNOUT_ERROR")
    async def signout(self) -> AuthResult:
        """Stop the refresh task, then clear memory, cookie and storage"""
        user_id = self.session_data.user_id if self.session_data else None
        session_id = self._current_id()
        await self._clear(local_only=False)
        await self._broadcast(SyncEventType.SIGNOUT, session_id)
        if user_id:
            logger.info(f"Session signed out for {user_id}")
        return AuthResult.ok()

    @auth_boundary("SESSION_REFRESH_ERROR")
    async def refresh_token(self) -> AuthResult:
        """Extend the session to now + session_timeout.

        An expired session is not revived; it is cleared by the next
        validate_session().
        """
        held = self.session_data
        if held is None:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR, "No active session", "SESSION_NO_ACTIVE_SESSION"
            )
        now = self.now()
        if held.is_expired(now):
            raise AuthenticationError(
                AuthErrorType.TOKEN_EXPIRED, "Session has expired", "SESSION_EXPIRED"
            )

        data = await self._reload_held()
        if data is None:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, "Session was signed out elsewhere", "SESSION_NOT_FOUND"
            )
        if data.is_expired(now):
            raise AuthenticationError(
                AuthErrorType.TOKEN_EXPIRED, "Session has expired", "SESSION_EXPIRED"
            )

        data.expires_at = now + self.session_timeout
        data.last_accessed = now
        self._apply(data)
        await self._persist(data)
        await self._broadcast(SyncEventType.REFRESH)
        logger.debug(f"Session refreshed for {data.user_id} until {data.expires_at.isoformat()}")
        return AuthResult.ok(data.to_auth_session())

    @auth_boundary("SESSION_VALIDATE_ERROR")
    async def validate_session(self) -> AuthResult:
        """Report whether a usable session exists.

        Re-reads the record named by the held session, or by the cookie
        when nothing is held. A record deleted elsewhere drops the local
        copy without writing it back; an expired one is cleared.
        """
        now = self.now()
        held = self.session_data
        if held is None:
            data = await self._load(self._cookie_id())
        elif held.is_expired(now):
            data = held
        else:
            data = await self._reload_held()
        if data is None:
            return AuthResult.ok(False)

        if data.is_expired(now):
            logger.info(f"Session for {data.user_id} expired")
            await self._clear(local_only=False)
            return AuthResult.ok(False)

        data.last_accessed = now
        self._apply(data)
        await self._persist(data)
        return AuthResult.ok(True)

    # Persistence

    def _apply(self, data: Optional[SessionData]) -> None:
        self.session_data = data
        self.current_session = data.to_auth_session() if data is not None else None

    def _record_key(self, session_id: str) -> str:
        return f"{self.config.storage_key}:{session_id}"

    def _cookie_id(self) -> Optional[str]:
        return self.cookie_jar.get(self.config.cookie_name)

    def _current_id(self) -> Optional[str]:
        """Id of the held session, else the one the cookie names"""
        if self.session_data is not None:
            return self.session_data.session_id
        return self._cookie_id()

    async def _load(self, session_id: Optional[str]) -> Optional[SessionData]:
        if not session_id:
            return None
        key = self._record_key(session_id)
        raw = await self.storage.get(key)
        if raw is None:
            return None
        try:
            return SessionData.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable session record: {e}")
            await self.storage.delete(key)
            return None

    async def _reload_held(self) -> Optional[SessionData]:
        """Fresh copy of the held record. Drops local state if it is gone."""
        held = self.session_data
        data = await self._load(held.session_id)
        if data is None:
            logger.info(f"Session for {held.user_id} was removed elsewhere")
            await self._clear(local_only=True)
        return data

    async def _persist(self, data: SessionData) -> None:
        remaining = (data.expires_at - self.now()).total_seconds()
        await self.storage.set(
            self._record_key(data.session_id),
            data.model_dump_json(),
            ttl_seconds=max(1, int(remaining) + 1),
        )
        self.cookie_jar.set_cookie(
            Cookie(
                name=self.config.cookie_name,
                value=data.session_id,
                expires=data.expires_at,
                path=self.config.cookie_path,
                domain=self.config.cookie_domain,
                secure=self.config.secure,
                http_only=self.config.http_only,
                same_site=self.config.same_site,
            )
        )

    async def _clear(self, local_only: bool) -> None:
        session_id = self._current_id()
        await self._stop_refresh()
        self._apply(None)
        if not local_only:
            self.cookie_jar.delete_cookie(self.config.cookie_name)
            if session_id:
                await self.storage.delete(self._record_key(session_id))

    def cookie_header(self) -> Optional[str]:
        """Set-Cookie value for the current session cookie"""
        return self.cookie_jar.header(self.config.cookie_name)

    # Auto-refresh

    def _start_refresh(self) -> None:
        if not self.config.enable_auto_refresh or self._refresh_task is not None:
            return
        self._refresh_task = asyncio.ensure_future(self._refresh_loop())

    async def _stop_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _refresh_loop(self) -> None:
        failures = 0
        while True:
            await asyncio.sleep(self.config.refresh_interval)
            result = await self.refresh_token()
            if result.success:
                failures = 0
                continue

            if result.error.type != AuthErrorType.SERVER_ERROR:
                logger.info(f"Auto-refresh stopped: {result.error.code}")
                break
            failures += 1
            if failures >= self.config.max_retries:
                logger.error(f"Auto-refresh gave up after {failures} failures")
                break
            logger.warning(f"Auto-refresh failed ({failures}/{self.config.max_retries}): {result.error.message}")

        if self._refresh_task is asyncio.current_task():
            self._refresh_task = None

    # Cross-instance sync

    async def _broadcast(self, event: SyncEventType, session_id: Optional[str] = None) -> None:
        if self.channel is None or not self.config.enable_cross_tab_sync:
            return
        self._sequence += 1
        message = SyncMessage(
            type=event,
            origin=self.instance_id,
            sequence=self._sequence,
            issued_at=self.now(),
            session_id=session_id or self._current_id(),
        )
        try:
            await self.channel.publish(message)
        except Exception as e:
            logger.warning(f"Session {event.value} broadcast failed: {e}")

    async def _on_sync_message(self, message: SyncMessage) -> None:
        """Apply a sibling's event.

        Own echoes are ignored, and so is any message whose sequence is not
        above the last one applied from the same origin. Refresh and
        signout only touch the session they name.
        """
        if message.origin == self.instance_id:
            return
        if message.sequence <= self._applied.get(message.origin, 0):
            logger.debug(f"Dropping stale {message.type.value} message from {message.origin}")
            return
        self._applied[message.origin] = message.sequence

        if message.type == SyncEventType.CREATE:
            data = await self._load(self._cookie_id())
            if data is not None and not data.is_expired(self.now()):
                self._apply(data)
                self._start_refresh()
            elif self.session_data is not None:
                await self._reload_held()
            return

        held = self.session_data
        if held is None or (message.session_id and message.session_id != held.session_id):
            return
        if message.type == SyncEventType.SIGNOUT:
            await self._clear(local_only=True)
            return

        data = await self._reload_held()
        if data is None:
            return
        if data.is_expired(self.now()):
            await self._clear(local_only=True)
        else:
            self._apply(data)

    # Configuration

    def configure(self, config: Mapping[str, Any]) -> None:
        """Merge session policy fields (sessionTimeout, cookieName, ...)"""
        self.config = self.config.merged(config)

    def get_capabilities(self) -> list[str]:
        return [
            "session_authentication",
            "cookie_based_sessions",
            "server_side_validation",
            "session_fixation_protection",
            "cross_tab_synchronization",
            "auto_session_refresh",
            "session_timeout_handling",
            "registration",
            "activation",
            "token_refresh",
        ]

    async def _check_health(self) -> tuple[bool, str, dict]:
        await self.storage.get(self._record_key("health"))
        return True, "Session store operational", {
            "hasSession": self.session_data is not None,
            "autoRefresh": self._refresh_task is not None,
            "crossTabSync": self._unsubscribe is not None,
        }

    async def shutdown(self) -> None:
        await self._stop_refresh()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._apply(None)
        await super().shutdown()
