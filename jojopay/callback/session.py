import json
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import structlog
from jose import JWTError

from jojopay.auth import decode_token
from jojopay.errors import AuthenticationError

logger = structlog.get_logger(__name__)

BACKUP_KEY = "paypal_session_backup"
CONTEXT_KEY = "paypal_payment_context"
# Backups older than this are not trusted
BACKUP_MAX_AGE = 30 * 60
DEFAULT_MAX_ATTEMPTS = 3

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"


@dataclass
class Session:
    user_id: str
    access_token: str
    refresh_token: Optional[str] = None
    claims: dict = field(default_factory=dict)


class AuthBackend(Protocol):
    def get_session(self) -> Optional[Session]:
        ...

    def set_session(self, access_token: str, refresh_token: str) -> Session:
        ...


class TokenAuthBackend:
    """Sessions backed by bearer tokens from the managed auth provider."""

    def __init__(self, access_token: Optional[str] = None):
        self._access_token = access_token
        self._refresh_token = None

    def _session(self, access_token, refresh_token=None):
        claims = decode_token(access_token)
        if not claims.get("sub"):
            raise JWTError("token has no subject")
        return Session(user_id=claims["sub"], access_token=access_token,
                       refresh_token=refresh_token, claims=claims)

    def get_session(self):
        if not self._access_token:
            return None
        try:
            return self._session(self._access_token, self._refresh_token)
        except JWTError:
            return None

    def set_session(self, access_token, refresh_token):
        try:
            session = self._session(access_token, refresh_token)
        except JWTError as exc:
            raise AuthenticationError("Session could not be restored", details=str(exc))
        self._access_token = access_token
        self._refresh_token = refresh_token
        return session


class AuthEvents:
    """Auth state observer. ``subscribe`` returns the matching unsubscribe callable."""

    def __init__(self):
        self._listeners = []

    def subscribe(self, callback: Callable[[str, Optional[Session]], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def publish(self, event: str, session: Optional[Session] = None):
        for callback in list(self._listeners):
            callback(event, session)


@dataclass
class RestoreResult:
    performed: bool
    success: bool
    user_id: Optional[str] = None
    source: Optional[str] = None        # existing | backup | transaction
    degraded: bool = False              # attributable to a user but without a live session
    context: Optional[dict] = None


class SessionRestorer:
    def __init__(self, auth: AuthBackend, local_storage, events: AuthEvents = None,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS, clock=time.time):
        self.auth = auth
        self.storage = local_storage
        self.events = events or AuthEvents()
        self.max_attempts = max_attempts
        self.attempts = 0
        self._clock = clock

    def backup_session(self, session: Session, plan_id: str, order_id: str = None):
        """Stash tokens and payment context before redirecting to the provider."""
        now = self._clock()
        self.storage[BACKUP_KEY] = json.dumps({
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "user_id": session.user_id,
            "timestamp": now,
        })
        self.storage[CONTEXT_KEY] = json.dumps({
            "userId": session.user_id,
            "planId": plan_id,
            "orderId": order_id,
            "timestamp": now,
        })
        logger.info("session_backed_up", user_id=session.user_id, order_id=order_id)

    def payment_context(self) -> Optional[dict]:
        try:
            return json.loads(self.storage.get(CONTEXT_KEY) or "null")
        except ValueError:
            return None

    def cleanup(self):
        self.storage.pop(BACKUP_KEY, None)
        self.storage.pop(CONTEXT_KEY, None)

    def _adopt(self, session, source, set_user, context=None):
        if set_user is not None:
            set_user(session.user_id)
        self.events.publish(SIGNED_IN, session)
        logger.info("session_restored", user_id=session.user_id, source=source, attempt=self.attempts)
        return RestoreResult(performed=True, success=True, user_id=session.user_id, source=source, context=context)

    def _restore_from_backup(self):
        raw = self.storage.get(BACKUP_KEY)
        if not raw:
            return None, None
        context = self.payment_context()
        try:
            backup = json.loads(raw)
            if self._clock() - float(backup["timestamp"]) > BACKUP_MAX_AGE:
                raise AuthenticationError("Session backup expired")
            session = self.auth.set_session(backup["access_token"], backup["refresh_token"])
        except (ValueError, KeyError, TypeError, AuthenticationError) as exc:
            logger.warning("session_backup_unusable", error=str(exc))
            self.cleanup()
            return None, None
        # Backups are single-use
        self.cleanup()
        return session, context

    def restore(self, current_user: Optional[str] = None, set_user: Callable[[str], None] = None,
                transaction_user_id: Optional[str] = None) -> RestoreResult:
        if current_user:
            return RestoreResult(performed=False, success=True, user_id=current_user, source="existing")
        if self.attempts >= self.max_attempts:
            return RestoreResult(performed=False, success=False)
        self.attempts += 1

        session = self.auth.get_session()
        if session is not None:
            # A live session makes any stored backup redundant
            context = self.payment_context()
            self.cleanup()
            return self._adopt(session, "existing", set_user, context)

        session, context = self._restore_from_backup()
        if session is not None:
            return self._adopt(session, "backup", set_user, context)

        if transaction_user_id:
            logger.info("session_degraded", user_id=transaction_user_id, attempt=self.attempts)
            return RestoreResult(performed=True, success=True, user_id=transaction_user_id,
                                 source="transaction", degraded=True)

        if self.attempts >= self.max_attempts:
            self.cleanup()
        logger.info("session_restore_failed", attempt=self.attempts, max_attempts=self.max_attempts)
        return RestoreResult(performed=True, success=False)
