"""
In-memory session and token store.

This module owns every piece of transient broker state: pending and active
sessions, single-use authorization codes and dynamically registered clients.
It implements the redemption state machine and the periodic expiry sweep.

Sessions live in an arena keyed by session id. The ``state`` index, the
proxy-token index and authorization codes refer to sessions by id only, so
removing any of them is a single dict deletion. A session that is no longer
referenced from anywhere is dropped from the arena.

All state is process memory: nothing survives a restart and the store cannot
be shared between instances. A multi-instance deployment needs a durable
backend implementing the same interface.
"""
import asyncio
import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, NoReturn, Optional

from pydantic import SecretStr

from oauth_broker.auth.pkce import verify_code_verifier
from oauth_broker.metrics import (
    authorization_code_redemptions_total,
    oauth_sessions,
    proxy_tokens_issued_total,
    session_sweeps_total,
)
from oauth_broker.models.session import (
    AUTHORIZATION_CODE_TTL,
    PENDING_STATE_TTL,
    PROXY_TOKEN_TTL,
    SESSION_MAX_AGE,
    AuthorizationCode,
    RedemptionResult,
    RegisteredClient,
    Session,
    UpstreamTokens,
    utcnow,
)
from oauth_broker.utils.error_handling import InvalidGrant, SessionNotFound

logger = logging.getLogger(__name__)

AUTHORIZATION_CODE_PREFIX = "auth_"
PROXY_TOKEN_PREFIX = "pxy_"


def _new_secret(prefix: str) -> str:
    return f"{prefix}{secrets.token_urlsafe(32)}"


class SessionStore:
    """
    Single authoritative store for broker sessions.

    Every mutating operation runs under one coarse lock, so the
    lookup/check/mark-used/mint sequence of a redemption never interleaves
    with another redemption of the same code.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        require_pkce: bool = False,
        cleanup_interval_seconds: float = 3600,
        start_cleanup: bool = True,
    ) -> None:
        """
        Initialize the store.

        Args:
            clock: Source of the current time; every expiry check reads it
            require_pkce: Reject redemption for sessions created without a
                downstream challenge
            cleanup_interval_seconds: Interval of the background sweep
            start_cleanup: Start the sweep task now if an event loop is running
        """
        self.clock = clock
        self.require_pkce = require_pkce
        self.cleanup_interval_seconds = cleanup_interval_seconds

        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        self._by_state: Dict[str, str] = {}
        self._by_proxy_token: Dict[str, str] = {}
        self._codes: Dict[str, AuthorizationCode] = {}
        self._clients: Dict[str, RegisteredClient] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

        logger.warning("Using in-memory session store; sessions are lost on restart and not shared between instances")

        if start_cleanup:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running event loop; expiry sweep starts on start()")
            else:
                self.start()

    # ---------------------- handshake ---------------------------------------
    def create_session(
        self,
        state: str,
        upstream_verifier: str,
        downstream_redirect_uri: Optional[str] = None,
        downstream_challenge: Optional[str] = None,
        downstream_state: Optional[str] = None,
    ) -> Session:
        """
        Create a pending session and index it by ``state``.

        Raises:
            ValueError: If ``state`` already indexes a live session
        """
        with self._lock:
            if state in self._by_state:
                raise ValueError("State parameter is already in use")

            session = Session(
                state=state,
                upstream_verifier=SecretStr(upstream_verifier),
                downstream_redirect_uri=downstream_redirect_uri,
                downstream_challenge=downstream_challenge,
                downstream_state=downstream_state,
                created_at=self.clock(),
            )
            self._sessions[session.id] = session
            self._by_state[state] = session.id

        logger.info(
            "Created OAuth session %s", session.id,
            extra={"session_id": session.id, "has_client_challenge": downstream_challenge is not None},
        )
        return session

    def find_by_state(self, state: str) -> Optional[Session]:
        """Look up a session by its CSRF state without consuming the index."""
        session_id = self._by_state.get(state)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def issue_authorization_code(self, session: Session, upstream_tokens: UpstreamTokens) -> str:
        """
        Store upstream tokens on the session and mint a single-use code for it.

        The ``state`` index is kept until redemption so a duplicate provider
        callback can still be correlated.

        Raises:
            SessionNotFound: If the session was swept or deleted meanwhile
        """
        with self._lock:
            if self._sessions.get(session.id) is not session:
                raise SessionNotFound("Session is no longer pending")

            now = self.clock()
            self._apply_upstream_tokens(session, upstream_tokens, now)
            session.upstream_refresh_token = (
                SecretStr(upstream_tokens.refresh_token) if upstream_tokens.refresh_token else None
            )
            session.scopes = upstream_tokens.scopes

            code = _new_secret(AUTHORIZATION_CODE_PREFIX)
            self._codes[code] = AuthorizationCode(
                code=code,
                session_id=session.id,
                created_at=now,
                expires_at=now + AUTHORIZATION_CODE_TTL,
            )

        logger.info("Issued authorization code for session %s", session.id, extra={"session_id": session.id})
        return code

    def redeem_authorization_code(self, code: str, downstream_verifier: Optional[str]) -> RedemptionResult:
        """
        Redeem a code for a proxy access token.

        Args:
            code: Authorization code issued by :meth:`issue_authorization_code`
            downstream_verifier: The client's PKCE verifier

        Returns:
            RedemptionResult: New proxy token, its lifetime and the session

        Raises:
            InvalidGrant: Code unknown, expired, already used, or PKCE check
                failed. The reason is only visible to logs and metrics.
        """
        with self._lock:
            record = self._codes.get(code)
            if record is None:
                self._reject("not_found")

            now = self.clock()
            if record.is_expired(now):
                del self._codes[code]
                self._reject("expired", record.session_id)

            if record.used:
                del self._codes[code]
                self._reject("replay", record.session_id)

            session = self._sessions.get(record.session_id)
            if session is None:
                del self._codes[code]
                self._reject("session_missing", record.session_id)

            if session.downstream_challenge:
                if not verify_code_verifier(downstream_verifier or "", session.downstream_challenge):
                    del self._codes[code]
                    self._reject("pkce_mismatch", session.id)
            elif self.require_pkce:
                del self._codes[code]
                self._reject("pkce_required", session.id)
            else:
                # Compatibility path: sessions started without a client challenge
                logger.info("No client challenge stored for session %s; skipping PKCE check", session.id)

            record.used = True

            if session.proxy_access_token:
                self._by_proxy_token.pop(session.proxy_access_token, None)
            proxy_token = _new_secret(PROXY_TOKEN_PREFIX)
            session.proxy_access_token = proxy_token
            session.proxy_expiry = now + PROXY_TOKEN_TTL
            self._by_proxy_token[proxy_token] = session.id

            if self._by_state.get(session.state) == session.id:
                del self._by_state[session.state]

            del self._codes[code]

        authorization_code_redemptions_total.labels(outcome="success").inc()
        proxy_tokens_issued_total.inc()
        logger.info("Authorization code redeemed for session %s", session.id, extra={"session_id": session.id})
        return RedemptionResult(
            proxy_access_token=proxy_token,
            expires_in=int(PROXY_TOKEN_TTL.total_seconds()),
            session=session,
        )

    def _reject(self, reason: str, session_id: Optional[str] = None) -> NoReturn:
        authorization_code_redemptions_total.labels(outcome=reason).inc()
        logger.warning(
            "Authorization code redemption failed: %s", reason,
            extra={"reason": reason, "session_id": session_id},
        )
        raise InvalidGrant(reason)

    # ---------------------- active sessions ---------------------------------
    def get_session_by_proxy_token(self, proxy_token: str) -> Optional[Session]:
        """Direct lookup used to validate bearer tokens."""
        session_id = self._by_proxy_token.get(proxy_token)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def is_upstream_token_expiring(self, session: Session, buffer_seconds: float = 60) -> bool:
        """True if no upstream expiry is known or it falls within ``buffer_seconds``."""
        if session.upstream_expiry is None:
            return True
        return self.clock() >= session.upstream_expiry - timedelta(seconds=buffer_seconds)

    def is_proxy_token_expired(self, session: Session) -> bool:
        return session.is_proxy_expired(self.clock())

    def update_upstream_tokens(self, proxy_token: str, new_tokens: UpstreamTokens) -> Optional[Session]:
        """
        Apply a refresh result to the session behind ``proxy_token``.

        The stored refresh token is replaced only when the provider rotated it.

        Returns:
            Optional[Session]: The updated session, or None if it is gone
        """
        with self._lock:
            session = self.get_session_by_proxy_token(proxy_token)
            if session is None:
                return None
            self._apply_upstream_tokens(session, new_tokens, self.clock())
            if new_tokens.refresh_token:
                session.upstream_refresh_token = SecretStr(new_tokens.refresh_token)
        logger.info("Updated upstream tokens for session %s", session.id, extra={"session_id": session.id})
        return session

    @staticmethod
    def _apply_upstream_tokens(session: Session, tokens: UpstreamTokens, now: datetime) -> None:
        session.upstream_access_token = SecretStr(tokens.access_token)
        session.upstream_expiry = (
            now + timedelta(seconds=tokens.expires_in) if tokens.expires_in is not None else None
        )

    def delete_session(self, proxy_token: str) -> bool:
        """Remove the session behind ``proxy_token`` and any lingering state entry."""
        with self._lock:
            session_id = self._by_proxy_token.pop(proxy_token, None)
            if session_id is None:
                return False
            session = self._sessions.get(session_id)
            if session is not None and self._by_state.get(session.state) == session_id:
                del self._by_state[session.state]
            self._drop_unreferenced({session_id})
        logger.info("Deleted session %s", session_id, extra={"session_id": session_id})
        return True

    # ---------------------- registered clients ------------------------------
    def register_client(self, client_id: str, metadata: Dict[str, Any]) -> RegisteredClient:
        with self._lock:
            client = RegisteredClient(client_id=client_id, metadata=dict(metadata), registered_at=self.clock())
            self._clients[client_id] = client
        return client

    def get_registered_client(self, client_id: str) -> Optional[RegisteredClient]:
        return self._clients.get(client_id)

    # ---------------------- garbage collection ------------------------------
    def sweep_expired(self) -> Dict[str, int]:
        """
        Remove expired state in one full scan.

        Drops active sessions past the maximum age or with an expired proxy
        or upstream token, abandoned pending handshakes, and expired or used
        authorization codes.

        Returns:
            Dict[str, int]: Number of removed entries per kind
        """
        with self._lock:
            now = self.clock()
            candidates = set()

            expired_tokens = [
                token for token, session_id in self._by_proxy_token.items()
                if self._session_expired(self._sessions.get(session_id), now)
            ]
            for token in expired_tokens:
                candidates.add(self._by_proxy_token.pop(token))

            abandoned_states = [
                state for state, session_id in self._by_state.items()
                if session_id not in self._sessions
                or self._sessions[session_id].is_older_than(PENDING_STATE_TTL, now)
            ]
            for state in abandoned_states:
                candidates.add(self._by_state.pop(state))

            dead_codes = [code for code, record in self._codes.items() if record.used or record.is_expired(now)]
            for code in dead_codes:
                candidates.add(self._codes.pop(code).session_id)

            dropped = self._drop_unreferenced(candidates)
            counts = self.get_counts()

        session_sweeps_total.inc()
        for kind in ("active", "pending", "codes"):
            oauth_sessions.labels(kind=kind).set(counts[kind])
        logger.info(
            "Sweep complete. Active sessions: %d, pending: %d, codes: %d",
            counts["active"], counts["pending"], counts["codes"],
        )
        return {
            "sessions": len(expired_tokens),
            "states": len(abandoned_states),
            "codes": len(dead_codes),
            "dropped": dropped,
        }

    @staticmethod
    def _session_expired(session: Optional[Session], now: datetime) -> bool:
        if session is None:
            return True
        return (
            session.is_older_than(SESSION_MAX_AGE, now)
            or session.is_upstream_expired(now)
            or session.is_proxy_expired(now)
        )

    def _drop_unreferenced(self, session_ids) -> int:
        """Remove the given sessions from the arena unless still referenced."""
        if not session_ids:
            return 0
        referenced = set(self._by_state.values()) | set(self._by_proxy_token.values())
        referenced.update(record.session_id for record in self._codes.values())
        dropped = 0
        for session_id in session_ids:
            if session_id not in referenced and self._sessions.pop(session_id, None) is not None:
                dropped += 1
        return dropped

    def get_counts(self) -> Dict[str, int]:
        return {
            "active": len(self._by_proxy_token),
            "pending": len(self._by_state),
            "codes": len(self._codes),
            "clients": len(self._clients),
        }

    # ---------------------- background sweep --------------------------------
    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.cleanup_interval_seconds)
                try:
                    self.sweep_expired()
                except Exception:
                    logger.exception("Session sweep failed")
        except asyncio.CancelledError:
            pass

    def close(self) -> None:
        """Stop the periodic sweep. Safe to call more than once."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            try:
                self._cleanup_task.cancel()
            except RuntimeError:
                # Event loop already closed
                pass
        self._cleanup_task = None
