"""
Session lifecycle — promotion of a discovery id to a session id, and routing
of session-scoped traffic inside each session's origin boundary.

Lifecycle per session:

    DISCOVERED -> HANDSHAKE_REQUESTED -> ESTABLISHED -> REVOKED
                  HANDSHAKE_REQUESTED -> DISCOVERED   (explicit rejection only)

A session id is always a discovery id that went through exactly one approved
handshake. Timeouts are reported to whoever issued the request and never move
a session between states.

Depends on: config, errors, models, origin, messages, correlator, dispatcher
"""

import asyncio
import sys
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional, Union

from walletmesh.config import (
    DEFAULT_REQUEST_TIMEOUT,
    ERROR_HANDSHAKE_IN_PROGRESS,
    ERROR_INTERNAL,
    ERROR_SESSION_EXISTS,
    ERROR_UNAUTHORIZED,
    ERROR_UNSUPPORTED_METHOD,
    ERROR_USER_REJECTED,
    HANDSHAKE_TIMEOUT,
    METHOD_CREATE_SESSION,
    METHOD_INVOKE,
    METHOD_NOTIFY,
    METHOD_REVOKE_SESSION,
)
from walletmesh.correlator import RequestCorrelator
from walletmesh.dispatcher import HandlerResult, ReplayGuard
from walletmesh.errors import (
    DuplicateSessionPromotion,
    HandshakeRejected,
    InvalidTransition,
    ProtocolError,
    RequestTimeout,
    TransportError,
    UnknownDiscoveryId,
    UnknownSession,
)
from walletmesh.messages import (
    HandshakeRequestMsg,
    SessionRequestMsg,
    build_error,
    build_request,
    build_result,
)
from walletmesh.models import (
    DropReason,
    HandshakeRequest,
    RequestId,
    Session,
    SessionCall,
    SessionState,
    utc_now,
)
from walletmesh.origin import canonical_id, validate
from walletmesh.registry import AnnouncementRegistry

PublishFn = Callable[[dict, str], Awaitable[None]]
DropFn = Callable[[DropReason, str, str], None]
RequestHandler = Callable[[SessionCall], Union[Any, Awaitable[Any]]]
ApprovalFn = Callable[[HandshakeRequest], Union[Any, Awaitable[Any]]]

_TRANSITIONS = {
    SessionState.DISCOVERED: {SessionState.HANDSHAKE_REQUESTED},
    SessionState.HANDSHAKE_REQUESTED: {SessionState.ESTABLISHED, SessionState.DISCOVERED},
    SessionState.ESTABLISHED: {SessionState.REVOKED},
    SessionState.REVOKED: set(),
}


# =============================================================================
# Session Table
# =============================================================================

class SessionTable:
    """The sessions one agent owns, keyed by canonical session id."""

    def __init__(self, on_change: Optional[Callable[[Session], None]] = None):
        self._sessions: dict[str, Session] = {}
        self._on_change = on_change

    def create(self, session_id: str, counterparty_origin: str) -> Session:
        key = canonical_id(session_id)
        if key in self._sessions:
            raise InvalidTransition(f"session {key} already exists")
        session = Session(session_id=key, counterparty_origin=counterparty_origin)
        self._sessions[key] = session
        return session

    def get(self, session_id: str) -> Optional[Session]:
        try:
            return self._sessions.get(canonical_id(session_id))
        except ValueError:
            return None

    def transition(self, session_id: str, new_state: SessionState) -> Session:
        session = self.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        if new_state not in _TRANSITIONS[session.state]:
            raise InvalidTransition(
                f"session {session.session_id}: {session.state.value} -> {new_state.value} not allowed"
            )
        session.state = new_state
        if new_state == SessionState.ESTABLISHED:
            session.established_at = utc_now()
        elif new_state == SessionState.REVOKED:
            session.revoked_at = utc_now()
        if self._on_change is not None:
            self._on_change(replace(session))
        return session

    def remove(self, session_id: str) -> None:
        session = self.get(session_id)
        if session is not None:
            del self._sessions[session.session_id]

    def snapshot(self) -> list[Session]:
        return [replace(s, scopes=dict(s.scopes)) for s in self._sessions.values()]

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.get(session_id) is not None

    def __len__(self) -> int:
        return len(self._sessions)


# =============================================================================
# Shared Session Routing (both sides)
# =============================================================================

class SessionManager:
    """Session-scoped request/response routing, revocation, and notifications."""

    def __init__(self, table: SessionTable, correlator: RequestCorrelator,
                 publish: PublishFn, drop: DropFn, replay: Optional[ReplayGuard] = None,
                 request_handler: Optional[RequestHandler] = None,
                 notification_handler: Optional[RequestHandler] = None):
        self.table = table
        self.correlator = correlator
        self._publish = publish
        self._drop = drop
        self.replay = replay or ReplayGuard()
        self.request_handler = request_handler
        self.notification_handler = notification_handler
        self._tasks: set[asyncio.Task] = set()

    # -- inbound --

    def _gate(self, msg: SessionRequestMsg) -> Optional[Session]:
        """The established session this message belongs to, or None (dropped)."""
        session = self.table.get(msg.session_id)
        if session is None:
            self._drop(DropReason.UNKNOWN_CORRELATION_ID, msg.origin, f"session {msg.session_id[:8]}...")
            return None
        if not validate(session.counterparty_origin, msg.origin):
            self._drop(DropReason.ORIGIN_MISMATCH, msg.origin,
                       f"session {session.session_id[:8]}... belongs to {session.counterparty_origin}")
            return None
        if session.state != SessionState.ESTABLISHED:
            self._drop(DropReason.UNKNOWN_CORRELATION_ID, msg.origin,
                       f"session {session.session_id[:8]}... is {session.state.value}")
            return None
        return session

    def handle_session_message(self, msg: SessionRequestMsg) -> HandlerResult:
        session = self._gate(msg)
        if session is None:
            return None

        call = SessionCall(session=replace(session), method=msg.method,
                           params=msg.params, request_id=msg.request_id)

        if msg.method == METHOD_NOTIFY:
            if self.notification_handler is not None:
                self._spawn(self._notify(call))
            return None

        key = self.replay.key(msg.origin, msg.method, msg.request_id, msg.params)
        if self.replay.check(key):
            return self._replayed(key, msg.origin, msg.request_id)

        if msg.method == METHOD_REVOKE_SESSION:
            self.table.transition(session.session_id, SessionState.REVOKED)
            print(f"[WalletMesh] Session {session.session_id[:8]}... revoked by {msg.origin}",
                  file=sys.stderr)
            response = build_result(msg.request_id, {"revoked": True})
            self.replay.finish(key, response)
            return [(response, msg.origin)]

        if self.request_handler is None:
            response = build_error(msg.request_id, ERROR_UNSUPPORTED_METHOD,
                                   "This agent does not serve session requests.")
            self.replay.finish(key, response)
            return [(response, msg.origin)]
        self.replay.begin(key)
        self._spawn(self._serve(call, msg.origin, key))
        return None

    def _replayed(self, key: tuple, origin: str, request_id: RequestId) -> HandlerResult:
        """Re-delivery of a request: drop it, re-sending the answer if there is one."""
        self._drop(DropReason.DUPLICATE_DELIVERY, origin, f"id={request_id!r}")
        answer = self.replay.answer(key)
        return [(answer, origin)] if answer is not None else None

    async def _serve(self, call: SessionCall, origin: str, key: tuple) -> None:
        try:
            result = self.request_handler(call)
            if asyncio.iscoroutine(result):
                result = await result
            response = build_result(call.request_id, result)
        except ProtocolError as e:
            response = build_error(call.request_id, e.code, e.message, e.data)
        except asyncio.CancelledError:
            self.replay.finish(key)
            raise
        except Exception as e:
            print(f"[WalletMesh] Request handler failed for {call.method} "
                  f"(session {call.session.session_id[:8]}...): {e}", file=sys.stderr)
            response = build_error(call.request_id, ERROR_INTERNAL, "Internal error")

        # The session may have been revoked while the handler ran
        current = self.table.get(call.session.session_id)
        if current is None or current.state != SessionState.ESTABLISHED:
            response = build_error(call.request_id, ERROR_UNAUTHORIZED, "Session is no longer established.")
        self.replay.finish(key, response)
        await self._publish(response, origin)

    async def _notify(self, call: SessionCall) -> None:
        try:
            result = self.notification_handler(call)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            print(f"[WalletMesh] Notification handler failed (session "
                  f"{call.session.session_id[:8]}...): {e}", file=sys.stderr)

    # -- outbound --

    def _established(self, session_id: str) -> Session:
        session = self.table.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        if session.state != SessionState.ESTABLISHED:
            raise UnknownSession(f"session {session.session_id} is {session.state.value}, not established")
        return session

    async def request(self, session_id: str, payload: Optional[dict] = None,
                      timeout: float = DEFAULT_REQUEST_TIMEOUT,
                      request_id: Optional[RequestId] = None,
                      method: str = METHOD_INVOKE) -> Any:
        """Send a session-scoped request to the counterparty and wait for its result."""
        session = self._established(session_id)
        params = {**(payload or {}), "sessionId": session.session_id}
        request = build_request(method, params,
                                request_id if request_id is not None else self.correlator.next_id())
        return await self.correlator.send(
            request,
            expected_origin=session.counterparty_origin,
            timeout=timeout,
        )

    async def notify(self, session_id: str, payload: Optional[dict] = None) -> None:
        """One-way session-scoped event; no response is expected."""
        session = self._established(session_id)
        params = {**(payload or {}), "sessionId": session.session_id}
        await self._publish(build_request(METHOD_NOTIFY, params), session.counterparty_origin)

    async def disconnect(self, session_id: str, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> bool:
        """Revoke a session locally and tell the counterparty.

        The local session is REVOKED whatever happens next. Returns True if the
        counterparty acknowledged.
        """
        session = self._established(session_id)
        self.table.transition(session.session_id, SessionState.REVOKED)
        print(f"[WalletMesh] Session {session.session_id[:8]}... revoked locally", file=sys.stderr)
        request = build_request(METHOD_REVOKE_SESSION, {"sessionId": session.session_id},
                                self.correlator.next_id())
        try:
            await self.correlator.send(request, expected_origin=session.counterparty_origin,
                                       timeout=timeout)
            return True
        except (RequestTimeout, ProtocolError, TransportError) as e:
            print(f"[WalletMesh] Revocation of {session.session_id[:8]}... not acknowledged: {e}",
                  file=sys.stderr)
            return False

    # -- lifecycle --

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


# =============================================================================
# Library side: initiates handshakes
# =============================================================================

class LibrarySessionManager(SessionManager):
    """Promotes announced discovery ids to sessions on the library side."""

    def __init__(self, registry: AnnouncementRegistry, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.registry = registry

    async def connect(self, discovery_id: str, payload: Optional[dict] = None,
                      timeout: float = HANDSHAKE_TIMEOUT,
                      request_id: Optional[RequestId] = None) -> Session:
        """Handshake with the provider that announced discovery_id.

        The request is delivered only to the origin recorded with the
        announcement, and only a response from that origin can complete it.

        Raises:
            UnknownDiscoveryId: nothing was announced under this id.
            DuplicateSessionPromotion: the id already backs a session.
            HandshakeRejected: the provider answered with an error.
            RequestTimeout: no answer in time (session stays HANDSHAKE_REQUESTED).
            ValueError: request_id belongs to a request that is still pending.
        """
        try:
            key = canonical_id(discovery_id)
        except ValueError:
            raise UnknownDiscoveryId(discovery_id)
        announcement = self.registry.get(key)
        if announcement is None:
            raise UnknownDiscoveryId(key)
        if request_id is not None and self.correlator.is_pending(request_id):
            raise ValueError(f"request id {request_id!r} is already pending")

        session = self.table.get(key)
        if session is None:
            session = self.table.create(key, announcement.source_origin)

        if session.state in (SessionState.ESTABLISHED, SessionState.REVOKED):
            raise DuplicateSessionPromotion(
                ERROR_SESSION_EXISTS,
                f"discovery id {key} was already promoted ({session.state.value})",
            )
        if session.state == SessionState.HANDSHAKE_REQUESTED:
            if session.handshake_request_id is not None and \
                    self.correlator.is_pending(session.handshake_request_id):
                raise InvalidTransition(f"handshake for {key} is already in flight")
            # Retrying after a timeout: the earlier request is gone, the state stays.
        else:
            session.counterparty_origin = announcement.source_origin
            self.table.transition(key, SessionState.HANDSHAKE_REQUESTED)

        origin = session.counterparty_origin
        rid = request_id if request_id is not None else self.correlator.next_id()
        session.handshake_request_id = rid
        request = build_request(METHOD_CREATE_SESSION, {**(payload or {}), "discoveryId": key}, rid)

        try:
            result = await self.correlator.send(request, expected_origin=origin,
                                                timeout=timeout, target_origin=origin)
        except ProtocolError as e:
            self._back_to_discovered(key)
            print(f"[WalletMesh] Handshake for {key[:8]}... rejected by {origin}: {e}", file=sys.stderr)
            if e.code == ERROR_SESSION_EXISTS:
                raise DuplicateSessionPromotion(e.code, e.message, e.data) from e
            raise HandshakeRejected(e.code, e.message, e.data) from e

        session_id = result.get("sessionId") if isinstance(result, dict) else None
        try:
            bound = canonical_id(session_id) == key
        except ValueError:
            bound = False
        if not bound:
            self._back_to_discovered(key)
            raise HandshakeRejected(ERROR_INTERNAL,
                                    f"handshake result sessionId {session_id!r} does not match {key}")

        self.table.transition(key, SessionState.ESTABLISHED)
        session.scopes = {k: v for k, v in result.items() if k != "sessionId"}
        print(f"[WalletMesh] Session {key[:8]}... established with {origin}", file=sys.stderr)
        return replace(session, scopes=dict(session.scopes))

    def _back_to_discovered(self, key: str) -> None:
        session = self.table.get(key)
        if session is not None and session.state == SessionState.HANDSHAKE_REQUESTED:
            self.table.transition(key, SessionState.DISCOVERED)


# =============================================================================
# Provider side: answers handshakes
# =============================================================================

class ProviderSessionManager(SessionManager):
    """Answers handshakes for the provider's own discovery id.

    approve(HandshakeRequest) decides. It may be sync or async and returns a
    dict (the session payload, sent back alongside sessionId) or True to
    approve; None or False to reject. Raising ProtocolError rejects with that
    error. Without an approve callable every handshake is rejected.
    """

    def __init__(self, discovery_id: str, *args, approve: Optional[ApprovalFn] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.discovery_id = canonical_id(discovery_id)
        self.approve = approve
        self.retired: set[str] = set()

    def rotate(self, new_discovery_id: str) -> None:
        """Answer for new_discovery_id from now on. The old id is never promoted again."""
        self.retired.add(self.discovery_id)
        self.discovery_id = canonical_id(new_discovery_id)

    def handle_handshake(self, msg: HandshakeRequestMsg) -> HandlerResult:
        key = msg.discovery_id
        session = self.table.get(key)
        if session is None and key in self.retired:
            return [(build_error(msg.request_id, ERROR_UNAUTHORIZED,
                                 "This discovery id has been retired."), msg.origin)]
        if session is None and key != self.discovery_id:
            # Another provider's id
            self._drop(DropReason.UNKNOWN_CORRELATION_ID, msg.origin, f"discovery id {key[:8]}...")
            return None

        replay_key = self.replay.key(msg.origin, METHOD_CREATE_SESSION, msg.request_id,
                                     {**msg.payload, "discoveryId": key})
        if self.replay.check(replay_key):
            return self._replayed(replay_key, msg.origin, msg.request_id)

        if session is not None:
            if session.state in (SessionState.ESTABLISHED, SessionState.REVOKED):
                print(f"[WalletMesh] Refusing second promotion of {key[:8]}... requested by {msg.origin}",
                      file=sys.stderr)
                return [(build_error(msg.request_id, ERROR_SESSION_EXISTS,
                                     "A session already exists for this discovery id."), msg.origin)]
            if session.state == SessionState.HANDSHAKE_REQUESTED:
                return [(build_error(msg.request_id, ERROR_HANDSHAKE_IN_PROGRESS,
                                     "Another handshake for this discovery id is pending."), msg.origin)]
            self.table.remove(key)

        session = self.table.create(key, msg.origin)
        self.table.transition(key, SessionState.HANDSHAKE_REQUESTED)
        session.handshake_request_id = msg.request_id
        self.replay.begin(replay_key)
        self._spawn(self._decide(msg, replay_key))
        return None

    async def _decide(self, msg: HandshakeRequestMsg, replay_key: tuple) -> None:
        key = msg.discovery_id
        request = HandshakeRequest(request_id=msg.request_id, discovery_id=key,
                                   origin=msg.origin, payload=dict(msg.payload))
        error: Optional[ProtocolError] = None
        decision: Any = None
        if self.approve is None:
            error = ProtocolError(ERROR_USER_REJECTED, "User rejected the request.")
        else:
            try:
                decision = self.approve(request)
                if asyncio.iscoroutine(decision):
                    decision = await decision
            except ProtocolError as e:
                error = e
            except asyncio.CancelledError:
                self.table.remove(key)
                self.replay.finish(replay_key)
                raise
            except Exception as e:
                print(f"[WalletMesh] Approval for {key[:8]}... failed: {e}", file=sys.stderr)
                error = ProtocolError(ERROR_INTERNAL, "Internal error")

        if error is None and not (decision is True or isinstance(decision, dict)):
            error = ProtocolError(ERROR_USER_REJECTED, "User rejected the request.")
        if error is None and key in self.retired:
            error = ProtocolError(ERROR_UNAUTHORIZED, "This discovery id has been retired.")

        if error is not None:
            # A rejected handshake leaves no session behind
            self.table.remove(key)
            print(f"[WalletMesh] Handshake from {msg.origin} for {key[:8]}... rejected: {error}",
                  file=sys.stderr)
            response = build_error(msg.request_id, error.code, error.message, error.data)
            self.replay.finish(replay_key, response)
            await self._publish(response, msg.origin)
            return

        scopes = dict(decision) if isinstance(decision, dict) else {}
        session = self.table.transition(key, SessionState.ESTABLISHED)
        session.scopes = scopes
        # No recorded answer: a repeat of this handshake gets 5300 from the session state
        self.replay.finish(replay_key)
        print(f"[WalletMesh] Session {key[:8]}... established with {msg.origin}", file=sys.stderr)
        await self._publish(build_result(msg.request_id, {**scopes, "sessionId": key}), msg.origin)


