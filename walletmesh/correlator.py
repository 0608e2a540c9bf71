"""
Request correlator — matches asynchronous responses to the requests that caused them.

Every outbound request registers a PendingRequest keyed by its id and gets a
future back immediately. The future settles exactly once: with the response
result, with a ProtocolError carried in the response, with RequestTimeout at
the deadline, or with TransportError if the publish itself failed.

Depends on: config, errors, models, origin, messages, network/transport
"""

import asyncio
import itertools
import sys
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional

from walletmesh.config import DEFAULT_REQUEST_TIMEOUT, UNSCOPED
from walletmesh.errors import ProtocolError, RequestTimeout, TransportError
from walletmesh.messages import Response
from walletmesh.models import PendingRequest, RequestId
from walletmesh.network.transport import SendResult
from walletmesh.origin import validate

PublishFn = Callable[[dict, str], Awaitable[SendResult]]


class RequestCorrelator:
    """Tracks this agent's outstanding requests by request id."""

    def __init__(self, publish: PublishFn, first_id: int = 1):
        self._publish = publish
        self._pending: dict[RequestId, PendingRequest] = {}
        self._ids = itertools.count(first_id)
        self._publish_tasks: set[asyncio.Task] = set()

    def next_id(self) -> int:
        """Next free integer id (skips ids the caller chose explicitly)."""
        while True:
            candidate = next(self._ids)
            if candidate not in self._pending:
                return candidate

    def send(self, request: dict, expected_origin: str = UNSCOPED,
             timeout: float = DEFAULT_REQUEST_TIMEOUT,
             target_origin: Optional[str] = None) -> asyncio.Future:
        """Register a pending request, publish it, and return its future.

        Returns without waiting for the publish. A request with no "id" gets
        one from next_id(). Reusing an id that is still pending is a caller
        error (ValueError).

        target_origin defaults to expected_origin, so a scoped request is only
        delivered to the origin it expects an answer from.
        """
        if "method" not in request:
            raise ValueError("request has no method")
        if "id" not in request or request["id"] is None:
            request = {**request, "id": self.next_id()}
        request_id = request["id"]
        if request_id in self._pending:
            raise ValueError(f"request id {request_id!r} is already pending")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        loop = asyncio.get_running_loop()
        now = loop.time()
        entry = PendingRequest(
            request_id=request_id,
            method=request["method"],
            expected_origin=expected_origin,
            issued_at=now,
            deadline=now + timeout,
            future=loop.create_future(),
        )
        entry._timer = loop.call_later(timeout, self.on_timeout, request_id)
        self._pending[request_id] = entry

        target = target_origin if target_origin is not None else expected_origin
        task = loop.create_task(self._publish_request(entry, request, target))
        self._publish_tasks.add(task)
        task.add_done_callback(self._publish_tasks.discard)
        return entry.future

    def on_message(self, response: Response) -> bool:
        """Settle the matching pending request. Returns True if the response was claimed.

        A response whose id is unknown, or whose sender fails origin
        validation, is left for someone else; the pending entry is untouched.
        """
        entry = self._pending.get(response.request_id)
        if entry is None:
            return False
        if not validate(entry.expected_origin, response.origin):
            return False
        if response.is_error:
            err = response.error or {}
            self._settle(entry.request_id, exc=ProtocolError(
                code=err.get("code", 0),
                message=err.get("message", ""),
                data=err.get("data"),
            ))
        else:
            self._settle(entry.request_id, result=response.result)
        return True

    def on_timeout(self, request_id: RequestId) -> None:
        entry = self._pending.get(request_id)
        if entry is None:
            return
        self._settle(request_id, exc=RequestTimeout(
            request_id, entry.method, round(entry.deadline - entry.issued_at, 3),
        ))

    def is_pending(self, request_id: RequestId) -> bool:
        return request_id in self._pending

    def pending(self) -> list[PendingRequest]:
        """Snapshot of outstanding requests."""
        return [replace(e, future=None, _timer=None) for e in self._pending.values()]

    def cancel_all(self, reason: str = "correlator closed") -> None:
        """Reject every outstanding request (agent shutdown)."""
        for request_id in list(self._pending):
            self._settle(request_id, exc=TransportError(reason))
        for task in list(self._publish_tasks):
            task.cancel()

    # -- internal --

    async def _publish_request(self, entry: PendingRequest, request: dict, target: str) -> None:
        try:
            result = await self._publish(request, target)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            print(f"[WalletMesh] Publish of request {entry.request_id!r} ({entry.method}) failed: {e}",
                  file=sys.stderr)
            self._settle(entry.request_id, exc=TransportError(str(e)), only=entry)
            return
        if not result.success:
            print(f"[WalletMesh] Publish of request {entry.request_id!r} ({entry.method}) failed: "
                  f"{result.error}", file=sys.stderr)
            self._settle(entry.request_id, exc=TransportError(result.error or "publish failed"), only=entry)

    def _settle(self, request_id: RequestId, result: Any = None,
                exc: Optional[BaseException] = None,
                only: Optional[PendingRequest] = None) -> None:
        entry = self._pending.get(request_id)
        if entry is None or (only is not None and entry is not only):
            return
        del self._pending[request_id]
        if entry._timer is not None:
            entry._timer.cancel()
        fut = entry.future
        if fut is None or fut.done():
            # Caller discarded (cancelled) the future; nothing to deliver.
            return
        if exc is not None:
            fut.set_exception(exc)
        else:
            fut.set_result(result)
