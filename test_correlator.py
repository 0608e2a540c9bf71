#!/usr/bin/env python3
"""
Request correlator tests — settlement, timeouts, origin binding.

Runs without a channel: publishes are captured by a recording stub and
responses are handed to the correlator directly.

Usage:
    python3 test_correlator.py
"""

import asyncio
import sys

from walletmesh.config import UNSCOPED
from walletmesh.correlator import RequestCorrelator
from walletmesh.errors import ProtocolError, RequestTimeout, TransportError
from walletmesh.messages import Response, build_request
from walletmesh.network.transport import SendResult

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

GREEN = "\033[92m"
RED = "\033[91m"
BOLD = "\033[1m"
RESET = "\033[0m"

WALLET = "https://wallet.example"
EVIL = "https://evil.example"

results: list[tuple[str, bool, str]] = []


def report(name: str, passed: bool, detail: str = "") -> None:
    mark = f"{GREEN}✓{RESET}" if passed else f"{RED}✗{RESET}"
    print(f"  {mark} {name}")
    if detail and not passed:
        print(f"      {detail}")
    results.append((name, passed, detail))
    assert passed, f"{name}: {detail}"


class RecordingPublisher:
    """Stands in for Transport.publish."""

    def __init__(self, fail: bool = False):
        self.sent: list[tuple[dict, str]] = []
        self.fail = fail

    async def __call__(self, message: dict, target_origin: str) -> SendResult:
        self.sent.append((message, target_origin))
        if self.fail:
            return SendResult(success=False, transport_name="stub", error="channel closed")
        return SendResult(success=True, transport_name="stub", delivered=1)


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

async def test_result_settles_future() -> None:
    pub = RecordingPublisher()
    corr = RequestCorrelator(pub)
    fut = corr.send(build_request("wallet_invokeMethod", {"x": 1}), expected_origin=WALLET, timeout=5)
    await settle()

    report("request published once", len(pub.sent) == 1)
    message, target = pub.sent[0]
    report("id assigned", message.get("id") == 1, str(message))
    report("scoped request targets the expected origin", target == WALLET, target)
    report("request is pending", corr.is_pending(1))

    claimed = corr.on_message(Response(origin=WALLET, request_id=1, result={"ok": True}))
    report("response claimed", claimed)
    report("future resolved with result", fut.done() and fut.result() == {"ok": True})
    report("no longer pending", not corr.is_pending(1) and corr.pending() == [])


async def test_error_response_rejects() -> None:
    corr = RequestCorrelator(RecordingPublisher())
    fut = corr.send(build_request("wallet_invokeMethod", {}, "req-7"), expected_origin=WALLET, timeout=5)
    corr.on_message(Response(origin=WALLET, request_id="req-7",
                             error={"code": 4001, "message": "User rejected the request."}))
    try:
        await fut
        report("error response rejects", False, "future resolved")
    except ProtocolError as e:
        report("error response rejects", True)
        report("error code carried", e.code == 4001, str(e.code))
        report("error message carried", e.message == "User rejected the request.")


async def test_timeout_then_late_response() -> None:
    corr = RequestCorrelator(RecordingPublisher())
    fut = corr.send(build_request("wallet_invokeMethod", {}), expected_origin=WALLET, timeout=0.05)
    try:
        await fut
        report("times out", False, "future resolved")
    except RequestTimeout as e:
        report("times out", True)
        report("timeout names the request", e.request_id == 1 and e.method == "wallet_invokeMethod")

    late = corr.on_message(Response(origin=WALLET, request_id=1, result="late"))
    report("late response not claimed", late is False)
    report("nothing left pending", corr.pending() == [])


async def test_origin_mismatch_ignored() -> None:
    corr = RequestCorrelator(RecordingPublisher())
    fut = corr.send(build_request("wallet_createSession", {}), expected_origin=WALLET, timeout=5)

    claimed = corr.on_message(Response(origin=EVIL, request_id=1, result={"sessionId": "x"}))
    report("response from wrong origin not claimed", claimed is False)
    report("future still open", not fut.done())
    report("request still pending", corr.is_pending(1))

    corr.on_message(Response(origin=WALLET, request_id=1, result="real"))
    report("right origin still settles it", fut.done() and fut.result() == "real")


async def test_unscoped_expectation() -> None:
    pub = RecordingPublisher()
    corr = RequestCorrelator(pub)
    fut = corr.send(build_request("wallet_invokeMethod", {}), timeout=5)
    await settle()
    report("unscoped request broadcast", pub.sent[0][1] == UNSCOPED)
    corr.on_message(Response(origin=EVIL, request_id=1, result="any"))
    report("any origin may answer an unscoped request", fut.done() and fut.result() == "any")


async def test_settles_exactly_once() -> None:
    corr = RequestCorrelator(RecordingPublisher())
    fut = corr.send(build_request("wallet_invokeMethod", {}), expected_origin=WALLET, timeout=5)
    first = corr.on_message(Response(origin=WALLET, request_id=1, result="first"))
    second = corr.on_message(Response(origin=WALLET, request_id=1, result="second"))
    corr.on_timeout(1)
    report("first response claimed", first)
    report("duplicate response not claimed", second is False)
    report("result is the first one", fut.result() == "first")


async def test_id_reused_after_settlement() -> None:
    corr = RequestCorrelator(RecordingPublisher())
    first = corr.send(build_request("wallet_invokeMethod", {}, 456), expected_origin=WALLET, timeout=5)
    corr.on_message(Response(origin=WALLET, request_id=456, result="first"))
    report("first request settled", first.done() and first.result() == "first")

    second = corr.send(build_request("wallet_invokeMethod", {}, 456), expected_origin=WALLET, timeout=5)
    report("settled id may be sent again", corr.is_pending(456) and not second.done())
    other = corr.send(build_request("wallet_invokeMethod", {}, 457), expected_origin=WALLET, timeout=5)

    corr.on_message(Response(origin=WALLET, request_id=457, result="other"))
    report("answering one leaves the other pending", corr.is_pending(456) and not second.done())
    corr.on_message(Response(origin=WALLET, request_id=456, result="second"))
    report("reused id settles with its own result", second.result() == "second")
    report("other request kept its result", other.result() == "other")


async def test_caller_errors() -> None:
    corr = RequestCorrelator(RecordingPublisher())
    fut = corr.send(build_request("wallet_invokeMethod", {}, 10), expected_origin=WALLET, timeout=5)
    try:
        corr.send(build_request("wallet_invokeMethod", {}, 10), expected_origin=WALLET, timeout=5)
        report("duplicate pending id refused", False, "no ValueError")
    except ValueError:
        report("duplicate pending id refused", True)
    report("original request unaffected", corr.is_pending(10) and not fut.done())

    try:
        corr.send({"jsonrpc": "2.0", "params": {}}, timeout=5)
        report("request without method refused", False, "no ValueError")
    except ValueError:
        report("request without method refused", True)

    try:
        corr.send(build_request("wallet_invokeMethod", {}), timeout=0)
        report("non-positive timeout refused", False, "no ValueError")
    except ValueError:
        report("non-positive timeout refused", True)

    other = RequestCorrelator(RecordingPublisher())
    taken = other.send(build_request("wallet_invokeMethod", {}, 1), expected_origin=WALLET, timeout=5)
    report("generated ids skip explicit ones in use", other.next_id() == 2)
    other.cancel_all()
    await asyncio.gather(taken, return_exceptions=True)

    corr.cancel_all()
    try:
        await fut
    except TransportError:
        pass


async def test_publish_failure() -> None:
    corr = RequestCorrelator(RecordingPublisher(fail=True))
    fut = corr.send(build_request("wallet_invokeMethod", {}), expected_origin=WALLET, timeout=5)
    try:
        await fut
        report("failed publish rejects", False, "future resolved")
    except TransportError as e:
        report("failed publish rejects", True)
        report("transport error carried", "channel closed" in str(e), str(e))
    report("failed request not pending", not corr.is_pending(1))


async def test_cancel_all_and_snapshot() -> None:
    corr = RequestCorrelator(RecordingPublisher())
    futs = [corr.send(build_request("wallet_invokeMethod", {}), expected_origin=WALLET, timeout=5)
            for _ in range(3)]
    snapshot = corr.pending()
    report("snapshot lists every request", sorted(p.request_id for p in snapshot) == [1, 2, 3])
    report("snapshot carries no futures", all(p.future is None for p in snapshot))

    corr.cancel_all("shutting down")
    outcomes = await asyncio.gather(*futs, return_exceptions=True)
    report("every request rejected", all(isinstance(o, TransportError) for o in outcomes))
    report("nothing pending", corr.pending() == [])


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

async def main() -> None:
    print(f"\n{BOLD}WalletMesh Correlator Tests{RESET}")
    print("=" * 50)

    tests = [
        ("1. Result settles future", test_result_settles_future),
        ("2. Error response rejects", test_error_response_rejects),
        ("3. Timeout, then late response", test_timeout_then_late_response),
        ("4. Origin mismatch ignored", test_origin_mismatch_ignored),
        ("5. Unscoped expectation", test_unscoped_expectation),
        ("6. Settles exactly once", test_settles_exactly_once),
        ("7. Id reused after settlement", test_id_reused_after_settlement),
        ("8. Caller errors", test_caller_errors),
        ("9. Publish failure", test_publish_failure),
        ("10. cancel_all and snapshot", test_cancel_all_and_snapshot),
    ]
    for label, test_fn in tests:
        print(f"\n{BOLD}{label}{RESET}")
        try:
            await test_fn()
        except AssertionError:
            pass
        except Exception as e:
            results.append((label, False, f"EXCEPTION: {e}"))

    passed = sum(1 for _, ok, _ in results if ok)
    total = len(results)
    print(f"\n{'=' * 50}")
    if passed == total:
        print(f"{GREEN}{BOLD}All {total} checks passed.{RESET}")
    else:
        print(f"{BOLD}Results: {GREEN}{passed} passed{RESET}, {RED}{total - passed} failed{RESET}")
        for name, ok, detail in results:
            if not ok:
                print(f"  - {name}: {detail}")
    sys.exit(0 if passed == total else 1)


if __name__ == "__main__":
    asyncio.run(main())
