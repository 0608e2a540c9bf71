#!/usr/bin/env python3
"""
Origin validation and identifier canonicalization tests.

Usage:
    python3 test_origin.py
"""

import sys

from walletmesh.config import MAX_ORIGIN_LENGTH, UNSCOPED
from walletmesh.origin import (
    canonical_id,
    canonical_origin,
    new_discovery_id,
    validate,
    validate_origin,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

GREEN = "\033[92m"
RED = "\033[91m"
BOLD = "\033[1m"
RESET = "\033[0m"

results: list[tuple[str, bool, str]] = []


def report(name: str, passed: bool, detail: str = "") -> None:
    mark = f"{GREEN}✓{RESET}" if passed else f"{RED}✗{RESET}"
    print(f"  {mark} {name}")
    if detail and not passed:
        print(f"      {detail}")
    results.append((name, passed, detail))
    assert passed, f"{name}: {detail}"


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

def test_canonical_origin() -> None:
    report("scheme and host lowercased",
           canonical_origin("HTTPS://Wallet.Example") == "https://wallet.example")
    report("default port dropped",
           canonical_origin("https://wallet.example:443") == "https://wallet.example")
    report("explicit port kept",
           canonical_origin("http://localhost:8080") == "http://localhost:8080")
    report("path and query stripped",
           canonical_origin("https://dapp.example/app?x=1") == "https://dapp.example")
    report("unparseable value returned as-is",
           canonical_origin("not an origin") == "not an origin")
    report("unscoped left alone", canonical_origin(UNSCOPED) == UNSCOPED)


def test_validate() -> None:
    report("unscoped expectation accepts anyone",
           validate(UNSCOPED, "https://evil.example"))
    report("same origin accepted",
           validate("https://wallet.example", "https://wallet.example"))
    report("same origin with default port accepted",
           validate("https://wallet.example", "https://WALLET.example:443"))
    report("different host rejected",
           not validate("https://wallet.example", "https://evil.example"))
    report("different scheme rejected",
           not validate("https://wallet.example", "http://wallet.example"))
    report("different port rejected",
           not validate("http://localhost:8080", "http://localhost:8081"))
    report("unscoped sender never matches a concrete expectation",
           not validate("https://wallet.example", UNSCOPED))
    report("non-string sender rejected",
           not validate("https://wallet.example", None))


def test_validate_origin() -> None:
    report("empty origin rejected", validate_origin("") is not None)
    report("unscoped origin rejected", validate_origin(UNSCOPED) is not None)
    report("oversized origin rejected",
           validate_origin("https://" + "a" * MAX_ORIGIN_LENGTH) is not None)
    report("concrete origin accepted", validate_origin("https://dapp.example") is None)


def test_canonical_id() -> None:
    upper = "350670DB-19FA-4704-A166-E52E178B59D2"
    lower = "350670db-19fa-4704-a166-e52e178b59d2"
    report("uppercase id canonicalized", canonical_id(upper) == lower)
    report("braced id canonicalized", canonical_id("{" + lower + "}") == lower)
    report("surrounding whitespace ignored", canonical_id(f"  {lower} ") == lower)

    try:
        canonical_id("not-a-uuid")
        report("non-uuid rejected", False, "no ValueError")
    except ValueError:
        report("non-uuid rejected", True)

    try:
        canonical_id(42)
        report("non-string rejected", False, "no ValueError")
    except ValueError:
        report("non-string rejected", True)

    a, b = new_discovery_id(), new_discovery_id()
    report("fresh ids are canonical", canonical_id(a) == a)
    report("fresh ids are distinct", a != b)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def main() -> None:
    print(f"\n{BOLD}WalletMesh Origin Tests{RESET}")
    print("=" * 50)

    tests = [
        ("1. canonical_origin", test_canonical_origin),
        ("2. validate", test_validate),
        ("3. validate_origin", test_validate_origin),
        ("4. canonical_id", test_canonical_id),
    ]
    for label, test_fn in tests:
        print(f"\n{BOLD}{label}{RESET}")
        try:
            test_fn()
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
    main()
