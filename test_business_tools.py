#!/usr/bin/env python3
"""Tests for the Whales Pump business tools and ToolDispatcher.

Run: python3 test_business_tools.py
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from business_tools import (TOOL_DECLARATIONS, ToolDispatcher, calculate_profit_share,
                            check_eligibility, provide_admin_contact)
from chat_transcript import AGENT, ChatTranscript

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


# ======================================================================
# Test Group 1: check_eligibility
# ======================================================================

@test("Capital at or above 5000 is eligible")
def test_eligible():
    for capital in (5000, 6000, 1_000_000):
        result = check_eligibility(capital)
        assert result["eligible"] is True
        assert result["result"] == "Eligible for Share Trading."
        assert "screenshot" in result["recommendation"]


@test("Capital below 5000 gets the VIP recommendation")
def test_not_eligible():
    result = check_eligibility(1200)
    assert result["eligible"] is False
    assert result["result"] == "NOT Eligible for Share Trading."
    assert result["recommendation"] == (
        "Your capital ($1,200) is below the $5,000 requirement for Share Trading. "
        "Please join our VIP Membership starting at $300.")


@test("Eligibility is deterministic and monotonic in capital")
def test_eligibility_monotonic():
    capitals = [0, 100, 4999.99, 5000, 5000.01, 7500, 20000]
    verdicts = [check_eligibility(c)["eligible"] for c in capitals]
    assert verdicts == sorted(verdicts), f"Not monotonic: {verdicts}"
    assert [check_eligibility(c) for c in capitals] == [check_eligibility(c) for c in capitals]


@test("Threshold is configurable")
def test_eligibility_threshold():
    assert check_eligibility(3000, threshold=2500)["eligible"] is True
    assert check_eligibility(3000, threshold=10000)["eligible"] is False


# ======================================================================
# Test Group 2: calculate_profit_share
# ======================================================================

@test("Fee plus user share equals profit")
def test_profit_share_sums():
    for profit in (0, 100, 0.01, 1e6):
        result = calculate_profit_share(profit)
        assert result["ourFee"] + result["userKeeps"] == profit, f"profit={profit}"
        assert result["totalProfit"] == profit


@test("Split is exactly 50/50")
def test_profit_share_ratio():
    for profit in (0, 100, 0.01, 1e6, 333.33):
        result = calculate_profit_share(profit)
        assert result["ourFee"] == result["userKeeps"], f"profit={profit}"


@test("Profit share message is formatted in dollars")
def test_profit_share_message():
    result = calculate_profit_share(1000)
    assert result["message"] == "For a profit of $1,000, you will keep $500 and pay us $500 as service fee."


# ======================================================================
# Test Group 3: provide_admin_contact
# ======================================================================

@test("Admin contact card is appended to the transcript")
def test_admin_contact():
    transcript = ChatTranscript(greeting=None)
    result = provide_admin_contact(transcript, "Balance Verified")
    assert result == {"result": "Contact card successfully displayed on user screen."}
    assert len(transcript) == 1
    msg = transcript.last()
    assert msg.sender == AGENT
    assert "@Binance_Share_Trading" in msg.text
    assert "Congratulations" in msg.text


# ======================================================================
# Test Group 4: ToolDispatcher
# ======================================================================

@test("Dispatcher routes known tools")
async def test_dispatch_known():
    dispatcher = ToolDispatcher(ChatTranscript(greeting=None))
    result = await dispatcher.dispatch("check_eligibility", {"capital": 6000})
    assert result["eligible"] is True
    result = await dispatcher.dispatch("calculate_profit_share", {"profit": 200})
    assert result["ourFee"] == 100


@test("Unknown tool returns an error result instead of raising")
async def test_dispatch_unknown():
    dispatcher = ToolDispatcher(ChatTranscript(greeting=None))
    result = await dispatcher.dispatch("transfer_funds", {"amount": 1})
    assert "error" in result
    assert "transfer_funds" in result["error"]


@test("Missing or bad arguments return an error result")
async def test_dispatch_bad_args():
    dispatcher = ToolDispatcher(ChatTranscript(greeting=None))
    missing = await dispatcher.dispatch("check_eligibility", {})
    assert "error" in missing and "capital" in missing["error"]
    bad = await dispatcher.dispatch("calculate_profit_share", {"profit": "lots"})
    assert "error" in bad


@test("Transcript update is visible when dispatch returns")
async def test_dispatch_contact_side_effect():
    transcript = ChatTranscript(greeting=None)
    dispatcher = ToolDispatcher(transcript, {"admin_contact": "@Support_Desk"})
    result = await dispatcher.dispatch("provide_admin_contact", {"reason": "VIP Purchase"})
    assert "result" in result
    assert "@Support_Desk" in transcript.last().text


@test("Async handlers are awaited")
async def test_dispatch_async_handler():
    dispatcher = ToolDispatcher(ChatTranscript(greeting=None))

    async def lookup(args):
        await asyncio.sleep(0)
        return {"result": args["q"].upper()}

    dispatcher.register("lookup", lookup)
    assert await dispatcher.dispatch("lookup", {"q": "vip"}) == {"result": "VIP"}


@test("Declarations cover the three tools with Gemini schema types")
def test_declarations():
    names = [d["name"] for d in TOOL_DECLARATIONS]
    assert names == ["check_eligibility", "calculate_profit_share", "provide_admin_contact"]
    for decl in TOOL_DECLARATIONS:
        assert decl["parameters"]["type"] == "OBJECT"
        assert decl["parameters"]["required"]


if __name__ == "__main__":
    print("=" * 60)
    print("Business Tools Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
