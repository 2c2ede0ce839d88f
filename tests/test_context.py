import asyncio

import pytest

from cipdip_orch.context import RunContext
from cipdip_orch.errors import CancellationError


def test_wait_returns_result_of_work() -> None:
    async def scenario() -> int:
        async def work() -> int:
            await asyncio.sleep(0.01)
            return 7

        return await RunContext().start().wait(work())

    assert asyncio.run(scenario()) == 7


def test_wait_timeout_raises_timeout_error() -> None:
    async def scenario() -> None:
        await RunContext().start().wait(asyncio.sleep(5), timeout=0.05)

    with pytest.raises(TimeoutError, match="timed out after 0.05s"):
        asyncio.run(scenario())


def test_cancel_interrupts_wait_and_cancels_owned_work() -> None:
    async def scenario() -> tuple[bool, str]:
        ctx = RunContext().start()
        finished = False

        async def work() -> None:
            nonlocal finished
            await asyncio.sleep(5)
            finished = True

        asyncio.get_running_loop().call_later(0.05, ctx.cancel, "operator abort")
        try:
            await ctx.wait(work())
        except CancellationError as exc:
            return finished, exc.reason
        raise AssertionError("wait did not observe cancellation")

    finished, reason = asyncio.run(scenario())

    assert finished is False
    assert reason == "operator abort"


def test_cancel_leaves_caller_futures_untouched() -> None:
    async def scenario() -> bool:
        ctx = RunContext().start()
        future: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        asyncio.get_running_loop().call_later(0.02, ctx.cancel)
        with pytest.raises(CancellationError):
            await ctx.wait(future)
        return future.cancelled()

    assert asyncio.run(scenario()) is False


def test_deadline_cancels_with_timed_out_flag() -> None:
    async def scenario() -> RunContext:
        ctx = RunContext(0.05).start()
        with pytest.raises(CancellationError):
            await ctx.sleep(5)
        return ctx

    ctx = asyncio.run(scenario())

    assert ctx.cancelled
    assert ctx.timed_out
    assert ctx.reason == "run deadline of 0.05s exceeded"


def test_cancel_is_idempotent_and_keeps_first_reason() -> None:
    async def scenario() -> RunContext:
        ctx = RunContext(10).start()
        ctx.cancel("first")
        ctx.cancel("second")
        return ctx

    ctx = asyncio.run(scenario())

    assert ctx.reason == "first"
    assert ctx.timed_out is False
    with pytest.raises(CancellationError, match="first"):
        ctx.raise_if_cancelled()
