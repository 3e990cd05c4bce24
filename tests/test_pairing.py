"""
Tests for PairingPoller.

Verifies:
- The loop ends as paired on the first connected state
- Timeout and explicit stop end the loop with distinct outcomes
- The pairing code is delivered once, independently of the connected state
- start() is idempotent and stop() on an idle poller is a no-op
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from connector.config import PollConfig
from connector.errors import Cancelled, TimedOut, TransportFailure
from connector.pairing import CancelToken, PairingPoller, PollState, is_terminal_connected
from connector.result import Err, Ok


def _statuses(*states):
    return AsyncMock(side_effect=[Ok({"state": state}) for state in states])


async def _wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


class TestPairingPoller:
    @pytest.mark.asyncio
    async def test_paired_after_third_tick(self):
        fetch = _statuses("connecting", "connecting", "open")
        states = []

        async def on_state(state):
            states.append(state)

        poller = PairingPoller(fetch, config=PollConfig(interval=0.01, timeout=5), on_state=on_state)
        result = await poller.start()

        assert result.state is PollState.PAIRED
        assert result.ticks == 3
        assert result.last_remote_state == "open"
        assert fetch.await_count == 3
        assert states == ["connecting", "connecting", "open"]
        assert poller.state is PollState.PAIRED

    @pytest.mark.asyncio
    async def test_times_out(self):
        fetch = AsyncMock(return_value=Ok({"state": "connecting"}))
        poller = PairingPoller(fetch, config=PollConfig(interval=0.01, timeout=0.05))

        result = await poller.start()

        assert result.state is PollState.TIMED_OUT
        assert isinstance(result.error, TimedOut)
        assert result.ticks >= 1

    @pytest.mark.asyncio
    async def test_stop_between_ticks(self):
        fetch = AsyncMock(return_value=Ok({"state": "connecting"}))
        poller = PairingPoller(fetch, config=PollConfig(interval=30, timeout=120))

        task = poller.start()
        await _wait_until(lambda: fetch.await_count == 1)
        poller.stop()
        result = await asyncio.wait_for(task, timeout=1)

        assert result.state is PollState.CANCELLED
        assert isinstance(result.error, Cancelled)
        assert fetch.await_count == 1
        assert not poller.running

    @pytest.mark.asyncio
    async def test_stop_interrupts_slow_fetch(self):
        entered = asyncio.Event()

        async def slow_status():
            entered.set()
            await asyncio.sleep(3)
            return Ok({"state": "open"})

        poller = PairingPoller(slow_status, config=PollConfig(interval=0.01, timeout=120))
        task = poller.start()
        await asyncio.wait_for(entered.wait(), timeout=1)
        poller.stop()
        result = await asyncio.wait_for(task, timeout=0.5)

        assert result.state is PollState.CANCELLED
        assert isinstance(result.error, Cancelled)

    @pytest.mark.asyncio
    async def test_timeout_bounds_slow_fetch(self):
        async def slow_status():
            await asyncio.sleep(3)
            return Ok({"state": "open"})

        poller = PairingPoller(slow_status, config=PollConfig(interval=30, timeout=0.05))
        result = await asyncio.wait_for(poller.start(), timeout=0.5)

        assert result.state is PollState.TIMED_OUT
        assert isinstance(result.error, TimedOut)

    @pytest.mark.asyncio
    async def test_timeout_cuts_the_sleep_short(self):
        fetch = AsyncMock(return_value=Ok({"state": "connecting"}))
        poller = PairingPoller(fetch, config=PollConfig(interval=30, timeout=0.05))

        result = await asyncio.wait_for(poller.start(), timeout=0.5)

        assert result.state is PollState.TIMED_OUT
        assert fetch.await_count >= 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_idle_stop_is_noop(self):
        fetch = AsyncMock(return_value=Ok({"state": "connecting"}))
        poller = PairingPoller(fetch, config=PollConfig(interval=30, timeout=120))

        poller.stop()
        assert poller.state is PollState.IDLE

        first = poller.start()
        second = poller.start()
        assert first is second

        poller.stop()
        await first

    @pytest.mark.asyncio
    async def test_code_is_fetched_once_and_delivered_once(self):
        fetch_status = _statuses("connecting", "connecting", "open")
        fetch_code = AsyncMock(return_value=Ok({"qr_base64": "QR1"}))
        on_code = AsyncMock()
        poller = PairingPoller(
            fetch_status,
            fetch_code=fetch_code,
            config=PollConfig(interval=0.01, timeout=5),
            on_code=on_code,
        )

        poller.start()
        assert await poller.wait_for_code() == "QR1"
        result = await poller.task

        assert result.pairing_code == "QR1"
        fetch_code.assert_awaited_once()
        on_code.assert_awaited_once_with("QR1")

    @pytest.mark.asyncio
    async def test_seeded_code_skips_code_fetch(self):
        fetch_code = AsyncMock()
        poller = PairingPoller(_statuses("open"), fetch_code=fetch_code, config=PollConfig(interval=0.01, timeout=5))

        poller.start(pairing_code="SEED")
        assert await poller.wait_for_code() == "SEED"
        await poller.task

        fetch_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connected_without_code(self):
        poller = PairingPoller(_statuses("open"), fetch_code=AsyncMock(), config=PollConfig(interval=0.01, timeout=5))

        poller.start()
        code = await poller.wait_for_code()
        result = await poller.task

        assert code is None
        assert result.state is PollState.PAIRED

    @pytest.mark.asyncio
    async def test_failed_fetches_are_transient(self):
        fetch = AsyncMock(
            side_effect=[
                Err(TransportFailure("HTTP 502: bad gateway", status=502)),
                RuntimeError("boom"),
                Ok({"state": "CONNECTED"}),
            ]
        )
        poller = PairingPoller(fetch, config=PollConfig(interval=0.01, timeout=5))

        result = await poller.start()

        assert result.state is PollState.PAIRED
        assert result.ticks == 3

    @pytest.mark.asyncio
    async def test_crashing_callback_does_not_stop_the_loop(self):
        on_state = AsyncMock(side_effect=RuntimeError("subscriber down"))
        poller = PairingPoller(
            _statuses("connecting", "open"),
            config=PollConfig(interval=0.01, timeout=5),
            on_state=on_state,
        )

        result = await poller.start()

        assert result.state is PollState.PAIRED
        assert on_state.await_count == 2


class TestHelpers:
    def test_terminal_states(self):
        for state in ("connected", "open", "READY", " online "):
            assert is_terminal_connected(state)
        for state in ("connecting", "close", "", None):
            assert not is_terminal_connected(state)

    @pytest.mark.asyncio
    async def test_cancel_token_sleep(self):
        token = CancelToken()
        assert await token.sleep(0.01) is False
        token.cancel()
        assert token.cancelled
        assert await token.sleep(10) is True

    @pytest.mark.asyncio
    async def test_cancel_token_guard(self):
        token = CancelToken()
        assert await token.guard(asyncio.sleep(0, result="done")) == "done"

        with pytest.raises(TimedOut):
            await token.guard(asyncio.sleep(3), timeout=0.01)

        pending = asyncio.ensure_future(asyncio.sleep(3))
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(Cancelled):
            await token.guard(pending)
        assert pending.cancelled()

