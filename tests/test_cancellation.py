"""Tests for cancel tokens, timeout signals and racing."""

import asyncio

import pytest

from image_engine.cancellation import CancelToken, TimeoutSignal, race_with_signal
from image_engine.errors import OperationAborted


class TestCancelToken:
    """Tests for the one-way cancel token."""

    def test_cancel_is_one_way_and_notifies_once(self):
        token = CancelToken()
        calls = []
        token.add_listener(lambda: calls.append("fired"))

        token.cancel()
        token.cancel()

        assert token.cancelled is True
        assert calls == ["fired"]

    def test_listener_added_after_cancel_fires_immediately(self):
        token = CancelToken()
        token.cancel()
        calls = []

        token.add_listener(lambda: calls.append("late"))

        assert calls == ["late"]

    def test_removed_listener_is_not_called(self):
        token = CancelToken()
        calls = []

        def listener():
            calls.append("x")

        token.add_listener(listener)
        token.remove_listener(listener)
        token.cancel()

        assert calls == []

    def test_sleep_is_interrupted_by_cancel(self):
        async def scenario():
            token = CancelToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            with pytest.raises(OperationAborted):
                await token.sleep(5)

        asyncio.run(scenario())


class TestTimeoutSignal:
    """Tests for combining an external token with a deadline."""

    def test_without_timeout_signal_is_external_token(self):
        async def scenario():
            token = CancelToken()
            with TimeoutSignal(token, None) as ts:
                assert ts.signal is token
                assert ts.did_timeout() is False

        asyncio.run(scenario())

    def test_timer_firing_marks_timeout(self):
        async def scenario():
            with TimeoutSignal(CancelToken(), 0.01) as ts:
                await asyncio.sleep(0.05)
                assert ts.signal.cancelled is True
                assert ts.did_timeout() is True

        asyncio.run(scenario())

    def test_external_cancel_is_not_a_timeout(self):
        async def scenario():
            token = CancelToken()
            with TimeoutSignal(token, 1) as ts:
                token.cancel()
                assert ts.signal.cancelled is True
                await asyncio.sleep(0)
                assert ts.did_timeout() is False

        asyncio.run(scenario())

    def test_already_cancelled_token_cancels_signal_immediately(self):
        async def scenario():
            token = CancelToken()
            token.cancel()
            with TimeoutSignal(token, 1) as ts:
                assert ts.signal.cancelled is True
                assert ts.did_timeout() is False

        asyncio.run(scenario())

    def test_cleanup_is_idempotent_and_stops_timer(self):
        async def scenario():
            ts = TimeoutSignal(CancelToken(), 0.01)
            ts.cleanup()
            ts.cleanup()
            await asyncio.sleep(0.05)
            assert ts.did_timeout() is False
            assert ts.signal.cancelled is False

        asyncio.run(scenario())


class TestRaceWithSignal:
    """Tests for racing awaitables against a signal."""

    def test_returns_result_when_work_finishes_first(self):
        async def work():
            await asyncio.sleep(0)
            return 42

        async def scenario():
            return await race_with_signal(work(), CancelToken())

        assert asyncio.run(scenario()) == 42

    def test_aborts_and_cancels_work_when_signal_fires(self):
        finished = []

        async def work():
            try:
                await asyncio.sleep(5)
            finally:
                finished.append("cleaned up")

        async def scenario():
            token = CancelToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            with pytest.raises(OperationAborted):
                await race_with_signal(work(), token)

        asyncio.run(scenario())
        assert finished == ["cleaned up"]

    def test_pre_cancelled_signal_never_starts_work(self):
        started = []

        async def work():
            started.append(True)

        async def scenario():
            token = CancelToken()
            token.cancel()
            with pytest.raises(OperationAborted):
                await race_with_signal(work(), token)

        asyncio.run(scenario())
        assert started == []
