"""Tests for the typing indicator state machine."""

import asyncio
from datetime import datetime, timezone

from proposal_chat.schemas.chat import TypingSignal
from proposal_chat.services.typing_indicator import TypingIndicator


def _signal(name="Ada"):
    return TypingSignal(author_id="u1", display_name=name, timestamp=datetime.now(timezone.utc))


class TestTypingIndicator:
    """SUT: TypingIndicator"""

    async def test_idle_until_signalled(self):
        indicator = TypingIndicator(timeout=0.05)
        assert indicator.is_typing is False
        assert indicator.typing_user is None
        assert indicator.has_pending_timer is False

    async def test_signal_emits_once_per_burst(self):
        """Renewed signals extend the state without re-announcing it."""
        changes = []
        indicator = TypingIndicator(timeout=0.05, on_change=changes.append)

        indicator.signal(_signal())
        indicator.signal(_signal())
        indicator.signal(_signal("Ada L."))

        assert indicator.is_typing is True
        assert indicator.typing_user.display_name == "Ada L."
        assert changes == [True]
        indicator.close()

    async def test_decays_after_timeout(self):
        changes = []
        indicator = TypingIndicator(timeout=0.05, on_change=changes.append)

        indicator.signal(_signal())
        await asyncio.sleep(0.1)

        assert indicator.is_typing is False
        assert indicator.has_pending_timer is False
        assert changes == [True, False]

    async def test_new_signal_restarts_the_timer(self):
        indicator = TypingIndicator(timeout=0.06)

        indicator.signal(_signal())
        await asyncio.sleep(0.04)
        indicator.signal(_signal())
        await asyncio.sleep(0.04)
        # 0.08s after the first signal, but only 0.04s after the second
        assert indicator.is_typing is True

        await asyncio.sleep(0.06)
        assert indicator.is_typing is False

    async def test_only_one_timer_is_live(self):
        indicator = TypingIndicator(timeout=0.05)

        indicator.signal(_signal())
        first = indicator._timer
        indicator.signal(_signal())

        assert first.cancelled() is True
        assert indicator._timer is not first
        indicator.close()

    async def test_reset_clears_state(self):
        changes = []
        indicator = TypingIndicator(timeout=1.0, on_change=changes.append)

        indicator.signal(_signal())
        indicator.reset()

        assert indicator.is_typing is False
        assert indicator.has_pending_timer is False
        assert changes == [True, False]

    async def test_close_cancels_timer_and_ignores_signals(self):
        changes = []
        indicator = TypingIndicator(timeout=0.05, on_change=changes.append)

        indicator.signal(_signal())
        indicator.close()
        indicator.signal(_signal())
        await asyncio.sleep(0.1)

        assert indicator.is_typing is False
        assert changes == [True]

    async def test_listener_errors_do_not_break_state(self):
        def boom(_typing):
            raise RuntimeError("listener bug")

        indicator = TypingIndicator(timeout=0.05, on_change=boom)
        indicator.signal(_signal())

        assert indicator.is_typing is True
        indicator.close()
