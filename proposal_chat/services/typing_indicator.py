import asyncio
import logging
from typing import Callable, Optional

from proposal_chat.schemas.chat import TypingSignal

logger = logging.getLogger(__name__)

TYPING_TIMEOUT_SECONDS = 3.0


class TypingIndicator:
    """
    Turns inbound typing signals into a "someone else is typing" flag.

    Idle -> Typing on a signal, back to Idle once ``timeout`` seconds pass
    without a renewed signal. There is only ever one decay timer: a new
    signal cancels and replaces it.
    """

    def __init__(self, timeout: float = TYPING_TIMEOUT_SECONDS, on_change: Optional[Callable[[bool], None]] = None) -> None:
        self._timeout = timeout
        self._on_change = on_change
        self._timer: Optional[asyncio.TimerHandle] = None
        self._current: Optional[TypingSignal] = None
        self._closed = False

    @property
    def is_typing(self) -> bool:
        return self._current is not None

    @property
    def typing_user(self) -> Optional[TypingSignal]:
        return self._current

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    def signal(self, signal: TypingSignal) -> None:
        if self._closed:
            return
        was_typing = self.is_typing
        self._current = signal
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self._timeout, self._expire)
        if not was_typing:
            self._emit()

    def reset(self) -> None:
        self._cancel_timer()
        if self._current is not None:
            self._current = None
            self._emit()

    def close(self) -> None:
        self._closed = True
        self._cancel_timer()
        self._current = None

    def _expire(self) -> None:
        self._timer = None
        self._current = None
        self._emit()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _emit(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.is_typing)
        except Exception:
            logger.exception("Typing listener failed")
