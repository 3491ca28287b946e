import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .events import EventBus, EventKind


@dataclass
class QuestionTimer:
    session_id: str
    question_index: int
    total: int
    remaining: int
    generation: int
    running: bool = True


class TimerCoordinator:
    """Per-session question countdown.

    - At most one timer per session; starting a new one replaces the old
    - Each timer carries a generation token; a worker whose token no longer
      matches exits on its next tick, which is how pause/stop/restart cancel it
    - Publishes ``timer_updated`` every tick and calls the expiry handler at zero
    - When disabled (tests) nothing is spawned: ticks are driven through
      :meth:`tick` and deferred callbacks run immediately
    """

    def __init__(self, bus: EventBus, spawn: Optional[Callable] = None, sleep: Optional[Callable] = None,
                 tick_seconds: float = 1.0, enabled: bool = True, logger=None):
        self._bus = bus
        self._spawn = spawn or _spawn_thread
        self._sleep = sleep or time.sleep
        self._tick_seconds = tick_seconds
        self._enabled = enabled
        self._logger = logger or logging.getLogger(__name__)
        self._timers: Dict[str, QuestionTimer] = {}
        self._lock = threading.Lock()
        self._generations = itertools.count(1)
        self._on_expired: Optional[Callable[[str, int], None]] = None

    def set_expiry_handler(self, handler: Callable[[str, int], None]) -> None:
        self._on_expired = handler

    def start(self, session_id: str, question_index: int, total: int) -> QuestionTimer:
        with self._lock:
            timer = QuestionTimer(
                session_id=session_id,
                question_index=question_index,
                total=total,
                remaining=total,
                generation=next(self._generations),
            )
            self._timers[session_id] = timer
        self._log(f"[timer-start] session={session_id} question={question_index} total={total}s")
        self._publish(session_id, question_index, total, total)
        self._spawn_worker(session_id, timer.generation)
        return timer

    def pause(self, session_id: str) -> Optional[int]:
        with self._lock:
            timer = self._timers.get(session_id)
            if timer is None:
                return None
            timer.running = False
            timer.generation = next(self._generations)
            remaining = timer.remaining
        self._log(f"[timer-pause] session={session_id} remaining={remaining}s")
        return remaining

    def resume(self, session_id: str) -> Optional[int]:
        with self._lock:
            timer = self._timers.get(session_id)
            if timer is None or timer.remaining <= 0:
                return None
            timer.running = True
            timer.generation = next(self._generations)
            generation = timer.generation
            remaining, total, index = timer.remaining, timer.total, timer.question_index
        self._log(f"[timer-resume] session={session_id} remaining={remaining}s")
        self._publish(session_id, index, remaining, total)
        self._spawn_worker(session_id, generation)
        return remaining

    def stop(self, session_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(session_id, None)
        if timer is not None:
            self._log(f"[timer-stop] session={session_id} remaining={timer.remaining}s")

    def snapshot(self, session_id: str) -> Optional[Tuple[int, int]]:
        """``(remaining, total)`` for the session's timer, if it has one."""
        with self._lock:
            timer = self._timers.get(session_id)
            if timer is None:
                return None
            return timer.remaining, timer.total

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            timer = self._timers.get(session_id)
            return bool(timer and timer.running)

    def tick(self, session_id: str, generation: Optional[int] = None) -> bool:
        """Advance the session's countdown by one tick. Returns True while it keeps running."""
        with self._lock:
            timer = self._timers.get(session_id)
            if timer is None or not timer.running:
                return False
            if generation is not None and timer.generation != generation:
                return False
            timer.remaining = max(0, timer.remaining - 1)
            remaining, total, index = timer.remaining, timer.total, timer.question_index
            expired = remaining == 0
            if expired:
                timer.running = False
        self._publish(session_id, index, remaining, total)
        if not expired:
            return True
        self._log(f"[timer-expire] session={session_id} question={index}")
        if self._on_expired is not None:
            self._on_expired(session_id, index)
        return False

    def defer(self, delay: float, fn: Callable, *args) -> None:
        """Run ``fn(*args)`` after ``delay`` seconds in the background."""
        if not self._enabled:
            fn(*args)
            return

        def _worker():
            self._sleep(delay)
            try:
                fn(*args)
            except Exception:
                self._logger.exception(f"[deferred-error] fn={getattr(fn, '__name__', fn)} args={args}")

        self._spawn(_worker)

    def _spawn_worker(self, session_id: str, generation: int) -> None:
        if self._enabled:
            self._spawn(self._run, session_id, generation)

    def _run(self, session_id: str, generation: int) -> None:
        try:
            while True:
                self._sleep(self._tick_seconds)
                if not self.tick(session_id, generation):
                    return
        except Exception:
            self._logger.exception(f"[timer-error] session={session_id}")

    def _publish(self, session_id: str, question_index: int, remaining: int, total: int) -> None:
        self._bus.publish(EventKind.TIMER_UPDATED, {
            'sessionId': session_id,
            'questionIndex': question_index,
            'remaining': remaining,
            'total': total,
        })

    def _log(self, message: str) -> None:
        self._logger.debug(message)


def _spawn_thread(target, *args):
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread
