"""Flash a message on the torch.

`MorseSender` walks a `FlashPlan` on a worker thread. Every wait goes
through ``threading.Event.wait`` so `stop()` interrupts mid-element, and
the torch is always left off when the run ends.
"""

from __future__ import annotations

import contextlib
import threading
from typing import Any, Callable

from config import DEFAULT_SEND_WPM
from utils.logging import get_logger
from utils.morse import (
    FlashPlan,
    MessageDirection,
    MessageHistory,
    MorseMessage,
    build_flash_plan,
)

logger = get_logger('flashmorse.sender')


class MorseSender:
    """Drive a torch from flash plans, one message at a time."""

    def __init__(
        self,
        set_torch: Callable[[bool], None] | None = None,
        history: MessageHistory | None = None,
        on_event: Callable[[dict[str, Any]], None] | None = None,
    ):
        self._set_torch = set_torch
        self._on_event = on_event
        self.history = history if history is not None else MessageHistory()

        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event: threading.Event | None = None

        self._plan: FlashPlan | None = None
        self._loop = False
        self._current_index = -1
        self._loop_count = 0
        self._torch_on = False

    # ------------------------------------------------------------------

    @property
    def is_sending(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(
        self,
        text: str,
        wpm: float = DEFAULT_SEND_WPM,
        loop: bool = False,
        preamble: bool = False,
    ) -> FlashPlan:
        """Begin flashing *text*.

        Raises:
            ValueError: nothing in *text* can be encoded.
            RuntimeError: a message is already being sent.
        """
        plan = build_flash_plan(text, wpm=wpm, preamble=preamble)
        if not plan.events:
            raise ValueError('Text contains no encodable characters')

        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise RuntimeError('Already sending')

            stop_event = threading.Event()
            self._plan = plan
            self._loop = bool(loop)
            self._current_index = -1
            self._loop_count = 0
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run,
                args=(plan, self._loop, stop_event),
                daemon=True,
                name='morse-sender',
            )
            logger.info('Sending %r at %.1f WPM (loop=%s, preamble=%s)', plan.text, plan.timing.wpm, loop, preamble)
            self._emit({'type': 'send_status', 'status': 'started', **plan.to_dict()})
            self._thread.start()

        return plan

    def stop(self, timeout: float = 2.0) -> bool:
        """Cancel the current run; returns False when nothing was sending."""
        with self._lock:
            thread = self._thread
            stop_event = self._stop_event
        if thread is None or stop_event is None or not thread.is_alive():
            return False

        stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._torch(False)
        return True

    def join(self, timeout: float | None = None) -> None:
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)

    def status(self) -> dict[str, Any]:
        with self._lock:
            plan = self._plan
            sending = self._thread is not None and self._thread.is_alive()
            index = self._current_index
            payload: dict[str, Any] = {
                'sending': sending,
                'loop': self._loop,
                'loop_count': self._loop_count,
                'torch_on': self._torch_on,
                'current_index': index,
                'element_index': None,
                'progress': 0.0,
            }
        if plan is not None:
            payload['text'] = plan.text
            payload['morse'] = plan.morse
            payload['wpm'] = round(plan.timing.wpm, 1)
            if 0 <= index < len(plan.events):
                payload['element_index'] = plan.element_index[index]
                payload['progress'] = round((index + 1) / len(plan.events), 3)
        return payload

    # ------------------------------------------------------------------

    def _emit(self, event: dict[str, Any]) -> None:
        if self._on_event is not None:
            self._on_event(event)

    def _torch(self, on: bool) -> None:
        with self._lock:
            changed = self._torch_on != on
            self._torch_on = on
        if not changed:
            return
        if self._set_torch is not None:
            self._set_torch(on)
        self._emit({'type': 'torch', 'on': on})

    def _run(self, plan: FlashPlan, loop: bool, stop_event: threading.Event) -> None:
        recorded = False
        outcome = 'completed'
        try:
            while not stop_event.is_set():
                for idx, event in enumerate(plan.events):
                    if stop_event.is_set():
                        break
                    with self._lock:
                        self._current_index = idx
                    self._torch(event.is_on)
                    self._emit({
                        'type': 'send_progress',
                        'current_index': idx,
                        'element_index': plan.element_index[idx],
                        'loop_count': self._loop_count,
                    })
                    if stop_event.wait(event.duration):
                        break
                else:
                    self._torch(False)
                    with self._lock:
                        self._loop_count += 1
                    if not recorded:
                        recorded = True
                        self.history.add(MorseMessage(
                            text=plan.text,
                            morse=plan.message_morse,
                            direction=MessageDirection.SENT,
                        ))
                    if not loop:
                        break
                    # Repetitions are separated like words.
                    if stop_event.wait(plan.timing.word_gap):
                        outcome = 'stopped'
                        break
                    continue
                outcome = 'stopped'
                break
            else:
                outcome = 'stopped'
        except Exception as e:
            outcome = 'error'
            logger.exception('Send loop failed: %s', e)
        finally:
            with contextlib.suppress(Exception):
                self._torch(False)
            with self._lock:
                self._current_index = -1
            logger.info('Sending %s after %d pass(es)', outcome, self._loop_count)
            self._emit({'type': 'send_status', 'status': outcome, 'loop_count': self._loop_count})
