"""Morse code alphabet, timing model and flash sequencing.

Signal chain (send side):
- text -> Morse string (`encode_text`)
- Morse string -> timed on/off flash events (`build_flash_sequence`)
- flash events -> torch, driven by `utils.morse_sender.MorseSender`

The receive side lives in `utils.morse_receiver` and decodes back through
`decode_morse`, so both directions share the table below.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from config import HISTORY_LIMIT

# International Morse Code table
MORSE_TABLE: dict[str, str] = {
    '.-': 'A', '-...': 'B', '-.-.': 'C', '-..': 'D', '.': 'E',
    '..-.': 'F', '--.': 'G', '....': 'H', '..': 'I', '.---': 'J',
    '-.-': 'K', '.-..': 'L', '--': 'M', '-.': 'N', '---': 'O',
    '.--.': 'P', '--.-': 'Q', '.-.': 'R', '...': 'S', '-': 'T',
    '..-': 'U', '...-': 'V', '.--': 'W', '-..-': 'X', '-.--': 'Y',
    '--..': 'Z',
    '-----': '0', '.----': '1', '..---': '2', '...--': '3',
    '....-': '4', '.....': '5', '-....': '6', '--...': '7',
    '---..': '8', '----.': '9',
    '.-.-.-': '.', '--..--': ',', '..--..': '?', '.----.': "'",
    '-.-.--': '!', '-..-.': '/', '-.--.': '(', '-.--.-': ')',
    '.-...': '&', '---...': ':', '-.-.-.': ';', '-...-': '=',
    '.-.-.': '+', '-....-': '-', '..--.-': '_', '.-..-.': '"',
    '...-..-': '$', '.--.-.': '@',
}

# Reverse lookup: character -> morse notation
CHAR_TO_MORSE: dict[str, str] = {v: k for k, v in MORSE_TABLE.items()}

# Sync pattern sent ahead of a message in dedicated-source sessions.
# Short-short-long-long-short is not the code of any single character.
PREAMBLE_PATTERN = '..--.'

WORD_SEPARATOR = '/'

MIN_WPM = 3.0
MAX_WPM = 40.0


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def encode_text(text: str) -> str:
    """Convert text to a Morse string.

    Letters are separated by a single space and words by ``/``. Characters
    without a Morse code are dropped, and runs of whitespace count as one
    word break, so decoding gives back the text with single spaces.
    """
    words: list[str] = []
    for word in str(text or '').upper().split():
        codes = [CHAR_TO_MORSE[char] for char in word if char in CHAR_TO_MORSE]
        if codes:
            words.append(' '.join(codes))
    return f' {WORD_SEPARATOR} '.join(words)


def decode_morse(morse: str) -> str:
    """Decode a Morse string (``' '`` between letters, ``' / '`` between words)."""
    words = str(morse or '').strip().split(' / ')
    decoded_words: list[str] = []
    for word in words:
        chars = [MORSE_TABLE[code] for code in word.split(' ') if code in MORSE_TABLE]
        decoded_words.append(''.join(chars))
    return ' '.join(decoded_words)


@dataclass(frozen=True)
class TimingModel:
    """Canonical element durations (seconds) for a given speed."""
    dot_duration: float
    dash_duration: float
    element_gap: float
    letter_gap: float
    word_gap: float

    @classmethod
    def from_wpm(cls, wpm: float = 15.0) -> TimingModel:
        """Build timings from words-per-minute (``unit = 1.2 / wpm``).

        Out-of-range speeds are clamped to the 3-40 WPM band.
        """
        try:
            wpm = float(wpm)
        except (TypeError, ValueError):
            wpm = 15.0
        unit = 1.2 / _clamp(wpm, MIN_WPM, MAX_WPM)
        return cls(
            dot_duration=unit,
            dash_duration=unit * 3,
            element_gap=unit,
            letter_gap=unit * 3,
            word_gap=unit * 7,
        )

    @property
    def wpm(self) -> float:
        return 1.2 / self.dot_duration


@dataclass(frozen=True)
class FlashEvent:
    """One step of a flash sequence: light on or off for *duration* seconds."""
    is_on: bool
    duration: float

    @classmethod
    def on(cls, duration: float) -> FlashEvent:
        return cls(True, duration)

    @classmethod
    def pause(cls, duration: float) -> FlashEvent:
        return cls(False, duration)

    def to_dict(self) -> dict[str, Any]:
        return {
            'on': self.is_on,
            'duration_ms': round(self.duration * 1000.0, 1),
        }


def build_flash_sequence(morse: str, timing: TimingModel | None = None) -> list[FlashEvent]:
    """Convert a Morse string to an ordered list of flash events."""
    timing = timing or TimingModel.from_wpm()
    events: list[FlashEvent] = []

    letters = [tok for tok in str(morse or '').split(' ') if tok]
    for letter_index, letter in enumerate(letters):
        if letter == WORD_SEPARATOR:
            events.append(FlashEvent.pause(timing.word_gap))
            continue

        elements = [el for el in letter if el in '.-']
        for element_index, element in enumerate(elements):
            if element == '.':
                events.append(FlashEvent.on(timing.dot_duration))
            else:
                events.append(FlashEvent.on(timing.dash_duration))

            if element_index < len(elements) - 1:
                events.append(FlashEvent.pause(timing.element_gap))

        # Word separators bring their own (longer) pause.
        if letter_index < len(letters) - 1 and letters[letter_index + 1] != WORD_SEPARATOR:
            events.append(FlashEvent.pause(timing.letter_gap))

    return events


def morse_element_indices(morse: str) -> list[int]:
    """Character index of every dot/dash in *morse*."""
    return [idx for idx, char in enumerate(morse) if char in '.-']


@dataclass
class FlashPlan:
    """Everything needed to flash a message: sent string, events, highlight map."""
    text: str
    message_morse: str
    morse: str
    timing: TimingModel
    events: list[FlashEvent] = field(default_factory=list)
    element_index: list[int | None] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return sum(ev.duration for ev in self.events)

    def to_dict(self) -> dict[str, Any]:
        return {
            'text': self.text,
            'message_morse': self.message_morse,
            'morse': self.morse,
            'wpm': round(self.timing.wpm, 1),
            'unit_ms': round(self.timing.dot_duration * 1000.0, 1),
            'duration_ms': round(self.duration * 1000.0, 1),
            'events': [ev.to_dict() for ev in self.events],
            'element_index': list(self.element_index),
        }


def build_flash_plan(text: str, wpm: float = 15.0, preamble: bool = False) -> FlashPlan:
    """Encode *text* and lay it out as flash events at *wpm*.

    With *preamble* the sync pattern is sent first, one letter gap ahead of
    the message.
    """
    message_morse = encode_text(text)
    morse = message_morse
    if preamble and message_morse:
        morse = f'{PREAMBLE_PATTERN} {message_morse}'

    timing = TimingModel.from_wpm(wpm)
    events = build_flash_sequence(morse, timing)

    indices = morse_element_indices(morse)
    element_index: list[int | None] = []
    on_count = 0
    for event in events:
        if event.is_on:
            element_index.append(indices[on_count] if on_count < len(indices) else None)
            on_count += 1
        else:
            element_index.append(None)

    return FlashPlan(
        text=str(text or ''),
        message_morse=message_morse,
        morse=morse,
        timing=timing,
        events=events,
        element_index=element_index,
    )


# ---------------------------------------------------------------------------
# Message history
# ---------------------------------------------------------------------------

class MessageDirection(Enum):
    SENT = 'sent'
    RECEIVED = 'received'


@dataclass(frozen=True)
class MorseMessage:
    """A completed sent or received message."""
    text: str
    morse: str
    direction: MessageDirection
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'text': self.text,
            'morse': self.morse,
            'direction': self.direction.value,
            'timestamp': self.timestamp.isoformat(),
        }


class MessageHistory:
    """Bounded, most-recent-first list of messages.

    Shared between the send loop and the decode thread, hence the lock.
    """

    def __init__(self, max_items: int = HISTORY_LIMIT):
        self._max_items = max(1, int(max_items))
        self._items: list[MorseMessage] = []
        self._lock = threading.Lock()

    def add(self, message: MorseMessage) -> None:
        with self._lock:
            self._items.insert(0, message)
            del self._items[self._max_items:]

    def get_messages(self, direction: MessageDirection | None = None, limit: int | None = None) -> list[MorseMessage]:
        with self._lock:
            items = [m for m in self._items if direction is None or m.direction == direction]
        if limit is not None:
            items = items[:max(0, int(limit))]
        return items

    def clear(self, direction: MessageDirection | None = None) -> int:
        with self._lock:
            before = len(self._items)
            if direction is None:
                self._items.clear()
            else:
                self._items = [m for m in self._items if m.direction != direction]
            return before - len(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
