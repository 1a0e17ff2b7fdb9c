"""
CHIP-8 Peripheral / Device Layer
=================================
The passive hardware the interpreter drives:

  FrameBuffer  : 64 x 32 monochrome display, one byte (0/1) per pixel
  Keypad       : 16 "key is held" flags written by the host
  TimerPair    : delay and sound countdown bytes, one tick per cycle
  *Source      : byte sources consulted by the RND instruction

None of these know about the instruction set; chip8.py owns the decode
and calls into them.
"""

from __future__ import annotations
import os as _os
import random
from typing import Callable, Iterable, Optional

# ---------------------------------------------------------------------------
#  Geometry
# ---------------------------------------------------------------------------

SCREEN_W   = 64
SCREEN_H   = 32
NUM_PIXELS = SCREEN_W * SCREEN_H
NUM_KEYS   = 16
SPRITE_W   = 8


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract peripheral."""

    def __init__(self, name: str):
        self.name = name

    def reset(self):
        """Return to power-on state."""
        pass

    def tick(self):
        """Advance by one interpreter cycle. Override for timers."""
        pass


# ---------------------------------------------------------------------------
#  FrameBuffer
# ---------------------------------------------------------------------------
# Row-major: pixel (x, y) lives at index y * 64 + x.  Only CLS and DRW write.

class FrameBuffer(Device):
    """64x32 one-bit display."""

    def __init__(self):
        super().__init__("FrameBuffer")
        self.width = SCREEN_W
        self.height = SCREEN_H
        self.pixels = bytearray(NUM_PIXELS)
        self.dirty = True

    def reset(self):
        self.clear()

    def clear(self):
        self.pixels[:] = bytes(NUM_PIXELS)
        self.dirty = True

    def get(self, x: int, y: int) -> int:
        return self.pixels[(y % SCREEN_H) * SCREEN_W + (x % SCREEN_W)]

    def draw_sprite(self, x: int, y: int, rows: Iterable[int]) -> bool:
        """XOR an 8-pixel-wide sprite onto the screen at (x, y).

        Every plotted coordinate wraps around both edges.  Returns True if
        any set sprite bit landed on a pixel that was already lit.
        """
        collision = False
        for dy, bits in enumerate(rows):
            py = (y + dy) % SCREEN_H
            for dx in range(SPRITE_W):
                if not bits & (0x80 >> dx):
                    continue
                idx = py * SCREEN_W + (x + dx) % SCREEN_W
                if self.pixels[idx]:
                    collision = True
                self.pixels[idx] ^= 1
        self.dirty = True
        return collision

    def rows(self) -> list[bytes]:
        """Return the screen as 32 rows of 64 bytes."""
        return [bytes(self.pixels[r * SCREEN_W:(r + 1) * SCREEN_W])
                for r in range(SCREEN_H)]

    def lit_count(self) -> int:
        return sum(self.pixels)

    def to_text(self, on: str = "#", off: str = ".") -> str:
        """ASCII art dump, one line per row."""
        return "\n".join(
            "".join(on if p else off for p in row) for row in self.rows()
        )


# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------
# COSMAC VIP hex keypad, key codes 0x0-0xF.

class Keypad(Device):
    """16 independent held/released flags."""

    def __init__(self):
        super().__init__("Keypad")
        self.held = [False] * NUM_KEYS

    def reset(self):
        self.held = [False] * NUM_KEYS

    def _check_key(self, key: int):
        if not 0 <= key < NUM_KEYS:
            raise ValueError(f"Key code out of range: {key!r}")

    def press(self, key: int):
        self._check_key(key)
        self.held[key] = True

    def release(self, key: int):
        self._check_key(key)
        self.held[key] = False

    def set_keys(self, keys: Iterable[int]):
        """Replace the held set wholesale."""
        held = [False] * NUM_KEYS
        for k in keys:
            self._check_key(k)
            held[k] = True
        self.held = held

    def is_held(self, key: int) -> bool:
        return self.held[key]

    def lowest_held(self) -> Optional[int]:
        for k, down in enumerate(self.held):
            if down:
                return k
        return None

    @property
    def any_held(self) -> bool:
        return any(self.held)


# ---------------------------------------------------------------------------
#  TimerPair
# ---------------------------------------------------------------------------
# Decays one step per interpreter cycle, not per wall-clock 1/60 s.  The
# host runs one cycle per frame, so the two line up at the default rate.

class TimerPair(Device):
    """Delay and sound countdown bytes."""

    def __init__(self):
        super().__init__("Timers")
        self._delay: int = 0
        self._sound: int = 0
        self.beep_count: int = 0

        # Callbacks
        self.on_beep: Optional[Callable[[], None]] = None

    @property
    def delay(self) -> int:
        return self._delay

    @delay.setter
    def delay(self, value: int):
        self._delay = value & 0xFF

    @property
    def sound(self) -> int:
        return self._sound

    @sound.setter
    def sound(self, value: int):
        self._sound = value & 0xFF

    def reset(self):
        self._delay = 0
        self._sound = 0

    def tick(self):
        if self._delay > 0:
            self._delay -= 1
        if self._sound > 0:
            self._sound -= 1
            if self._sound == 0:
                self.beep_count += 1
                if self.on_beep:
                    self.on_beep()

    @property
    def sounding(self) -> bool:
        return self._sound > 0


# ---------------------------------------------------------------------------
#  Random byte sources
# ---------------------------------------------------------------------------
# RND only ever calls next_byte(); tests swap in a seeded or replayed source.

class SystemRandomSource(Device):
    """OS entropy, drawn from a 64-byte pool."""

    def __init__(self):
        super().__init__("RNG")
        self._pool = bytearray(_os.urandom(64))
        self._pool_pos = 0

    def next_byte(self) -> int:
        """Draw one byte from pool, refill if exhausted."""
        if self._pool_pos >= len(self._pool):
            self._pool = bytearray(_os.urandom(64))
            self._pool_pos = 0
        b = self._pool[self._pool_pos]
        self._pool_pos += 1
        return b


class SeededRandomSource(Device):
    """Deterministic pseudo-random bytes for reproducible runs."""

    def __init__(self, seed: int = 42):
        super().__init__("RNG")
        self.seed = seed
        self.rng = random.Random(seed)

    def reset(self):
        self.rng = random.Random(self.seed)

    def next_byte(self) -> int:
        return self.rng.randint(0, 255)


class ReplaySource(Device):
    """Cycles through a fixed byte sequence."""

    def __init__(self, data: bytes | Iterable[int]):
        super().__init__("RNG")
        self.data = bytes(data)
        if not self.data:
            raise ValueError("ReplaySource needs at least one byte")
        self.pos = 0

    def reset(self):
        self.pos = 0

    def next_byte(self) -> int:
        b = self.data[self.pos % len(self.data)]
        self.pos += 1
        return b
