"""
CHIP-8 Framebuffer Display
===========================
Renderers for the 64x32 monochrome framebuffer.  All three share the same
small host-side interface, called from the system's host loop between
interpreter cycles:

    disp.open()
    while disp.poll(keypad):    # False once the user asks to quit
        ...one cycle...
        disp.render(fb)
    disp.close()

  WindowDisplay    : pygame window, integer-upscaled RGB frame
  TerminalDisplay  : true-colour ANSI, two pixel rows per text row (U+2580)
  HeadlessDisplay  : no output, keeps frame snapshots for tests

Usage (CLI):
    python cli.py rom.ch8                # window
    python cli.py rom.ch8 --terminal     # terminal
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Optional, TextIO

from devices import SCREEN_W, SCREEN_H, NUM_PIXELS

if TYPE_CHECKING:
    from devices import FrameBuffer, Keypad

WINDOW_TITLE = "CHIP-8"

# ANSI control sequences
SHOW_CURSOR      = "\x1b[?25h"
HIDE_CURSOR      = "\x1b[?25l"
CLEAR_TERMINAL   = "\x1b[2J"
RESET_FORMATTING = "\x1b[0m"
CURSOR_TOP_LEFT  = "\x1b[;H"
UPPER_HALF_BLOCK = "▀"

# Host key -> CHIP-8 key code.  Hex digits map straight across.
HEX_KEYS = "0123456789abcdef"


def split_rgb(color: int) -> tuple[int, int, int]:
    """0xRRGGBB -> (r, g, b)."""
    return (color >> 16) & 0xFF, (color >> 8) & 0xFF, color & 0xFF


def rgb_frame(pixels: bytes | bytearray, fg: int = 0xFFFFFF,
              bg: int = 0x000000, scale: int = 1):
    """Expand 0/1 pixels into an upscaled RGB array.

    Shape is (64*scale, 32*scale, 3), x-major, ready for
    ``pygame.surfarray.blit_array``.
    """
    import numpy as np

    if len(pixels) != NUM_PIXELS:
        raise ValueError(f"expected {NUM_PIXELS} pixels, got {len(pixels)}")
    lut = np.array([split_rgb(bg), split_rgb(fg)], dtype=np.uint8)
    grid = np.frombuffer(bytes(pixels), dtype=np.uint8).reshape(SCREEN_H, SCREEN_W)
    rgb = lut[grid & 1].transpose(1, 0, 2)           # (64, 32, 3)
    if scale > 1:
        rgb = rgb.repeat(scale, axis=0).repeat(scale, axis=1)
    return np.ascontiguousarray(rgb)


def half_block_frame(pixels: bytes | bytearray, fg: int = 0xFFFFFF,
                     bg: int = 0x000000) -> str:
    """Render a frame as 16 rows of 64 upper-half-block cells.

    Each cell's foreground paints the top source pixel and its background
    the bottom one.
    """
    colors = (split_rgb(bg), split_rgb(fg))
    cells = {}
    out = []
    for y in range(0, SCREEN_H, 2):
        top_row = y * SCREEN_W
        bot_row = (y + 1) * SCREEN_W
        for x in range(SCREEN_W):
            key = (pixels[top_row + x] & 1, pixels[bot_row + x] & 1)
            cell = cells.get(key)
            if cell is None:
                (tr, tg, tb), (br, bgc, bb) = colors[key[0]], colors[key[1]]
                cell = (f"\x1b[38;2;{tr};{tg};{tb}m"
                        f"\x1b[48;2;{br};{bgc};{bb}m"
                        f"{UPPER_HALF_BLOCK}{RESET_FORMATTING}")
                cells[key] = cell
            out.append(cell)
        out.append("\n")
    return "".join(out)


# ── pygame window ─────────────────────────────────────────────────────


class WindowDisplay:
    """pygame window showing the framebuffer, also the keyboard source."""

    def __init__(self, scale: int = 10, fg: int = 0xFFFFFF,
                 bg: int = 0x000000, title: str = WINDOW_TITLE):
        self.scale = max(1, scale)
        self.fg = fg
        self.bg = bg
        self.title = title
        self._pygame = None
        self._screen = None
        self._keymap: dict[int, int] = {}

    def open(self):
        import pygame

        self._pygame = pygame
        pygame.init()
        pygame.display.set_caption(self.title)
        self._screen = pygame.display.set_mode(
            (SCREEN_W * self.scale, SCREEN_H * self.scale))
        self._keymap = {
            getattr(pygame, f"K_{ch}"): code for code, ch in enumerate(HEX_KEYS)
        }
        self._screen.fill(split_rgb(self.bg))
        pygame.display.flip()

    def poll(self, keypad: "Keypad") -> bool:
        pygame = self._pygame
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                return False
            if event.type == pygame.KEYDOWN:
                if event.key == pygame.K_ESCAPE:
                    return False
                code = self._keymap.get(event.key)
                if code is not None:
                    keypad.press(code)
            elif event.type == pygame.KEYUP:
                code = self._keymap.get(event.key)
                if code is not None:
                    keypad.release(code)
        return True

    def render(self, fb: "FrameBuffer"):
        pygame = self._pygame
        frame = rgb_frame(fb.pixels, self.fg, self.bg, self.scale)
        pygame.surfarray.blit_array(self._screen, frame)
        pygame.display.flip()

    def close(self):
        if self._pygame is not None:
            self._pygame.quit()
            self._pygame = None


# ── Terminal ──────────────────────────────────────────────────────────


class TerminalDisplay:
    """True-colour terminal renderer with raw-TTY hex-key input.

    Terminals report key presses but never releases, so every key read is
    held for *hold_frames* polls and then released.
    """

    def __init__(self, fg: int = 0xFFFFFF, bg: int = 0x000000,
                 stream: Optional[TextIO] = None, stdin: Optional[TextIO] = None,
                 hold_frames: int = 6):
        self.fg = fg
        self.bg = bg
        self.stream = stream if stream is not None else sys.stdout
        self.stdin = stdin if stdin is not None else sys.stdin
        self.hold_frames = hold_frames
        self._hold: dict[int, int] = {}
        self._tty_fd: Optional[int] = None
        self._old_settings = None

    def open(self):
        self.stream.write(CLEAR_TERMINAL + HIDE_CURSOR)
        self.stream.flush()
        try:
            fd = self.stdin.fileno()
        except (AttributeError, ValueError, OSError):
            return
        if not os.isatty(fd):
            return
        import termios
        import tty
        self._old_settings = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        self._tty_fd = fd

    def feed(self, data: bytes) -> bool:
        """Apply raw input bytes.  Returns False on Escape / Ctrl+C."""
        for b in data:
            if b in (0x1B, 0x03):
                return False
            ch = chr(b).lower()
            if ch in HEX_KEYS:
                self._hold[HEX_KEYS.index(ch)] = self.hold_frames
        return True

    def poll(self, keypad: "Keypad") -> bool:
        if self._tty_fd is not None:
            import select
            while select.select([self._tty_fd], [], [], 0)[0]:
                data = os.read(self._tty_fd, 32)
                if not data or not self.feed(data):
                    return False
        for code in list(self._hold):
            if self._hold[code] > 0:
                keypad.press(code)
                self._hold[code] -= 1
            else:
                keypad.release(code)
                del self._hold[code]
        return True

    def render(self, fb: "FrameBuffer"):
        self.stream.write(CURSOR_TOP_LEFT)
        self.stream.write(half_block_frame(fb.pixels, self.fg, self.bg))
        self.stream.flush()

    def close(self):
        if self._tty_fd is not None:
            import termios
            termios.tcsetattr(self._tty_fd, termios.TCSADRAIN, self._old_settings)
            self._tty_fd = None
        self.stream.write(RESET_FORMATTING + SHOW_CURSOR)
        self.stream.flush()


# ── Headless ──────────────────────────────────────────────────────────


class HeadlessDisplay:
    """No-op display for testing: records framebuffer snapshots."""

    def __init__(self, max_snapshots: Optional[int] = None):
        self.snapshots: list[bytes] = []
        self.max_snapshots = max_snapshots
        self.quit_requested = False

    def open(self):
        pass

    def poll(self, keypad: "Keypad") -> bool:
        return not self.quit_requested

    def render(self, fb: "FrameBuffer"):
        self.snapshots.append(bytes(fb.pixels))
        if self.max_snapshots is not None and len(self.snapshots) > self.max_snapshots:
            del self.snapshots[0]

    def snapshot(self) -> Optional[bytes]:
        """Most recent frame, or None if nothing was rendered."""
        return self.snapshots[-1] if self.snapshots else None

    def close(self):
        pass
