"""
CHIP-8 System Emulator
=======================
Wires together:
  - the Chip8 interpreter core (chip8.py) and its devices (devices.py)
  - program-image loading with the 3584-byte size check
  - run configuration (ROM path, scale, clock rate, renderer)
  - the host loop: poll input -> one cycle -> render -> rate limit

The system owns exactly one machine.  Renderers and the CLI only touch it
between cycles, from the same thread.
"""

from __future__ import annotations
import sys
import time
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from chip8 import Chip8, ConfigError, PROGRAM_START
from devices import SeededRandomSource, SystemRandomSource

if TYPE_CHECKING:
    from display import HeadlessDisplay, TerminalDisplay, WindowDisplay

RENDERERS = ("window", "terminal", "headless")

DEFAULT_SCALE = 10
DEFAULT_RATE  = 60          # one cycle per 60 Hz frame
HEADLESS_MAX_CYCLES = 10_000   # cap for headless runs with no explicit limit


# ---------------------------------------------------------------------------
#  Configuration
# ---------------------------------------------------------------------------

@dataclass
class Chip8Config:
    """Run options, normally filled in from the command line."""
    rom_path: str
    scale: int = DEFAULT_SCALE
    cycles_per_second: int = DEFAULT_RATE
    renderer: str = "window"
    max_cycles: Optional[int] = None
    seed: Optional[int] = None
    fg: int = 0xFFFFFF
    bg: int = 0x000000
    timers_during_key_wait: bool = True

    def validate(self) -> "Chip8Config":
        if self.scale < 1:
            raise ConfigError(f"scale must be >= 1, got {self.scale}")
        if self.cycles_per_second < 1:
            raise ConfigError(
                f"cycles_per_second must be >= 1, got {self.cycles_per_second}")
        if self.renderer not in RENDERERS:
            raise ConfigError(f"unknown renderer {self.renderer!r} "
                              f"(choose from {', '.join(RENDERERS)})")
        for name in ("fg", "bg"):
            val = getattr(self, name)
            if not 0 <= val <= 0xFFFFFF:
                raise ConfigError(f"{name} colour must be 24-bit RGB, got {val:#x}")
        if self.max_cycles is not None and self.max_cycles < 0:
            raise ConfigError(f"max_cycles must be >= 0, got {self.max_cycles}")
        if self.renderer == "headless" and self.max_cycles is None:
            # Nothing can ask a headless run to quit
            self.max_cycles = HEADLESS_MAX_CYCLES
        return self


# ---------------------------------------------------------------------------
#  Rate limiting
# ---------------------------------------------------------------------------

class FrameLimiter:
    """Caps the host loop at *rate* iterations per second."""

    def __init__(self, rate: int = DEFAULT_RATE, clock=time.perf_counter,
                 sleep=time.sleep):
        self.period = 1.0 / rate
        self._clock = clock
        self._sleep = sleep
        self._next = None

    def wait(self):
        now = self._clock()
        if self._next is None:
            self._next = now + self.period
            return
        delay = self._next - now
        if delay > 0:
            self._sleep(delay)
            self._next += self.period
        else:
            # Running behind: resync instead of bursting to catch up
            self._next = now + self.period


# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class Chip8System:
    """One CHIP-8 machine plus its host-side plumbing."""

    def __init__(self, seed: Optional[int] = None, rng=None,
                 timers_during_key_wait: bool = True,
                 report: bool = True):
        if rng is None:
            rng = SeededRandomSource(seed) if seed is not None else SystemRandomSource()
        self.cpu = Chip8(rng=rng, timers_during_key_wait=timers_during_key_wait)
        self.report = report
        self.rom_path: Optional[str] = None
        self.rom_size: int = 0
        self._rom: bytes = b""
        self.unknown_opcodes: list[tuple[int, int]] = []

        self.cpu.on_unknown_opcode = self._on_unknown_opcode
        self.cpu.on_beep = self._on_beep

    # Device shortcuts
    @property
    def fb(self):
        return self.cpu.fb

    @property
    def keypad(self):
        return self.cpu.keypad

    @property
    def timers(self):
        return self.cpu.timers

    @property
    def beep_count(self) -> int:
        return self.cpu.timers.beep_count

    # -----------------------------------------------------------------
    #  Diagnostics
    # -----------------------------------------------------------------

    def _on_unknown_opcode(self, opcode: int, addr: int):
        self.unknown_opcodes.append((opcode, addr))
        if self.report:
            print(f"[chip8] unknown opcode {opcode:#06x} at {addr:#05x}",
                  file=sys.stderr)

    def _on_beep(self):
        if self.report:
            print("[chip8] beep", file=sys.stderr)

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_rom(self, data: bytes | bytearray):
        """Load a raw program image at 0x200."""
        self.cpu.load_program(data)
        self._rom = bytes(data)
        self.rom_size = len(data)

    def load_rom_file(self, path: str):
        """Read a ROM from disk.  OSError propagates unchanged."""
        with open(path, "rb") as f:
            data = f.read()
        self.load_rom(data)
        self.rom_path = path

    @property
    def rom(self) -> bytes:
        return self._rom

    # -----------------------------------------------------------------
    #  Boot
    # -----------------------------------------------------------------

    def boot(self):
        """Reset the machine and reload the current program image."""
        self.cpu.reset()
        self.cpu.mem[PROGRAM_START:] = bytes(len(self.cpu.mem) - PROGRAM_START)
        if self._rom:
            self.cpu.load_program(self._rom)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def step(self) -> int:
        """One frame tick: exactly one interpreter cycle."""
        return self.cpu.step()

    def run(self, max_steps: int = 1_000_000) -> int:
        return self.cpu.run(max_steps)

    def run_host(self, display, limiter: Optional[FrameLimiter] = None,
                 max_cycles: Optional[int] = None) -> int:
        """Drive the machine from a display's input and render loop.

        Stops when the display asks to quit or after *max_cycles* cycles.
        Fatal interpreter errors propagate to the caller.
        Returns the number of cycles run.
        """
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            if not display.poll(self.keypad):
                break
            self.cpu.step()
            cycles += 1
            if self.fb.dirty:
                display.render(self.fb)
                self.fb.dirty = False
            if limiter is not None:
                limiter.wait()
        return cycles

    # -----------------------------------------------------------------
    #  Introspection
    # -----------------------------------------------------------------

    def dump_state(self) -> str:
        """Full CPU + device state dump."""
        lines = ["=== Registers ===", self.cpu.dump_regs(),
                 f"  Cycles: {self.cpu.cycle_count}", ""]
        lines.append("=== Devices ===")
        held = [f"{k:X}" for k in range(16) if self.keypad.is_held(k)]
        lines.append(f"  Keypad: held=[{' '.join(held)}]")
        lines.append(f"  Timers: delay={self.timers.delay} "
                     f"sound={self.timers.sound} beeps={self.beep_count}")
        lines.append(f"  Display: lit={self.fb.lit_count()}/"
                     f"{self.fb.width * self.fb.height}")
        lines.append(f"  ROM: {self.rom_path or 'N/A'} ({self.rom_size} bytes)")
        lines.append(f"  Unknown opcodes: {len(self.unknown_opcodes)}")
        return "\n".join(lines)


def make_display(config: Chip8Config) -> "WindowDisplay | TerminalDisplay | HeadlessDisplay":
    """Build the renderer named by *config*."""
    from display import HeadlessDisplay, TerminalDisplay, WindowDisplay
    if config.renderer == "window":
        return WindowDisplay(scale=config.scale, fg=config.fg, bg=config.bg)
    if config.renderer == "terminal":
        return TerminalDisplay(fg=config.fg, bg=config.bg)
    return HeadlessDisplay()


def build_system(config: Chip8Config, report: bool = True) -> Chip8System:
    """Validate *config*, create a system, and load its ROM."""
    config.validate()
    sys_emu = Chip8System(seed=config.seed,
                          timers_during_key_wait=config.timers_during_key_wait,
                          report=report)
    sys_emu.load_rom_file(config.rom_path)
    return sys_emu
