"""
CHIP-8 Interpreter Core
========================
A cycle-step interpreter for the original 35-instruction CHIP-8 set.

Every instruction is fetched as a big-endian word from memory and decoded
through a handler table keyed on (family, sub-key).  Handlers mutate the
machine state and return a small tagged PC effect; ``step`` applies it in
one place, then ticks the delay and sound timers.

The core never performs I/O.  The host owns the machine, writes the keypad
between cycles, reads the framebuffer after them, and receives the
unknown-opcode and beep notifications through callbacks.
"""

from __future__ import annotations
from typing import Callable, NamedTuple, Optional

from devices import FrameBuffer, Keypad, TimerPair, SystemRandomSource

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE       = 4096
PROGRAM_START  = 0x200
MAX_ROM_SIZE   = MEM_SIZE - PROGRAM_START   # 3584 bytes
STACK_DEPTH    = 16
NUM_REGS       = 16
FONT_BASE      = 0x000
FONT_GLYPH_LEN = 5

# Hex digit sprites 0-F, 4 pixels wide, 5 rows each
FONT_SET = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# Run states
RUNNING      = 0
AWAITING_KEY = 1

# PC effect kinds
PC_NEXT = 0   # +2
PC_SKIP = 1   # +4
PC_JUMP = 2   # PC = target
PC_HOLD = 3   # no progress

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u8(v: int) -> int:
    """Mask to unsigned 8 bits."""
    return v & 0xFF

def u16(v: int) -> int:
    return v & 0xFFFF


class PCEffect(NamedTuple):
    """How a handler wants the program counter to move."""
    kind: int
    target: int = 0


NEXT = PCEffect(PC_NEXT)
SKIP = PCEffect(PC_SKIP)
HOLD = PCEffect(PC_HOLD)

def jump(addr: int) -> PCEffect:
    return PCEffect(PC_JUMP, u16(addr))

def skip_if(cond: bool) -> PCEffect:
    return SKIP if cond else NEXT

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for fatal interpreter conditions."""
    pass

class BusFaultError(Chip8Error):
    def __init__(self, addr: int, message: str = ""):
        self.addr = addr
        super().__init__(message or f"Bus fault @ {addr:#06x}")

class StackFaultError(Chip8Error):
    pass

class RomTooLargeError(Chip8Error):
    def __init__(self, size: int):
        self.size = size
        super().__init__(f"ROM is {size} bytes, limit is {MAX_ROM_SIZE}")

class ConfigError(Chip8Error):
    pass

# ---------------------------------------------------------------------------
#  Interpreter
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 machine state plus the decoder/executor."""

    def __init__(self, rng=None, timers_during_key_wait: bool = True):
        self.mem = bytearray(MEM_SIZE)
        self.mem[FONT_BASE:FONT_BASE + len(FONT_SET)] = FONT_SET

        # Register file
        self.v: list[int] = [0] * NUM_REGS
        self.i: int = 0
        self.pc: int = PROGRAM_START
        self.stack: list[int] = [0] * STACK_DEPTH
        self.sp: int = 0

        # Peripherals
        self.fb = FrameBuffer()
        self.keypad = Keypad()
        self.timers = TimerPair()
        self.rng = rng if rng is not None else SystemRandomSource()

        # Run state
        self.state: int = RUNNING
        self.wait_reg: int = 0
        self.timers_during_key_wait = timers_during_key_wait
        self.opcode: int = 0
        self.cycle_count: int = 0
        self.unknown_count: int = 0

        # Callbacks
        self.on_unknown_opcode: Optional[Callable[[int, int], None]] = None
        self.on_beep: Optional[Callable[[], None]] = None
        self.timers.on_beep = self._beep

        self._handlers = self._build_table()

    # -- Memory access --

    def _check_addr(self, addr: int, size: int = 1):
        if addr < 0 or addr + size > MEM_SIZE:
            raise BusFaultError(addr)

    def mem_read8(self, addr: int) -> int:
        self._check_addr(addr)
        return self.mem[addr]

    def mem_write8(self, addr: int, val: int):
        self._check_addr(addr)
        self.mem[addr] = u8(val)

    def mem_read16(self, addr: int) -> int:
        """Big-endian word read."""
        self._check_addr(addr, 2)
        return (self.mem[addr] << 8) | self.mem[addr + 1]

    def load_bytes(self, addr: int, data: bytes | bytearray):
        """Write raw bytes into memory at the given address."""
        self._check_addr(addr, len(data))
        self.mem[addr:addr + len(data)] = data

    def load_program(self, data: bytes | bytearray):
        """Load a program image at 0x200.  Nothing is written if it is too big."""
        if len(data) > MAX_ROM_SIZE:
            raise RomTooLargeError(len(data))
        self.load_bytes(PROGRAM_START, data)

    # -- Stack helpers --

    def push(self, addr: int):
        if self.sp >= STACK_DEPTH:
            raise StackFaultError(f"Stack overflow at PC={self.pc:#06x}")
        self.stack[self.sp] = addr
        self.sp += 1

    def pop(self) -> int:
        if self.sp <= 0:
            raise StackFaultError(f"Stack underflow at PC={self.pc:#06x}")
        self.sp -= 1
        return self.stack[self.sp]

    # -- Event plumbing --

    def _beep(self):
        if self.on_beep:
            self.on_beep()

    def _unknown(self, op: int) -> PCEffect:
        self.unknown_count += 1
        if self.on_unknown_opcode:
            self.on_unknown_opcode(op, self.pc)
        return NEXT

    # =====================================================================
    #  STEP: the core fetch/decode/execute cycle
    # =====================================================================

    def step(self) -> int:
        """Run one cycle.  Returns 1 if an instruction retired, 0 if blocked."""
        self.cycle_count += 1

        if self.state == AWAITING_KEY:
            key = self.keypad.lowest_held()
            if key is None:
                if self.timers_during_key_wait:
                    self.timers.tick()
                return 0
            self.v[self.wait_reg] = key
            self.state = RUNNING
            self.pc = u16(self.pc + 2)
            self.timers.tick()
            return 1

        op = self.mem_read16(self.pc)
        self.opcode = op
        effect = self.execute(op)

        if effect.kind == PC_NEXT:
            self.pc = u16(self.pc + 2)
        elif effect.kind == PC_SKIP:
            self.pc = u16(self.pc + 4)
        elif effect.kind == PC_JUMP:
            self.pc = effect.target
        elif effect.kind == PC_HOLD:
            if self.timers_during_key_wait:
                self.timers.tick()
            return 0

        self.timers.tick()
        return 1

    def execute(self, op: int) -> PCEffect:
        """Decode *op* and run its handler without touching PC or timers."""
        family = op >> 12
        if family == 0x0:
            sub = op & 0xFF if (op & 0x0F00) == 0 else None
        elif family == 0x8:
            sub = op & 0xF
        elif family in (0xE, 0xF):
            sub = op & 0xFF
        else:
            sub = None

        handler = self._handlers.get((family, sub))
        if handler is None:
            if family == 0x0 and sub is None:
                # 0nnn SYS addr: machine-code call on the original hardware
                return NEXT
            return self._unknown(op)
        return handler(op)

    def _build_table(self) -> dict:
        return {
            (0x0, 0xE0): self._op_cls,
            (0x0, 0xEE): self._op_ret,
            (0x1, None): self._op_jp,
            (0x2, None): self._op_call,
            (0x3, None): self._op_se_imm,
            (0x4, None): self._op_sne_imm,
            (0x5, None): self._op_se_reg,
            (0x6, None): self._op_ld_imm,
            (0x7, None): self._op_add_imm,
            (0x8, 0x0):  self._op_ld_reg,
            (0x8, 0x1):  self._op_or,
            (0x8, 0x2):  self._op_and,
            (0x8, 0x3):  self._op_xor,
            (0x8, 0x4):  self._op_add_reg,
            (0x8, 0x5):  self._op_sub,
            (0x8, 0x6):  self._op_shr,
            (0x8, 0x7):  self._op_subn,
            (0x8, 0xE):  self._op_shl,
            (0x9, None): self._op_sne_reg,
            (0xA, None): self._op_ld_i,
            (0xB, None): self._op_jp_v0,
            (0xC, None): self._op_rnd,
            (0xD, None): self._op_drw,
            (0xE, 0x9E): self._op_skp,
            (0xE, 0xA1): self._op_sknp,
            (0xF, 0x07): self._op_ld_vx_dt,
            (0xF, 0x0A): self._op_ld_vx_key,
            (0xF, 0x15): self._op_ld_dt_vx,
            (0xF, 0x18): self._op_ld_st_vx,
            (0xF, 0x1E): self._op_add_i,
            (0xF, 0x29): self._op_ld_font,
            (0xF, 0x33): self._op_bcd,
            (0xF, 0x55): self._op_store,
            (0xF, 0x65): self._op_load,
        }

    # =====================================================================
    #  Handlers
    # =====================================================================

    # -- 0x0: CLS / RET --
    def _op_cls(self, op: int) -> PCEffect:
        self.fb.clear()
        return NEXT

    def _op_ret(self, op: int) -> PCEffect:
        # Stack holds the call-site address; resume after it
        return jump(self.pop() + 2)

    # -- 0x1 / 0x2 / 0xB: jumps --
    def _op_jp(self, op: int) -> PCEffect:
        return jump(op & 0x0FFF)

    def _op_call(self, op: int) -> PCEffect:
        self.push(self.pc)
        return jump(op & 0x0FFF)

    def _op_jp_v0(self, op: int) -> PCEffect:
        return jump((op & 0x0FFF) + self.v[0])

    # -- 0x3-0x5, 0x9: skips --
    def _op_se_imm(self, op: int) -> PCEffect:
        return skip_if(self.v[(op >> 8) & 0xF] == op & 0xFF)

    def _op_sne_imm(self, op: int) -> PCEffect:
        return skip_if(self.v[(op >> 8) & 0xF] != op & 0xFF)

    def _op_se_reg(self, op: int) -> PCEffect:
        return skip_if(self.v[(op >> 8) & 0xF] == self.v[(op >> 4) & 0xF])

    def _op_sne_reg(self, op: int) -> PCEffect:
        return skip_if(self.v[(op >> 8) & 0xF] != self.v[(op >> 4) & 0xF])

    # -- 0x6 / 0x7: immediates --
    def _op_ld_imm(self, op: int) -> PCEffect:
        self.v[(op >> 8) & 0xF] = op & 0xFF
        return NEXT

    def _op_add_imm(self, op: int) -> PCEffect:
        x = (op >> 8) & 0xF
        self.v[x] = u8(self.v[x] + (op & 0xFF))
        return NEXT

    # -- 0x8: ALU --
    # Arithmetic ops write Vx before VF, so with x = F the register ends up
    # holding the carry/borrow/shifted-out bit rather than the result.
    def _op_ld_reg(self, op: int) -> PCEffect:
        self.v[(op >> 8) & 0xF] = self.v[(op >> 4) & 0xF]
        return NEXT

    def _op_or(self, op: int) -> PCEffect:
        self.v[(op >> 8) & 0xF] |= self.v[(op >> 4) & 0xF]
        return NEXT

    def _op_and(self, op: int) -> PCEffect:
        self.v[(op >> 8) & 0xF] &= self.v[(op >> 4) & 0xF]
        return NEXT

    def _op_xor(self, op: int) -> PCEffect:
        self.v[(op >> 8) & 0xF] ^= self.v[(op >> 4) & 0xF]
        return NEXT

    def _op_add_reg(self, op: int) -> PCEffect:
        x, y = (op >> 8) & 0xF, (op >> 4) & 0xF
        total = self.v[x] + self.v[y]
        self.v[x] = u8(total)
        self.v[0xF] = 1 if total > 0xFF else 0
        return NEXT

    def _op_sub(self, op: int) -> PCEffect:
        x, y = (op >> 8) & 0xF, (op >> 4) & 0xF
        a, b = self.v[x], self.v[y]
        self.v[x] = u8(a - b)
        self.v[0xF] = 1 if a > b else 0
        return NEXT

    def _op_shr(self, op: int) -> PCEffect:
        # Vy is ignored (original COSMAC quirk)
        x = (op >> 8) & 0xF
        a = self.v[x]
        self.v[x] = a >> 1
        self.v[0xF] = a & 1
        return NEXT

    def _op_subn(self, op: int) -> PCEffect:
        x, y = (op >> 8) & 0xF, (op >> 4) & 0xF
        a, b = self.v[x], self.v[y]
        self.v[x] = u8(b - a)
        self.v[0xF] = 1 if b > a else 0
        return NEXT

    def _op_shl(self, op: int) -> PCEffect:
        x = (op >> 8) & 0xF
        a = self.v[x]
        self.v[x] = u8(a << 1)
        self.v[0xF] = (a >> 7) & 1
        return NEXT

    # -- 0xA / 0xC / 0xD --
    def _op_ld_i(self, op: int) -> PCEffect:
        self.i = op & 0x0FFF
        return NEXT

    def _op_rnd(self, op: int) -> PCEffect:
        self.v[(op >> 8) & 0xF] = u8(self.rng.next_byte()) & (op & 0xFF)
        return NEXT

    def _op_drw(self, op: int) -> PCEffect:
        x, y, n = (op >> 8) & 0xF, (op >> 4) & 0xF, op & 0xF
        rows = [self.mem_read8(self.i + r) for r in range(n)]
        self.v[0xF] = 1 if self.fb.draw_sprite(self.v[x], self.v[y], rows) else 0
        return NEXT

    # -- 0xE: keys --
    def _op_skp(self, op: int) -> PCEffect:
        return skip_if(self.keypad.is_held(self.v[(op >> 8) & 0xF] & 0xF))

    def _op_sknp(self, op: int) -> PCEffect:
        return skip_if(not self.keypad.is_held(self.v[(op >> 8) & 0xF] & 0xF))

    # -- 0xF: timers, index, memory --
    def _op_ld_vx_dt(self, op: int) -> PCEffect:
        self.v[(op >> 8) & 0xF] = self.timers.delay
        return NEXT

    def _op_ld_vx_key(self, op: int) -> PCEffect:
        x = (op >> 8) & 0xF
        key = self.keypad.lowest_held()
        if key is None:
            self.state = AWAITING_KEY
            self.wait_reg = x
            return HOLD
        self.v[x] = key
        return NEXT

    def _op_ld_dt_vx(self, op: int) -> PCEffect:
        self.timers.delay = self.v[(op >> 8) & 0xF]
        return NEXT

    def _op_ld_st_vx(self, op: int) -> PCEffect:
        self.timers.sound = self.v[(op >> 8) & 0xF]
        return NEXT

    def _op_add_i(self, op: int) -> PCEffect:
        self.i = u16(self.i + self.v[(op >> 8) & 0xF])
        return NEXT

    def _op_ld_font(self, op: int) -> PCEffect:
        digit = self.v[(op >> 8) & 0xF]
        if digit < 16:
            self.i = FONT_BASE + digit * FONT_GLYPH_LEN
        return NEXT

    def _op_bcd(self, op: int) -> PCEffect:
        val = self.v[(op >> 8) & 0xF]
        self._check_addr(self.i, 3)
        self.mem[self.i]     = val // 100
        self.mem[self.i + 1] = (val // 10) % 10
        self.mem[self.i + 2] = val % 10
        return NEXT

    def _op_store(self, op: int) -> PCEffect:
        x = (op >> 8) & 0xF
        self._check_addr(self.i, x + 1)
        for r in range(x + 1):
            self.mem[self.i + r] = self.v[r]
        return NEXT

    def _op_load(self, op: int) -> PCEffect:
        x = (op >> 8) & 0xF
        self._check_addr(self.i, x + 1)
        for r in range(x + 1):
            self.v[r] = self.mem[self.i + r]
        return NEXT

    # -- Run loop --

    def run(self, max_steps: int = 1_000_000) -> int:
        """Run up to max_steps cycles.  Returns instructions retired."""
        total = 0
        for _ in range(max_steps):
            total += self.step()
        return total

    # -- Reset helper --

    def reset(self):
        """Power-on state.  The loaded program is kept; the keypad is not touched."""
        self.v = [0] * NUM_REGS
        self.i = 0
        self.pc = PROGRAM_START
        self.stack = [0] * STACK_DEPTH
        self.sp = 0
        self.fb.reset()
        self.timers.reset()
        self.state = RUNNING
        self.wait_reg = 0
        self.opcode = 0

    # -- Debug / introspection --

    @property
    def awaiting_key(self) -> bool:
        return self.state == AWAITING_KEY

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X}={self.v[r]:#04x}" for r in range(row, row + 4)))
        lines.append(f"  I={self.i:#06x}  PC={self.pc:#06x}  SP={self.sp}  "
                     f"DT={self.timers.delay}  ST={self.timers.sound}")
        state = (f"AWAITING_KEY(V{self.wait_reg:X})"
                 if self.state == AWAITING_KEY else "RUNNING")
        lines.append(f"  STATE={state}  STACK=["
                     + ", ".join(f"{a:#05x}" for a in self.stack[:self.sp]) + "]")
        return "\n".join(lines)
