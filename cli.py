#!/usr/bin/env python3
"""
CHIP-8 Interpreter / CLI
=========================
Command-line front end for the CHIP-8 interpreter.

Provides:
  - ROM loading with size checking
  - Window (pygame), terminal (true-colour ANSI) or headless rendering
  - Clock rate, scale and colour configuration
  - Disassembly listing
  - Interactive debug monitor (step / run / breakpoints / inspection)

Usage:
  python cli.py ROM [--scale N] [--hz N] [--terminal | --headless]
                    [--max-cycles N] [--seed N] [--fg RRGGBB] [--bg RRGGBB]
                    [--freeze-timers] [--disasm] [--monitor]
"""

from __future__ import annotations
import argparse
import cmd
import shlex
import sys
from typing import Optional

from chip8 import Chip8Error, PROGRAM_START, MEM_SIZE
from system import (
    Chip8Config, Chip8System, FrameLimiter, build_system, make_display,
    DEFAULT_SCALE, DEFAULT_RATE, HEADLESS_MAX_CYCLES,
)

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

ALU_NAMES = {
    0x0: "LD", 0x1: "OR", 0x2: "AND", 0x3: "XOR", 0x4: "ADD",
    0x5: "SUB", 0x6: "SHR", 0x7: "SUBN", 0xE: "SHL",
}

F_FORMATS = {
    0x07: "LD V{x:X}, DT",
    0x0A: "LD V{x:X}, K",
    0x15: "LD DT, V{x:X}",
    0x18: "LD ST, V{x:X}",
    0x1E: "ADD I, V{x:X}",
    0x29: "LD F, V{x:X}",
    0x33: "LD B, V{x:X}",
    0x55: "LD [I], V{x:X}",
    0x65: "LD V{x:X}, [I]",
}


def disasm_word(op: int) -> str:
    """Return the mnemonic for one 16-bit instruction word."""
    f = op >> 12
    x = (op >> 8) & 0xF
    y = (op >> 4) & 0xF
    n = op & 0xF
    kk = op & 0xFF
    nnn = op & 0x0FFF

    if op == 0x00E0:
        return "CLS"
    if op == 0x00EE:
        return "RET"
    if f == 0x0:
        if x == 0:
            return f"DW {op:#06x}"
        return f"SYS {nnn:#05x}"
    if f == 0x1:
        return f"JP {nnn:#05x}"
    if f == 0x2:
        return f"CALL {nnn:#05x}"
    if f == 0x3:
        return f"SE V{x:X}, {kk:#04x}"
    if f == 0x4:
        return f"SNE V{x:X}, {kk:#04x}"
    if f == 0x5:
        return f"SE V{x:X}, V{y:X}"
    if f == 0x6:
        return f"LD V{x:X}, {kk:#04x}"
    if f == 0x7:
        return f"ADD V{x:X}, {kk:#04x}"
    if f == 0x8:
        name = ALU_NAMES.get(n)
        if name is None:
            return f"DW {op:#06x}"
        if n in (0x6, 0xE):
            return f"{name} V{x:X}"
        return f"{name} V{x:X}, V{y:X}"
    if f == 0x9:
        return f"SNE V{x:X}, V{y:X}"
    if f == 0xA:
        return f"LD I, {nnn:#05x}"
    if f == 0xB:
        return f"JP V0, {nnn:#05x}"
    if f == 0xC:
        return f"RND V{x:X}, {kk:#04x}"
    if f == 0xD:
        return f"DRW V{x:X}, V{y:X}, {n}"
    if f == 0xE:
        if kk == 0x9E:
            return f"SKP V{x:X}"
        if kk == 0xA1:
            return f"SKNP V{x:X}"
        return f"DW {op:#06x}"
    fmt = F_FORMATS.get(kk)
    if fmt is None:
        return f"DW {op:#06x}"
    return fmt.format(x=x)


def disasm_one(mem: bytearray | bytes, addr: int) -> tuple[str, int]:
    """Disassemble one instruction at `addr`. Returns (text, byte_count)."""
    def rb(a):
        return mem[a] if 0 <= a < len(mem) else 0

    return disasm_word((rb(addr) << 8) | rb(addr + 1)), 2


def disasm_listing(rom: bytes, base: int = PROGRAM_START) -> list[str]:
    """Full listing of a ROM image as it would sit in memory."""
    lines = []
    for off in range(0, len(rom), 2):
        text, _ = disasm_one(rom, off)
        raw = rom[off:off + 2].hex()
        lines.append(f"  {base + off:#05x}: {raw:<4s}  {text}")
    return lines


# ---------------------------------------------------------------------------
#  Debug monitor
# ---------------------------------------------------------------------------

class Chip8Monitor(cmd.Cmd):
    """Interactive monitor for a CHIP-8 system."""

    intro = (
        "\n"
        "CHIP-8 Monitor.  Type 'help' for commands, 'quit' to exit.\n"
    )
    prompt = "C8> "

    def __init__(self, system: Chip8System):
        super().__init__()
        self.sys = system
        self.breakpoints: set[int] = set()

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex with optional 0x prefix, 'pc' or 'i')."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.i
        return int(s, 16) if not s.startswith("0x") else int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def _report_fault(self, e: Chip8Error):
        print(f"Fault: {e}")

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except ValueError as e:
            # Bad address or count; keep the monitor alive
            print(f"Error: {e}")
            return False

    def default(self, line):
        """Handle unknown commands gracefully."""
        print(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass

    # ================================================================
    #  Commands
    # ================================================================

    # -- Execution --

    def do_step(self, arg):
        """Step N cycles: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        cpu = self.sys.cpu
        for _ in range(count):
            addr_before = cpu.pc
            try:
                retired = self.sys.step()
            except Chip8Error as e:
                self._report_fault(e)
                break
            text, _ = disasm_one(cpu.mem, addr_before)
            note = "" if retired else "  (waiting for key)"
            print(f"  {addr_before:#05x}: {text}{note}")

    def do_run(self, arg):
        """Run until breakpoint, key wait or limit: run [max_cycles]"""
        max_cycles = self._parse_int(arg) if arg.strip() else 1_000_000
        cpu = self.sys.cpu
        for n in range(max_cycles):
            if n and cpu.pc in self.breakpoints:
                print(f"Breakpoint hit at {cpu.pc:#05x}")
                return
            if cpu.awaiting_key and not self.sys.keypad.any_held:
                print(f"Waiting for key after {n} cycles "
                      f"(use 'key <hex>' then 'run').")
                return
            try:
                self.sys.step()
            except Chip8Error as e:
                self._report_fault(e)
                return
        print(f"Stopped after {max_cycles} cycles.")

    do_c = do_run

    def do_reset(self, arg):
        """Reset the machine and reload the ROM."""
        self.sys.boot()
        print("System reset.")

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    print(f"  {a:#05x}")
            else:
                print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        print(f"Breakpoint set at {addr:#05x}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        print(f"Breakpoint at {addr:#05x} removed.")

    # -- Input --

    def do_key(self, arg):
        """Hold or release a key: key <0-F> [up]"""
        parts = shlex.split(arg)
        if not parts:
            held = [f"{k:X}" for k in range(16) if self.sys.keypad.is_held(k)]
            print(f"  Held: {' '.join(held) or '(none)'}")
            return
        try:
            code = int(parts[0], 16)
            if len(parts) > 1 and parts[1].lower() == "up":
                self.sys.keypad.release(code)
            else:
                self.sys.keypad.press(code)
        except ValueError as e:
            print(f"Error: {e}")

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers."""
        print(self.sys.cpu.dump_regs())
        print(f"  Cycles: {self.sys.cpu.cycle_count}")

    def do_status(self, arg):
        """Show full system status."""
        print(self.sys.dump_state())

    def do_screen(self, arg):
        """Print the framebuffer as ASCII art."""
        print(self.sys.fb.to_text())

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [count]
        Count defaults to 64 bytes."""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64
        end = min(addr + count, MEM_SIZE)
        mem = self.sys.cpu.mem
        for row_start in range(addr, end, 16):
            row = mem[row_start:min(row_start + 16, end)]
            hex_str = " ".join(f"{b:02x}" for b in row)
            print(f"  {row_start:#05x}: {hex_str}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        cpu = self.sys.cpu
        addr = self._parse_addr(parts[0]) if parts else cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16

        for _ in range(count):
            if addr >= MEM_SIZE:
                break
            text, size = disasm_one(cpu.mem, addr)
            raw = " ".join(f"{cpu.mem[a]:02x}" for a in range(addr, min(addr + size, MEM_SIZE)))
            marker = ">>>" if addr == cpu.pc else "   "
            print(f"  {marker} {addr:#05x}: {raw:<6s} {text}")
            addr += size

    def do_quit(self, arg):
        """Exit the monitor."""
        return True

    def do_EOF(self, arg):
        print()
        return True


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def parse_color(s: str) -> int:
    """'FFFFFF', '#ffffff' or '0xffffff' -> int."""
    s = s.strip().lower()
    if s.startswith("#"):
        s = s[1:]
    elif s.startswith("0x"):
        s = s[2:]
    try:
        val = int(s, 16)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a hex colour: {s!r}")
    if len(s) > 6:
        raise argparse.ArgumentTypeError(f"colour must be RRGGBB: {s!r}")
    return val


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CHIP-8 Interpreter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py pong.ch8\n"
               "  python cli.py pong.ch8 --scale 16 --hz 120\n"
               "  python cli.py pong.ch8 --terminal\n"
               "  python cli.py test.ch8 --headless --max-cycles 500\n"
               "  python cli.py pong.ch8 --disasm\n"
               "\n"
               "Keys: 0-9 and A-F map to the hex keypad; Esc quits.\n"
    )
    parser.add_argument("rom", help="Program image to load at 0x200")
    parser.add_argument("--scale", type=int, default=DEFAULT_SCALE, metavar="N",
                        help=f"Pixel scale factor for the window (default: {DEFAULT_SCALE})")
    parser.add_argument("--hz", "--cycles-per-second", dest="hz", type=int,
                        default=DEFAULT_RATE, metavar="N",
                        help=f"Cycles (and frames) per second (default: {DEFAULT_RATE})")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--terminal", action="store_true",
                      help="Render in the terminal with true-colour half blocks")
    mode.add_argument("--headless", action="store_true",
                      help="No rendering; print the final screen and state "
                           f"(stops after {HEADLESS_MAX_CYCLES} cycles unless --max-cycles is given)")
    parser.add_argument("--max-cycles", type=int, default=None, metavar="N",
                        help="Stop after N cycles")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed the RND source for a reproducible run")
    parser.add_argument("--fg", type=parse_color, default=0xFFFFFF, metavar="RRGGBB",
                        help="Lit pixel colour (default: FFFFFF)")
    parser.add_argument("--bg", type=parse_color, default=0x000000, metavar="RRGGBB",
                        help="Unlit pixel colour (default: 000000)")
    parser.add_argument("--freeze-timers", action="store_true",
                        help="Stop the timers while waiting for a key (Fx0A)")
    parser.add_argument("--disasm", action="store_true",
                        help="Print a disassembly listing of the ROM and exit")
    parser.add_argument("--monitor", action="store_true",
                        help="Start the interactive debug monitor")
    return parser


def config_from_args(args: argparse.Namespace) -> Chip8Config:
    if args.terminal:
        renderer = "terminal"
    elif args.headless:
        renderer = "headless"
    else:
        renderer = "window"
    return Chip8Config(
        rom_path=args.rom,
        scale=args.scale,
        cycles_per_second=args.hz,
        renderer=renderer,
        max_cycles=args.max_cycles,
        seed=args.seed,
        fg=args.fg,
        bg=args.bg,
        timers_during_key_wait=not args.freeze_timers,
    )


def _fail(msg: str):
    print(f"[chip8] error: {msg}", file=sys.stderr)
    sys.exit(1)


def main(argv: Optional[list[str]] = None):
    args = build_parser().parse_args(argv)

    # ---- Disassemble-only mode ----------------------------------------
    if args.disasm:
        try:
            with open(args.rom, "rb") as f:
                rom = f.read()
        except OSError as e:
            _fail(str(e))
        for line in disasm_listing(rom):
            print(line)
        return

    config = config_from_args(args)
    try:
        sys_emu = build_system(config)
    except (OSError, Chip8Error) as e:
        _fail(str(e))
    print(f"[chip8] Loaded {sys_emu.rom_size} bytes from '{config.rom_path}'",
          file=sys.stderr)

    # ---- Monitor mode -------------------------------------------------
    if args.monitor:
        mon = Chip8Monitor(sys_emu)
        try:
            mon.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return

    # ---- Host loop ----------------------------------------------------
    try:
        display = make_display(config)
        display.open()
    except ImportError as e:
        print(f"[display] pygame not available: {e}", file=sys.stderr)
        print("[display] Install with: pip install pygame  (or use --terminal)",
              file=sys.stderr)
        sys.exit(1)

    limiter = None if config.renderer == "headless" else FrameLimiter(config.cycles_per_second)
    fault = None
    try:
        sys_emu.run_host(display, limiter, max_cycles=config.max_cycles)
    except Chip8Error as e:
        fault = e
    except KeyboardInterrupt:
        pass
    finally:
        display.close()
    if fault is not None:
        _fail(f"{fault} (PC={sys_emu.cpu.pc:#05x}, opcode={sys_emu.cpu.opcode:#06x})")

    if config.renderer == "headless":
        print(sys_emu.fb.to_text())
        print(sys_emu.dump_state())


if __name__ == "__main__":
    main()
