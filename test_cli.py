"""
Tests for the command-line front end: disassembler, argument parsing,
the headless/disassembly entry points, and the debug monitor.
"""
import contextlib
import io
import os
import tempfile
import unittest

import cli
from chip8 import MAX_ROM_SIZE
from cli import (
    Chip8Monitor, build_parser, config_from_args, disasm_listing,
    disasm_one, disasm_word, main, parse_color,
)
from devices import ReplaySource
from display import HeadlessDisplay
from system import Chip8System, HEADLESS_MAX_CYCLES


def words(*ops: int) -> bytes:
    return b"".join(op.to_bytes(2, "big") for op in ops)


def write_rom(data: bytes) -> str:
    with tempfile.NamedTemporaryFile(suffix=".ch8", delete=False) as f:
        f.write(data)
        return f.name


def run_main(argv):
    """Run cli.main, returning (exit_code, stdout, stderr)."""
    out, err = io.StringIO(), io.StringIO()
    code = 0
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        try:
            main(argv)
        except SystemExit as e:
            code = e.code
    return code, out.getvalue(), err.getvalue()


# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

class TestDisasm(unittest.TestCase):
    CASES = [
        (0x00E0, "CLS"),
        (0x00EE, "RET"),
        (0x0123, "SYS 0x123"),
        (0x1228, "JP 0x228"),
        (0x2300, "CALL 0x300"),
        (0x3A05, "SE VA, 0x05"),
        (0x4B10, "SNE VB, 0x10"),
        (0x5120, "SE V1, V2"),
        (0x6005, "LD V0, 0x05"),
        (0x7003, "ADD V0, 0x03"),
        (0x8120, "LD V1, V2"),
        (0x8124, "ADD V1, V2"),
        (0x8127, "SUBN V1, V2"),
        (0x8126, "SHR V1"),
        (0x812E, "SHL V1"),
        (0x9340, "SNE V3, V4"),
        (0xA0FF, "LD I, 0x0ff"),
        (0xB210, "JP V0, 0x210"),
        (0xC30F, "RND V3, 0x0f"),
        (0xD125, "DRW V1, V2, 5"),
        (0xE29E, "SKP V2"),
        (0xE2A1, "SKNP V2"),
        (0xF30A, "LD V3, K"),
        (0xF429, "LD F, V4"),
        (0xF555, "LD [I], V5"),
        (0xF665, "LD V6, [I]"),
    ]

    def test_mnemonics(self):
        for op, text in self.CASES:
            self.assertEqual(disasm_word(op), text, f"{op:#06x}")

    def test_unknown_words(self):
        self.assertEqual(disasm_word(0x812F), "DW 0x812f")
        self.assertEqual(disasm_word(0xE1FF), "DW 0xe1ff")
        self.assertEqual(disasm_word(0xF0FF), "DW 0xf0ff")
        self.assertEqual(disasm_word(0x00FF), "DW 0x00ff")

    def test_disasm_one_past_end(self):
        text, size = disasm_one(b"\x12", 0)
        self.assertEqual((text, size), ("JP 0x200", 2))

    def test_listing(self):
        lines = disasm_listing(words(0x6005, 0x7003))
        self.assertEqual(lines, [
            "  0x200: 6005  LD V0, 0x05",
            "  0x202: 7003  ADD V0, 0x03",
        ])


# ---------------------------------------------------------------------------
#  Argument parsing
# ---------------------------------------------------------------------------

class TestArgs(unittest.TestCase):
    def test_parse_color(self):
        self.assertEqual(parse_color("FF8800"), 0xFF8800)
        self.assertEqual(parse_color("#00ff00"), 0x00FF00)
        self.assertEqual(parse_color("0x0000ff"), 0x0000FF)

    def test_parse_color_rejects(self):
        import argparse
        with self.assertRaises(argparse.ArgumentTypeError):
            parse_color("zz")
        with self.assertRaises(argparse.ArgumentTypeError):
            parse_color("1234567")

    def test_defaults(self):
        cfg = config_from_args(build_parser().parse_args(["pong.ch8"]))
        self.assertEqual(cfg.rom_path, "pong.ch8")
        self.assertEqual(cfg.renderer, "window")
        self.assertEqual(cfg.scale, 10)
        self.assertEqual(cfg.cycles_per_second, 60)
        self.assertTrue(cfg.timers_during_key_wait)

    def test_options(self):
        args = build_parser().parse_args([
            "pong.ch8", "--terminal", "--scale", "4", "--cycles-per-second", "120",
            "--freeze-timers", "--fg", "00ff00", "--seed", "9",
        ])
        cfg = config_from_args(args)
        self.assertEqual(cfg.renderer, "terminal")
        self.assertEqual(cfg.scale, 4)
        self.assertEqual(cfg.cycles_per_second, 120)
        self.assertFalse(cfg.timers_during_key_wait)
        self.assertEqual(cfg.fg, 0x00FF00)
        self.assertEqual(cfg.seed, 9)

    def test_renderers_exclusive(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["x.ch8", "--terminal", "--headless"])


# ---------------------------------------------------------------------------
#  Entry point
# ---------------------------------------------------------------------------

class TestMain(unittest.TestCase):
    def setUp(self):
        self.paths = []

    def tearDown(self):
        for p in self.paths:
            os.unlink(p)

    def rom(self, data: bytes) -> str:
        path = write_rom(data)
        self.paths.append(path)
        return path

    def test_disasm_mode(self):
        code, out, _ = run_main([self.rom(words(0x00E0, 0x1200)), "--disasm"])
        self.assertEqual(code, 0)
        self.assertIn("0x200: 00e0  CLS", out)
        self.assertIn("0x202: 1200  JP 0x200", out)

    def test_headless_run(self):
        path = self.rom(words(0x6005, 0x7003, 0xA000, 0xD015, 0x1208))
        code, out, err = run_main([path, "--headless", "--max-cycles", "10",
                                   "--seed", "1"])
        self.assertEqual(code, 0)
        self.assertIn("V0=0x08", out)
        self.assertIn("####", out)
        self.assertIn("Cycles: 10", out)
        self.assertIn("[chip8] Loaded 10 bytes", err)

    def test_missing_rom(self):
        code, _, err = run_main(["/nonexistent/rom.ch8", "--headless"])
        self.assertEqual(code, 1)
        self.assertIn("[chip8] error:", err)

    def test_missing_rom_disasm(self):
        code, _, err = run_main(["/nonexistent/rom.ch8", "--disasm"])
        self.assertEqual(code, 1)

    def test_oversize_rom(self):
        code, _, err = run_main([self.rom(b"\x00" * (MAX_ROM_SIZE + 2)),
                                 "--headless"])
        self.assertEqual(code, 1)
        self.assertIn(str(MAX_ROM_SIZE), err)

    def test_bad_config(self):
        code, _, err = run_main([self.rom(words(0x1200)), "--scale", "0"])
        self.assertEqual(code, 1)
        self.assertIn("scale", err)

    def test_headless_without_cap_stops(self):
        code, out, _ = run_main([self.rom(words(0x1200)), "--headless"])
        self.assertEqual(code, 0)
        self.assertIn(f"Cycles: {HEADLESS_MAX_CYCLES}", out)

    def test_display_closed_when_poll_raises(self):
        class BrokenDisplay(HeadlessDisplay):
            closed = False

            def poll(self, keypad):
                raise OSError("input device gone")

            def close(self):
                self.closed = True

        disp = BrokenDisplay()
        saved = cli.make_display
        cli.make_display = lambda config: disp
        try:
            with self.assertRaises(OSError):
                run_main([self.rom(words(0x1200)), "--headless"])
        finally:
            cli.make_display = saved
        self.assertTrue(disp.closed)

    def test_fault_exits_nonzero(self):
        code, _, err = run_main([self.rom(words(0xAFFF, 0xF155)),
                                 "--headless", "--max-cycles", "5"])
        self.assertEqual(code, 1)
        self.assertIn("Bus fault", err)
        self.assertIn("opcode=0xf155", err)


# ---------------------------------------------------------------------------
#  Monitor
# ---------------------------------------------------------------------------

class TestMonitor(unittest.TestCase):
    def make_monitor(self, *ops: int) -> Chip8Monitor:
        s = Chip8System(rng=ReplaySource([0]), report=False)
        s.load_rom(words(*ops))
        return Chip8Monitor(s)

    def cmd(self, mon: Chip8Monitor, line: str) -> str:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            mon.onecmd(line)
        return out.getvalue()

    def test_step(self):
        mon = self.make_monitor(0x6005, 0x7003)
        out = self.cmd(mon, "step 2")
        self.assertIn("0x200: LD V0, 0x05", out)
        self.assertIn("0x202: ADD V0, 0x03", out)
        self.assertEqual(mon.sys.cpu.v[0], 8)

    def test_key_wait_and_resume(self):
        mon = self.make_monitor(0xF10A, 0x6001)
        self.assertIn("(waiting for key)", self.cmd(mon, "step"))
        self.assertIn("Waiting for key", self.cmd(mon, "run"))
        self.cmd(mon, "key 7")
        self.assertIn("Held: 7", self.cmd(mon, "key"))
        self.cmd(mon, "run 1")
        self.assertEqual(mon.sys.cpu.v[1], 7)
        self.assertFalse(mon.sys.cpu.awaiting_key)
        self.cmd(mon, "key 7 up")
        self.assertFalse(mon.sys.keypad.is_held(7))

    def test_bad_key(self):
        mon = self.make_monitor(0x1200)
        self.assertIn("Error", self.cmd(mon, "key 10"))
        self.assertIn("Error", self.cmd(mon, "key zz"))

    def test_breakpoint(self):
        mon = self.make_monitor(0x6001, 0x6002, 0x6003, 0x1206)
        self.assertIn("Breakpoint set at 0x204", self.cmd(mon, "bp 204"))
        self.assertIn("Breakpoint hit at 0x204", self.cmd(mon, "run"))
        self.assertEqual(mon.sys.cpu.v[0], 2)
        self.assertIn("0x204", self.cmd(mon, "bp"))
        self.cmd(mon, "bpd all")
        self.assertIn("No breakpoints", self.cmd(mon, "bp"))

    def test_bad_numbers_keep_monitor_alive(self):
        mon = self.make_monitor(0x1200)
        self.assertIn("Error", self.cmd(mon, "bp zz"))
        self.assertIn("Error", self.cmd(mon, "step x"))
        self.assertIn("Error", self.cmd(mon, "dump 200 lots"))
        self.assertEqual(mon.breakpoints, set())
        self.assertEqual(mon.sys.cpu.cycle_count, 0)
        self.assertIn("Unknown command", self.cmd(mon, "frobnicate"))
        self.assertFalse(mon.onecmd("step 1"))
        self.assertEqual(mon.sys.cpu.cycle_count, 1)

    def test_run_reports_fault(self):
        mon = self.make_monitor(0x00EE)
        self.assertIn("Fault:", self.cmd(mon, "run"))

    def test_dump_and_disasm(self):
        mon = self.make_monitor(0x6005, 0x7003)
        self.assertIn("0x200: 60 05 70 03", self.cmd(mon, "dump 200 4"))
        out = self.cmd(mon, "disasm pc 2")
        self.assertIn(">>> 0x200: 60 05  LD V0, 0x05", out)
        self.assertIn("0x202: 70 03  ADD V0, 0x03", out)

    def test_regs_status_screen(self):
        mon = self.make_monitor(0xA000, 0xD015)
        self.cmd(mon, "step 2")
        self.assertIn("Cycles: 2", self.cmd(mon, "regs"))
        self.assertIn("=== Devices ===", self.cmd(mon, "status"))
        self.assertTrue(self.cmd(mon, "screen").startswith("####"))

    def test_reset(self):
        mon = self.make_monitor(0x6005, 0x7003)
        self.cmd(mon, "step 2")
        self.cmd(mon, "reset")
        self.assertEqual(mon.sys.cpu.pc, 0x200)
        self.assertEqual(mon.sys.cpu.v[0], 0)

    def test_quit(self):
        mon = self.make_monitor(0x1200)
        self.assertTrue(mon.onecmd("quit"))


if __name__ == "__main__":
    unittest.main()
