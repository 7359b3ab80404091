"""
cartutil.py — workload runner and self-test for the CART file driver.

Runs scripted or randomised file traffic through CartDriver against the
simulated controller, checking every read against a shadow copy of
each file kept in host memory.

Workload scripts hold one command per line; ``#`` starts a comment:

    open   PATH
    close  PATH
    write  PATH COUNT BYTE     # COUNT copies of BYTE (0xAB or 171)
    writes PATH TEXT...        # the rest of the line, UTF-8
    read   PATH COUNT
    seek   PATH OFFSET

Usage:
    python cartutil.py run workload.txt [--image cart.img]
    python cartutil.py selftest --ops 5000 --seed 7
    python cartutil.py info
"""

from __future__ import annotations

import argparse
import logging
import os
import random
import re
import shlex
import sys
from pathlib import Path
from typing import Optional

from registers import (
    MAX_CARTRIDGES, CARTRIDGE_SIZE, FRAME_SIZE, DEVICE_CAPACITY,
)
from controller import CartController
from driver import CartDriver, CartError

logger = logging.getLogger("cartutil")
_COMMENT = re.compile(r"(?:^|\s)#")


class WorkloadError(Exception):
    """Bad workload line, or a read that disagreed with the shadow copy."""

    def __init__(self, lineno: int, message: str):
        super().__init__(f"line {lineno}: {message}")
        self.lineno = lineno


def _parse_byte(tok: str) -> int:
    value = int(tok, 0)
    if not 0 <= value <= 0xFF:
        raise ValueError(f"byte value out of range: {tok}")
    return value


# ── Workload runner ────────────────────────────────────────────────────

class WorkloadRunner:
    """Drives a CartDriver and mirrors every file in a shadow bytearray."""

    def __init__(self, driver: CartDriver, verify: bool = True):
        self.driver = driver
        self.verify = verify
        self.handles: dict[str, int] = {}
        self.shadow: dict[str, bytearray] = {}
        self.cursor: dict[str, int] = {}
        self.bytes_read = 0
        self.bytes_written = 0

    def _handle(self, lineno: int, path: str) -> int:
        if path not in self.handles:
            raise WorkloadError(lineno, f"{path!r} was never opened")
        return self.handles[path]

    def open(self, path: str):
        self.handles[path] = self.driver.open(path)
        self.shadow.setdefault(path, bytearray())
        self.cursor[path] = 0

    def close(self, lineno: int, path: str):
        self.driver.close(self._handle(lineno, path))

    def write(self, lineno: int, path: str, data: bytes) -> int:
        n = self.driver.write(self._handle(lineno, path), data)
        pos = self.cursor[path]
        self.shadow[path][pos:pos + len(data)] = data
        self.cursor[path] = pos + len(data)
        self.bytes_written += n
        return n

    def read(self, lineno: int, path: str, count: int) -> bytes:
        data = self.driver.read(self._handle(lineno, path), count)
        pos = self.cursor[path]
        expect = bytes(self.shadow[path][pos:pos + count])
        self.cursor[path] = pos + len(expect)
        self.bytes_read += len(data)
        if self.verify and data != expect:
            raise WorkloadError(
                lineno, f"read mismatch on {path!r} at offset {pos}: "
                f"got {len(data)} bytes, expected {len(expect)}")
        return data

    def seek(self, lineno: int, path: str, offset: int):
        self.driver.seek(self._handle(lineno, path), offset)
        self.cursor[path] = offset

    def execute(self, lineno: int, line: str) -> Optional[str]:
        """Run one workload line.  Returns a short report, or None."""
        line = _COMMENT.split(line, 1)[0].strip()
        if not line:
            return None
        if line.split(None, 1)[0].lower() == "writes":
            parts = line.split(None, 2)
            if len(parts) < 3:
                raise WorkloadError(lineno, "usage: writes PATH TEXT")
            n = self.write(lineno, parts[1], parts[2].encode("utf-8"))
            return f"writes {parts[1]}: {n} bytes"

        try:
            words = shlex.split(line)
        except ValueError as e:
            raise WorkloadError(lineno, str(e)) from e
        cmd, args = words[0].lower(), words[1:]
        try:
            if cmd == "open" and len(args) == 1:
                self.open(args[0])
                return f"open {args[0]}: handle {self.handles[args[0]]}"
            if cmd == "close" and len(args) == 1:
                self.close(lineno, args[0])
                return f"close {args[0]}"
            if cmd == "write" and len(args) == 3:
                data = bytes([_parse_byte(args[2])]) * int(args[1], 0)
                n = self.write(lineno, args[0], data)
                return f"write {args[0]}: {n} bytes"
            if cmd == "read" and len(args) == 2:
                data = self.read(lineno, args[0], int(args[1], 0))
                return f"read {args[0]}: {len(data)} bytes"
            if cmd == "seek" and len(args) == 2:
                self.seek(lineno, args[0], int(args[1], 0))
                return f"seek {args[0]}: {args[1]}"
        except ValueError as e:
            raise WorkloadError(lineno, str(e)) from e
        raise WorkloadError(lineno, f"bad command: {line!r}")

    def run(self, lines) -> list[str]:
        report = []
        for lineno, line in enumerate(lines, 1):
            try:
                out = self.execute(lineno, line)
            except CartError as e:
                raise WorkloadError(lineno, f"{type(e).__name__}: {e}") from e
            if out is not None:
                report.append(out)
        return report


# ── Randomised self-test ───────────────────────────────────────────────

def selftest(driver: CartDriver, ops: int = 1000, files: int = 4,
             seed: Optional[int] = None) -> list[str]:
    """Random open/close/read/write/seek traffic, verified as it goes.

    Returns the driver's invariant problems after the run (empty when
    everything held).  A mismatching read raises WorkloadError.
    """
    rng = random.Random(seed)
    runner = WorkloadRunner(driver)
    paths = [f"file{i}" for i in range(files)]
    is_open: dict[str, bool] = {p: False for p in paths}

    for step in range(1, ops + 1):
        path = rng.choice(paths)
        if not is_open[path]:
            runner.open(path)
            is_open[path] = True
            continue
        size = len(runner.shadow[path])
        roll = rng.random()
        if roll < 0.40:
            count = rng.choice((1, rng.randint(1, FRAME_SIZE * 3), FRAME_SIZE))
            runner.write(step, path, bytes([rng.randrange(256)]) * count)
        elif roll < 0.75:
            runner.read(step, path, rng.randint(0, FRAME_SIZE * 2))
        elif roll < 0.95:
            runner.seek(step, path, rng.randint(0, size))
        else:
            runner.close(step, path)
            is_open[path] = False

    logger.info("selftest: %d ops, %d bytes written, %d bytes read",
                ops, runner.bytes_written, runner.bytes_read)
    return driver.check()


# ── CLI ────────────────────────────────────────────────────────────────


def _make_driver(image: Optional[str]) -> tuple[CartController, CartDriver]:
    ctl = CartController(image)
    drv = CartDriver(ctl)
    drv.power_on()
    return ctl, drv


def _power_off(drv: CartDriver) -> bool:
    """Power down, flushing any host image.  Reports failure on stderr."""
    try:
        drv.power_off()
    except CartError as e:
        print(f"ERROR: power-off failed: {e}", file=sys.stderr)
        return False
    return True

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="cartutil",
        description="CART file driver workload runner",
    )
    parser.add_argument("--log-level",
                        default=os.environ.get("CART_LOG_LEVEL", "WARNING"),
                        help="Logging level (default: $CART_LOG_LEVEL or WARNING)")
    sub = parser.add_subparsers(dest="cmd")

    # run — execute a workload script
    p_run = sub.add_parser("run", help="Run a workload script")
    p_run.add_argument("workload", help="Workload file ('-' for stdin)")
    p_run.add_argument("--image", default=os.environ.get("CART_IMAGE"),
                       help="Host file flushed on power-off (default: $CART_IMAGE)")
    p_run.add_argument("--no-verify", action="store_true",
                       help="Do not compare reads against the shadow copy")
    p_run.add_argument("-q", "--quiet", action="store_true",
                       help="Only print the summary")

    # selftest — randomised traffic
    p_st = sub.add_parser("selftest", help="Randomised driver self-test")
    p_st.add_argument("--ops", type=int, default=1000,
                      help="Number of operations (default: 1000)")
    p_st.add_argument("--files", type=int, default=4,
                      help="Number of files (default: 4)")
    p_st.add_argument("--seed", type=int, default=None,
                      help="Random seed")

    # info — device geometry
    sub.add_parser("info", help="Show device geometry")

    args = parser.parse_args(argv)
    level = logging.getLevelName(args.log_level.upper())
    if not isinstance(level, int):
        print(f"ERROR: unknown log level {args.log_level!r}", file=sys.stderr)
        return 1
    logging.basicConfig(level=level,
                        format="%(levelname)s %(name)s: %(message)s")

    if args.cmd is None:
        parser.print_help()
        return 0

    if args.cmd == "info":
        print(f"  cartridges: {MAX_CARTRIDGES}")
        print(f"  frames_per_cartridge: {CARTRIDGE_SIZE}")
        print(f"  frame_size: {FRAME_SIZE}")
        print(f"  capacity: {DEVICE_CAPACITY}")
        return 0

    if args.cmd == "run":
        if args.workload == "-":
            lines = sys.stdin.read().splitlines()
        else:
            try:
                lines = Path(args.workload).read_text().splitlines()
            except OSError as e:
                print(f"ERROR: {e}", file=sys.stderr)
                return 1
        ctl, drv = _make_driver(args.image)
        runner = WorkloadRunner(drv, verify=not args.no_verify)
        try:
            report = runner.run(lines)
        except WorkloadError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            _power_off(drv)
            return 1
        if not _power_off(drv):
            return 1
        if not args.quiet:
            for out in report:
                print(out)
        info = drv.info()
        print(f"{len(report)} commands, {runner.bytes_written} bytes written, "
              f"{runner.bytes_read} bytes read, {info['files']} files, "
              f"{info['frames_used']} frames used")
        for k, v in ctl.stats().items():
            print(f"  {k}: {v}")
        return 0

    if args.cmd == "selftest":
        _, drv = _make_driver(None)
        try:
            problems = selftest(drv, ops=args.ops, files=args.files,
                                seed=args.seed)
        except (WorkloadError, CartError) as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        if problems:
            for p in problems:
                print(f"  ERROR: {p}")
            print(f"{len(problems)} problem(s) found")
            return 1
        info = drv.info()
        print(f"Self-test passed: {args.ops} ops, {info['files']} files, "
              f"{info['bytes_stored']} bytes in {info['frames_used']} frames")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
