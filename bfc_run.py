#!/usr/bin/env python3
"""Compile a tape-language program and run it in-process with llvmlite's MCJIT.

The program's byte I/O is bound to Python callbacks instead of libc, so output
can be captured and input supplied without touching the process's file
descriptors.
"""

from __future__ import annotations

import argparse
import ctypes
import io
import itertools
import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import BinaryIO, List, Optional

from llvmlite import binding as llvm

import bfc


LOG = logging.getLogger("bfc.run")

PUTCHAR_FUNC = ctypes.CFUNCTYPE(ctypes.c_int, ctypes.c_int)
GETCHAR_FUNC = ctypes.CFUNCTYPE(ctypes.c_int)
MAIN_FUNC = ctypes.CFUNCTYPE(ctypes.c_int)

EOF = -1

# Each run binds fresh symbol names; MCJIT resolves them when the engine is
# finalized, so names must never be reused with a different callback.
_run_ids = itertools.count(1)


@dataclass
class RunResult:
    exit_code: int
    output: bytes


class ByteIO:
    """Host side of putchar/getchar for one run.

    These run as ctypes callbacks, which cannot propagate exceptions. The
    first I/O failure is kept in ``error`` and every later call reports EOF;
    :func:`execute` raises it once ``main`` returns.
    """

    def __init__(self, stdin: BinaryIO, stdout: BinaryIO) -> None:
        self.stdin = stdin
        self.stdout = stdout
        self.error: Optional[BaseException] = None

    def putchar(self, ch: int) -> int:
        if self.error is not None:
            return EOF
        byte = ch & 0xFF
        try:
            self.stdout.write(bytes((byte,)))
        except Exception as e:
            self.error = e
            return EOF
        return byte

    def getchar(self) -> int:
        if self.error is not None:
            return EOF
        try:
            data = self.stdin.read(1)
        except Exception as e:
            self.error = e
            return EOF
        if not data:
            return EOF
        return data[0]


def run_ir(ir: str) -> int:
    """JIT-compile ``ir`` and call its ``main``. Externs must already be bound."""
    mod = bfc.LLVMBackend(opt_level=0).parse(ir)
    target = llvm.Target.from_default_triple()
    target_machine = target.create_target_machine()
    engine = llvm.create_mcjit_compiler(mod, target_machine)
    engine.finalize_object()
    engine.run_static_constructors()

    addr = engine.get_function_address("main")
    if not addr:
        raise bfc.CompileError("main not found")
    return MAIN_FUNC(addr)()


def execute(
    src: str,
    stdin: BinaryIO,
    stdout: BinaryIO,
    tape_size: int = bfc.TAPE_SIZE,
) -> int:
    run_id = next(_run_ids)
    config = bfc.CompilerConfig(
        tape_size=tape_size,
        output_symbol=f"__bfc_putchar_{run_id}",
        input_symbol=f"__bfc_getchar_{run_id}",
    )
    ir = bfc.compile_source(src, config)

    host = ByteIO(stdin, stdout)
    # Keep the callbacks referenced until main returns.
    put_cb = PUTCHAR_FUNC(host.putchar)
    get_cb = GETCHAR_FUNC(host.getchar)
    llvm.add_symbol(config.output_symbol, ctypes.cast(put_cb, ctypes.c_void_p).value)
    llvm.add_symbol(config.input_symbol, ctypes.cast(get_cb, ctypes.c_void_p).value)

    rc = run_ir(ir)
    LOG.debug("run %d exited with %d", run_id, rc)
    if host.error is not None:
        raise host.error
    return rc


def run_source(src: str, stdin: bytes = b"", tape_size: int = bfc.TAPE_SIZE) -> RunResult:
    out = io.BytesIO()
    rc = execute(src, io.BytesIO(stdin), out, tape_size)
    return RunResult(rc, out.getvalue())


def format_duration(seconds: float) -> str:
    if seconds < 1e-6:
        return f"[time: {seconds * 1e9:.1f} ns]"
    if seconds < 1e-3:
        return f"[time: {seconds * 1e6:.1f} µs]"
    if seconds < 1.0:
        return f"[time: {seconds * 1e3:.1f} ms]"
    if seconds < 60.0:
        return f"[time: {seconds:.2f} s]"
    mins = int(seconds // 60)
    secs = seconds - mins * 60
    return f"[time: {mins}m {secs:.1f}s]"


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a tape-language program through the LLVM JIT.")
    parser.add_argument("input", help="Input program file")
    parser.add_argument("--tape-size", type=int, default=bfc.TAPE_SIZE, help=f"Number of tape cells (default {bfc.TAPE_SIZE})")
    parser.add_argument("--time", action="store_true", help="Report wall-clock run time on stderr")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("BFC_LOG", "WARNING"),
        help="Logging level (default WARNING)",
    )
    args = parser.parse_args(argv)
    bfc.configure_logging(args.log_level)
    if args.tape_size <= 0:
        parser.error(f"tape size must be positive, got {args.tape_size}")

    stdout = sys.stdout.buffer
    try:
        src = bfc.read_source(args.input)
        start = time.perf_counter()
        rc = execute(src, sys.stdin.buffer, stdout, args.tape_size)
        elapsed = time.perf_counter() - start
    except (bfc.CompileError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        stdout.flush()

    if args.time:
        print(format_duration(elapsed), file=sys.stderr)
    return rc


if __name__ == "__main__":
    raise SystemExit(main())
