#!/usr/bin/env python3
"""A tiny compiler for the eight-instruction tape language that emits LLVM IR.

The front end (lexer, loop resolution and IR emission) produces textual LLVM IR
for a single ``main`` function. Verification, optimization and object emission
are delegated to a backend; :class:`LLVMBackend` uses llvmlite.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

try:
    from llvmlite import binding as llvm
except ImportError:  # pragma: no cover - optional dependency
    llvm = None


LOG = logging.getLogger("bfc")

# Classic tape: 256 byte cells addressed by a 64-bit pointer. The pointer is
# never bounds checked; moving off either end of the tape is undefined.
TAPE_SIZE = 256
CELL_TYPE = "i8"
POINTER_TYPE = "i64"

DEFAULT_OBJECT = "output.o"
DEFAULT_BITCODE = "output.bc"
DEFAULT_IR = "output.ll"


# ---------------------------
# Errors
# ---------------------------

class CompileError(Exception):
    """Base class for every fatal compilation error."""


class SourceReadError(CompileError):
    pass


class LoopError(CompileError):
    def __init__(self, message: str, token_index: int) -> None:
        super().__init__(message)
        self.token_index = token_index


class UnmatchedLoopClose(LoopError):
    pass


class UnmatchedLoopOpen(LoopError):
    pass


class VerificationError(CompileError):
    """The backend rejected the emitted IR. Always a compiler bug."""

    def __init__(self, diagnostic: str) -> None:
        super().__init__(f"IR verification failed: {diagnostic}")
        self.diagnostic = diagnostic


class ArtifactWriteError(CompileError):
    pass


# ---------------------------
# Lexer
# ---------------------------

class Token(Enum):
    MOVE_RIGHT = ">"
    MOVE_LEFT = "<"
    INCREMENT = "+"
    DECREMENT = "-"
    OUTPUT = "."
    INPUT = ","
    LOOP_OPEN = "["
    LOOP_CLOSE = "]"


SYMBOLS: Dict[str, Token] = {tok.value: tok for tok in Token}


def lex(src: str) -> List[Token]:
    # Anything outside the instruction alphabet is a comment.
    return [SYMBOLS[c] for c in src if c in SYMBOLS]


def read_source(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.read()
    except OSError as e:
        raise SourceReadError(f"cannot read {path}: {e.strerror or e}") from e


# ---------------------------
# Loop resolution
# ---------------------------

@dataclass(frozen=True)
class LoopFrame:
    body: str
    after: str
    opened_at: int


class LoopStack:
    """LIFO pairing of '[' with ']'.

    Each frame holds the labels of the loop body and of the block following
    the loop; the matching ']' pops it to branch back or fall out.
    """

    def __init__(self) -> None:
        self.frames: List[LoopFrame] = []

    def __len__(self) -> int:
        return len(self.frames)

    def push(self, frame: LoopFrame) -> None:
        self.frames.append(frame)

    def pop(self, token_index: int) -> LoopFrame:
        if not self.frames:
            raise UnmatchedLoopClose(f"unmatched ']' at token {token_index}", token_index)
        return self.frames.pop()

    def finish(self) -> None:
        if self.frames:
            first = self.frames[0]
            raise UnmatchedLoopOpen(
                f"unmatched '[' at token {first.opened_at} "
                f"({len(self.frames)} loop(s) left open)",
                first.opened_at,
            )


# ---------------------------
# LLVM IR Emitter
# ---------------------------

class IRBuilder:
    def __init__(self) -> None:
        self.lines: List[str] = []
        self.tmp = 0
        self.lbl = 0

    def emit(self, line: str) -> None:
        self.lines.append(line)

    def fresh(self) -> str:
        self.tmp += 1
        return f"%t{self.tmp}"

    def fresh_labels(self, *bases: str) -> List[str]:
        # One number per group so related blocks read as a set.
        self.lbl += 1
        return [f"{base}{self.lbl}" for base in bases]

    def render(self) -> str:
        return "\n".join(self.lines) + "\n"


@dataclass
class CompilerConfig:
    tape_size: int = TAPE_SIZE
    output_symbol: str = "putchar"
    input_symbol: str = "getchar"

    def __post_init__(self) -> None:
        if self.tape_size <= 0:
            raise ValueError(f"tape size must be positive, got {self.tape_size}")


class Compiler:
    def __init__(self, config: Optional[CompilerConfig] = None) -> None:
        self.config = config or CompilerConfig()
        self.builder = IRBuilder()
        self.loops = LoopStack()
        self.loop_count = 0

    def compile(self, tokens: Sequence[Token]) -> str:
        self.builder = IRBuilder()
        self.loops = LoopStack()
        self.loop_count = 0
        b = self.builder
        cfg = self.config

        b.emit('; ModuleID = "bfc"')
        b.emit(f"declare i32 @{cfg.output_symbol}(i32)")
        b.emit(f"declare i32 @{cfg.input_symbol}()")
        b.emit("declare void @llvm.memset.p0.i64(ptr, i8, i64, i1)")
        b.emit("")
        b.emit("define i32 @main() {")
        b.emit("entry:")
        b.emit(f"  %tape = alloca [{cfg.tape_size} x {CELL_TYPE}]")
        b.emit(f"  %pointer = alloca {POINTER_TYPE}")
        b.emit(f"  call void @llvm.memset.p0.i64(ptr %tape, i8 0, i64 {cfg.tape_size}, i1 false)")
        b.emit(f"  store {POINTER_TYPE} 0, ptr %pointer")

        for index, tok in enumerate(tokens):
            self.emit_token(index, tok)
        self.loops.finish()

        b.emit("  ret i32 0")
        b.emit("}")
        LOG.debug("emitted %d tokens, %d loops", len(tokens), self.loop_count)
        return b.render()

    def emit_token(self, index: int, tok: Token) -> None:
        if tok is Token.MOVE_RIGHT:
            self.emit_move("add")
            return
        if tok is Token.MOVE_LEFT:
            self.emit_move("sub")
            return
        if tok is Token.INCREMENT:
            self.emit_cell_update("add")
            return
        if tok is Token.DECREMENT:
            self.emit_cell_update("sub")
            return
        if tok is Token.OUTPUT:
            self.emit_output()
            return
        if tok is Token.INPUT:
            self.emit_input()
            return
        if tok is Token.LOOP_OPEN:
            self.emit_loop_open(index)
            return
        if tok is Token.LOOP_CLOSE:
            self.emit_loop_close(index)
            return
        raise TypeError(f"Unknown token: {tok!r}")

    def emit_move(self, op: str) -> None:
        b = self.builder
        old = b.fresh()
        b.emit(f"  {old} = load {POINTER_TYPE}, ptr %pointer")
        new = b.fresh()
        b.emit(f"  {new} = {op} {POINTER_TYPE} {old}, 1")
        b.emit(f"  store {POINTER_TYPE} {new}, ptr %pointer")

    def emit_cell_ptr(self) -> str:
        b = self.builder
        index = b.fresh()
        b.emit(f"  {index} = load {POINTER_TYPE}, ptr %pointer")
        addr = b.fresh()
        b.emit(f"  {addr} = getelementptr {CELL_TYPE}, ptr %tape, {POINTER_TYPE} {index}")
        return addr

    def emit_cell_load(self) -> str:
        b = self.builder
        addr = self.emit_cell_ptr()
        value = b.fresh()
        b.emit(f"  {value} = load {CELL_TYPE}, ptr {addr}")
        return value

    def emit_cell_update(self, op: str) -> None:
        # i8 add/sub wrap modulo 256.
        b = self.builder
        addr = self.emit_cell_ptr()
        old = b.fresh()
        b.emit(f"  {old} = load {CELL_TYPE}, ptr {addr}")
        new = b.fresh()
        b.emit(f"  {new} = {op} {CELL_TYPE} {old}, 1")
        b.emit(f"  store {CELL_TYPE} {new}, ptr {addr}")

    def emit_output(self) -> None:
        b = self.builder
        value = self.emit_cell_load()
        wide = b.fresh()
        b.emit(f"  {wide} = zext {CELL_TYPE} {value} to i32")
        ret = b.fresh()
        b.emit(f"  {ret} = call i32 @{self.config.output_symbol}(i32 {wide})")

    def emit_input(self) -> None:
        # EOF (-1) truncates to 0xFF.
        b = self.builder
        addr = self.emit_cell_ptr()
        ch = b.fresh()
        b.emit(f"  {ch} = call i32 @{self.config.input_symbol}()")
        value = b.fresh()
        b.emit(f"  {value} = trunc i32 {ch} to {CELL_TYPE}")
        b.emit(f"  store {CELL_TYPE} {value}, ptr {addr}")

    def emit_cell_test(self) -> str:
        b = self.builder
        value = self.emit_cell_load()
        cond = b.fresh()
        b.emit(f"  {cond} = icmp ne {CELL_TYPE} {value}, 0")
        return cond

    def emit_loop_open(self, index: int) -> None:
        b = self.builder
        body, after = b.fresh_labels("loop_body", "loop_end")
        cond = self.emit_cell_test()
        b.emit(f"  br i1 {cond}, label %{body}, label %{after}")
        b.emit(f"{body}:")
        self.loops.push(LoopFrame(body, after, index))
        self.loop_count += 1

    def emit_loop_close(self, index: int) -> None:
        b = self.builder
        frame = self.loops.pop(index)
        # The body may have changed the pointer or the cell; test again.
        cond = self.emit_cell_test()
        b.emit(f"  br i1 {cond}, label %{frame.body}, label %{frame.after}")
        b.emit(f"{frame.after}:")


def compile_source(src: str, config: Optional[CompilerConfig] = None) -> str:
    tokens = lex(src)
    LOG.debug("lexed %d tokens", len(tokens))
    return Compiler(config).compile(tokens)


# ---------------------------
# Backends
# ---------------------------

@dataclass
class Outputs:
    object_path: Optional[str] = DEFAULT_OBJECT
    bitcode_path: Optional[str] = DEFAULT_BITCODE
    ir_path: Optional[str] = None


def write_artifacts(artifacts: Dict[str, bytes]) -> None:
    """Write every artifact or none of them.

    Each payload goes to a temp file beside its target; targets are replaced
    only once all temp files are written.
    """
    staged: List[Tuple[str, str, int]] = []
    try:
        for path, data in artifacts.items():
            try:
                fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path) or ".", prefix=".bfc-", suffix=".tmp")
            except OSError as e:
                raise ArtifactWriteError(f"cannot write {path}: {e.strerror or e}") from e
            staged.append((tmp, path, len(data)))
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.chmod(tmp, 0o644)
            except OSError as e:
                raise ArtifactWriteError(f"cannot write {path}: {e.strerror or e}") from e
        for tmp, path, size in staged:
            try:
                os.replace(tmp, path)
            except OSError as e:
                raise ArtifactWriteError(f"cannot write {path}: {e.strerror or e}") from e
            LOG.info("wrote %s (%d bytes)", path, size)
    finally:
        for tmp, _, _ in staged:
            if os.path.exists(tmp):
                os.remove(tmp)


class Backend:
    """Turns finished IR into artifacts: verify, lower, emit."""

    def compile(self, ir: str, outputs: Outputs) -> None:
        raise NotImplementedError


class TextBackend(Backend):
    """Writes the IR text as-is. No verification, no LLVM required."""

    def compile(self, ir: str, outputs: Outputs) -> None:
        write_artifacts({outputs.ir_path or DEFAULT_IR: ir.encode("utf-8")})


@dataclass
class LLVMBackend(Backend):
    opt_level: int = 2
    reloc: str = "pic"
    features: str = ""

    def __post_init__(self) -> None:
        if self.opt_level not in (0, 1, 2, 3):
            raise ValueError(f"optimization level must be 0-3, got {self.opt_level}")

    def parse(self, ir: str) -> "llvm.ModuleRef":
        init_llvm()
        try:
            mod = llvm.parse_assembly(ir)
            mod.verify()
        except RuntimeError as e:
            raise VerificationError(str(e).strip()) from e
        return mod

    def target_machine(self) -> "llvm.TargetMachine":
        target = llvm.Target.from_default_triple()
        return target.create_target_machine(
            features=self.features,
            opt=self.opt_level,
            reloc=self.reloc,
            codemodel="default",
        )

    def optimize(self, mod: "llvm.ModuleRef", target_machine: "llvm.TargetMachine") -> None:
        if self.opt_level == 0:
            return
        pto = llvm.create_pipeline_tuning_options(speed_level=self.opt_level)
        pb = llvm.create_pass_builder(target_machine, pto)
        pm = pb.getModulePassManager()
        pm.run(mod, pb)

    def compile(self, ir: str, outputs: Outputs) -> None:
        mod = self.parse(ir)
        target_machine = self.target_machine()
        mod.triple = target_machine.triple
        mod.data_layout = str(target_machine.target_data)
        self.optimize(mod, target_machine)

        # Render everything before touching the filesystem.
        artifacts: Dict[str, bytes] = {}
        if outputs.ir_path:
            artifacts[outputs.ir_path] = ir.encode("utf-8")
        if outputs.bitcode_path:
            artifacts[outputs.bitcode_path] = mod.as_bitcode()
        if outputs.object_path:
            artifacts[outputs.object_path] = target_machine.emit_object(mod)
        write_artifacts(artifacts)


def init_llvm() -> None:
    if llvm is None:
        raise CompileError("llvmlite not installed (pip install llvmlite)")
    llvm.initialize_native_target()
    llvm.initialize_native_asmprinter()


def compile_file(
    path: str,
    outputs: Outputs,
    backend: Optional[Backend] = None,
    config: Optional[CompilerConfig] = None,
) -> None:
    src = read_source(path)
    ir = compile_source(src, config)
    (backend or LLVMBackend()).compile(ir, outputs)


# ---------------------------
# CLI
# ---------------------------

def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Compile a tape-language program to a native object file via LLVM."
    )
    parser.add_argument("input", help="Input program file")
    parser.add_argument("-o", "--output", default=DEFAULT_OBJECT, help=f"Object file (default {DEFAULT_OBJECT})")
    parser.add_argument("--bitcode", default=DEFAULT_BITCODE, help=f"Bitcode file (default {DEFAULT_BITCODE})")
    parser.add_argument("--emit-llvm", metavar="PATH", help="Also write the textual LLVM IR to PATH")
    parser.add_argument(
        "-S",
        dest="ir_only",
        action="store_true",
        help=f"Only write textual LLVM IR (to --emit-llvm or {DEFAULT_IR}); skips LLVM entirely",
    )
    parser.add_argument("-O", dest="opt_level", type=int, choices=range(4), default=2, help="Optimization level")
    parser.add_argument("--tape-size", type=int, default=TAPE_SIZE, help=f"Number of tape cells (default {TAPE_SIZE})")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("BFC_LOG", "WARNING"),
        help="Logging level (default WARNING)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = CompilerConfig(tape_size=args.tape_size)
    except ValueError as e:
        parser.error(str(e))

    if args.ir_only:
        backend: Backend = TextBackend()
        outputs = Outputs(object_path=None, bitcode_path=None, ir_path=args.emit_llvm or DEFAULT_IR)
    else:
        backend = LLVMBackend(opt_level=args.opt_level)
        outputs = Outputs(object_path=args.output, bitcode_path=args.bitcode, ir_path=args.emit_llvm)

    try:
        compile_file(args.input, outputs, backend, config)
    except CompileError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
