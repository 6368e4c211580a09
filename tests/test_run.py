import io
import unittest

import bfc

try:
    import bfc_run
except ImportError:  # pragma: no cover - llvmlite missing
    bfc_run = None


HELLO = (
    "++++++++[>++++[>++>+++>+++>+<<<<-]>+>+>->>+[<]<-]>>."
    ">---.+++++++..+++.>>.<-.<.+++.------.--------.>>+.>++."
)


class FailingStream:
    def __init__(self):
        self.calls = 0

    def write(self, data):
        self.calls += 1
        raise BrokenPipeError(32, "Broken pipe")

    def read(self, size=-1):
        self.calls += 1
        raise OSError(5, "Input/output error")


@unittest.skipUnless(bfc_run is not None, "llvmlite not installed")
class TestRun(unittest.TestCase):
    def run_program(self, src: str, stdin: bytes = b"") -> bytes:
        result = bfc_run.run_source(src, stdin)
        self.assertEqual(result.exit_code, 0)
        return result.output

    def test_output_three(self):
        self.assertEqual(self.run_program("+++."), b"\x03")

    def test_clear_loop(self):
        self.assertEqual(self.run_program("+[-]."), b"\x00")

    def test_loop_skipped_on_zero_cell(self):
        self.assertEqual(self.run_program("[+.]++."), b"\x02")

    def test_increment_wraps(self):
        self.assertEqual(self.run_program("+" * 256 + "."), b"\x00")
        self.assertEqual(self.run_program("+++" + "+" * 256 + "."), b"\x03")

    def test_decrement_wraps(self):
        self.assertEqual(self.run_program("-."), b"\xff")

    def test_move_round_trip(self):
        self.assertEqual(self.run_program("+++><."), b"\x03")
        self.assertEqual(self.run_program(">+++<>."), b"\x03")

    def test_cells_are_independent(self):
        self.assertEqual(self.run_program("+>++>+++<<.>.>."), b"\x01\x02\x03")

    def test_nested_loops(self):
        # 2 * 3 * 2
        self.assertEqual(self.run_program("++[>+++[>++<-]<-]>>."), b"\x0c")

    def test_sibling_loops(self):
        self.assertEqual(self.run_program("+++[>++<-]>[>+++<-]>."), b"\x12")

    def test_hello_world(self):
        self.assertEqual(self.run_program(HELLO), b"Hello World!\n")

    def test_input(self):
        self.assertEqual(self.run_program(",.,.", b"ab"), b"ab")

    def test_input_until_newline(self):
        src = ",----------[++++++++++.,----------]"
        self.assertEqual(self.run_program(src, b"echo\nignored"), b"echo")

    def test_eof_reads_as_ff(self):
        self.assertEqual(self.run_program(",+."), b"\x00")

    def test_empty_program(self):
        self.assertEqual(self.run_program(""), b"")
        self.assertEqual(self.run_program("just words"), b"")

    def test_execute_streams(self):
        out = io.BytesIO()
        rc = bfc_run.execute("+++[>+++++++++++<-]>.", io.BytesIO(), out)
        self.assertEqual(rc, 0)
        self.assertEqual(out.getvalue(), b"!")

    def test_larger_tape(self):
        src = ">" * 300 + "+++."
        result = bfc_run.run_source(src, tape_size=1000)
        self.assertEqual(result.output, b"\x03")

    def test_output_error_is_raised_after_run(self):
        out = FailingStream()
        with self.assertRaises(BrokenPipeError):
            bfc_run.execute("+.+.+.", io.BytesIO(), out)
        self.assertEqual(out.calls, 1)

    def test_input_error_is_raised_after_run(self):
        with self.assertRaises(OSError):
            bfc_run.execute(",.", FailingStream(), io.BytesIO())

    def test_byte_io_reports_eof_after_failure(self):
        host = bfc_run.ByteIO(io.BytesIO(b"x"), FailingStream())
        self.assertEqual(host.putchar(65), bfc_run.EOF)
        self.assertIsInstance(host.error, BrokenPipeError)
        self.assertEqual(host.getchar(), bfc_run.EOF)

    def test_compile_errors_propagate(self):
        with self.assertRaises(bfc.UnmatchedLoopOpen):
            bfc_run.run_source("[")
        with self.assertRaises(bfc.UnmatchedLoopClose):
            bfc_run.run_source("]")

    def test_format_duration(self):
        self.assertEqual(bfc_run.format_duration(0.5), "[time: 500.0 ms]")
        self.assertEqual(bfc_run.format_duration(90.0), "[time: 1m 30.0s]")


if __name__ == "__main__":
    unittest.main()
