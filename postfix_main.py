#!/usr/bin/env python3
# postfix_main.py
#
# Lanceur en ligne de commande :
#   postfix [-d|--debug] <filename>
#
# - lit le fichier source en entier
# - parse, affiche le programme, exécute, affiche la pile finale
# - codes de sortie : 0 succès, 1 usage/lecture, 2 erreur de parse ou d'exécution
#
# Tests intégrés :
#   python postfix_main.py --test

from __future__ import annotations

import argparse
import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from typing import Callable, List, Optional

from postfix_parser import ParseError, parse
from postfix_values import release, render
from postfix_vm_core import Config, Context

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FAILED = 2


class _ArgParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_arg_parser() -> argparse.ArgumentParser:
    ap = _ArgParser(prog="postfix", description="Run a postfix program and print the final stack.")
    ap.add_argument("-d", "--debug", action="store_true", help="verbose diagnostics")
    ap.add_argument("filename", help="program source file")
    return ap


def load_source(pathname: str, debug: Optional[Callable[[str], None]] = None) -> bytes:
    """Read the whole program file. OSError propagates to the caller."""
    log = debug or (lambda msg: None)
    log(f"reading file: {pathname}...")
    with open(pathname, "rb") as f:
        data = f.read()
    log(f"file length is {len(data)}")
    return data


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    ctx = Context(Config(verbose=args.debug), out=sys.stderr)
    try:
        try:
            text = load_source(args.filename, ctx.debug)
        except OSError as e:
            print(f"unable to open file {args.filename}: {e.strerror or e}", file=sys.stderr)
            return EXIT_USAGE

        try:
            program = parse(text, ctx.heap, debug=ctx.debug)
        except ParseError as e:
            ctx.emit(f"{e}\n")
            return EXIT_FAILED

        print(render(program))
        ok = ctx.run(program)
        if not ok:
            print("failed to execute", file=sys.stderr)
        release(program)

        print("Stack context at end:")
        print(render(ctx.stack))
        return EXIT_OK if ok else EXIT_FAILED
    finally:
        ctx.close()


# ======================================================================
# Tests intégrés (python postfix_main.py --test)
# ======================================================================

class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def write_program(self, src: str) -> str:
        path = os.path.join(self.tmpdir.name, "prg.pf")
        with open(path, "w", encoding="utf-8") as f:
            f.write(src)
        return path

    def run_main(self, argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(argv)
        return code, out.getvalue(), err.getvalue()

    def test_success_prints_program_and_stack(self):
        code, out, err = self.run_main([self.write_program("3 4 + 2 *\n")])
        self.assertEqual(code, EXIT_OK)
        self.assertEqual(out.splitlines(), ["[3,4,+,2,*]", "Stack context at end:", "[14]"])
        self.assertEqual(err, "")

    def test_runtime_failure_exits_nonzero_and_still_prints_stack(self):
        code, out, err = self.run_main([self.write_program("3 foo")])
        self.assertEqual(code, EXIT_FAILED)
        self.assertIn("unknown operation: foo", err)
        self.assertEqual(out.splitlines()[-1], "[3]")

    def test_parse_failure(self):
        code, out, err = self.run_main([self.write_program("1 2 #")])
        self.assertEqual(code, EXIT_FAILED)
        self.assertIn("unexpected token", err)
        self.assertEqual(out, "")

    def test_invalid_utf8_file_is_parse_failure(self):
        path = os.path.join(self.tmpdir.name, "bad.pf")
        with open(path, "wb") as f:
            f.write(b"3 4 + \xe9")
        code, out, err = self.run_main([path])
        self.assertEqual(code, EXIT_FAILED)
        self.assertIn("invalid UTF-8 at 6", err)
        self.assertEqual(out, "")

    def test_missing_file(self):
        code, out, err = self.run_main([os.path.join(self.tmpdir.name, "nope.pf")])
        self.assertEqual(code, EXIT_USAGE)
        self.assertIn("unable to open file", err)

    def test_usage_error_exits_1(self):
        err = io.StringIO()
        with redirect_stderr(err), self.assertRaises(SystemExit) as cm:
            main([])
        self.assertEqual(cm.exception.code, EXIT_USAGE)
        self.assertIn("usage", err.getvalue())

    def test_debug_flag_emits_debug_lines(self):
        code, out, err = self.run_main(["--debug", self.write_program("1 2 +")])
        self.assertEqual(code, EXIT_OK)
        self.assertIn("debug: reading file:", err)
        self.assertIn("debug: file length is 5", err)
        self.assertIn("debug: compilation finished", err)


if __name__ == "__main__":
    if "--test" in sys.argv:
        sys.argv = [sys.argv[0]]
        unittest.main()
    else:
        sys.exit(main())
