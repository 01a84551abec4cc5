#!/usr/bin/env python3
# postfix_parser.py
#
# Tokenizer/parser du langage postfix :
# texte brut -> LIST de Value (INT littéraux et SYMBOL), dans l'ordre source.
#
# Tests intégrés :
#   python postfix_parser.py

from __future__ import annotations

import sys
import unittest
from typing import Callable, Optional, Union

from postfix_values import (
    INT64_MAX, INT64_MIN, PostfixError, Value, ValueHeap, VKind,
    list_append, release, render,
)

MAX_NUM_LEN = 128
SYMBOL_CHARS = "+-/*%."
WHITESPACE = " \t\n\r\v\f"
DIGITS = "0123456789"
SNIPPET_LEN = 10


class ParseError(PostfixError):
    def __init__(self, position: int, snippet: str, reason: str = "unexpected token") -> None:
        self.position = position
        self.snippet = snippet
        self.reason = reason
        super().__init__(f"{reason} at {position}: {snippet!r} ...")


def is_digit(c: str) -> bool:
    return c != "" and c in DIGITS


def is_symbol_char(c: str) -> bool:
    if c == "":
        return False
    return (c.isascii() and c.isalpha()) or c in SYMBOL_CHARS


def _decode_source(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        # position en caractères : le préfixe avant e.start est valide
        pos = len(raw[:e.start].decode("utf-8"))
        snippet = raw[e.start:e.start + SNIPPET_LEN].decode("utf-8", errors="replace")
        raise ParseError(pos, snippet, "invalid UTF-8") from None


class Parser:
    """Scan source text left to right and build the program list."""

    def __init__(self, text: Union[str, bytes], heap: Optional[ValueHeap] = None,
                 debug: Optional[Callable[[str], None]] = None) -> None:
        if isinstance(text, (bytes, bytearray)):
            text = _decode_source(bytes(text))
        self.text: str = text
        self.pos: int = 0
        self.heap: ValueHeap = heap if heap is not None else ValueHeap()
        self._debug = debug

    def _peek(self, offset: int = 0) -> str:
        i = self.pos + offset
        return self.text[i] if i < len(self.text) else ""

    def _snippet(self, at: int) -> str:
        return self.text[at:at + SNIPPET_LEN]

    def _log(self, msg: str) -> None:
        if self._debug is not None:
            self._debug(msg)

    def skip_spaces(self) -> None:
        while self._peek() != "" and self._peek() in WHITESPACE:
            self.pos += 1

    def parse_number(self) -> Value:
        start = self.pos
        if self._peek() == "-":
            self.pos += 1
        while is_digit(self._peek()):
            self.pos += 1
            if self.pos - start >= MAX_NUM_LEN:
                raise ParseError(start, self._snippet(start), "number too long")
        n = int(self.text[start:self.pos], 10)
        if not INT64_MIN <= n <= INT64_MAX:
            raise ParseError(start, self._snippet(start), "integer out of range")
        return self.heap.new_integer(n)

    def parse_symbol(self) -> Value:
        start = self.pos
        while is_symbol_char(self._peek()):
            self.pos += 1
        return self.heap.new_symbol(self.text[start:self.pos])

    def parse(self) -> Value:
        self._log("compilation started")
        program = self.heap.new_list()
        try:
            while True:
                self.skip_spaces()
                c = self._peek()
                if c == "":
                    break
                if is_digit(c) or (c == "-" and is_digit(self._peek(1))):
                    o = self.parse_number()
                elif is_symbol_char(c):
                    o = self.parse_symbol()
                else:
                    raise ParseError(self.pos, self._snippet(self.pos))
                list_append(program, o)
        except ParseError:
            release(program)
            raise
        self._log("compilation finished")
        return program


def parse(text: Union[str, bytes], heap: Optional[ValueHeap] = None,
          debug: Optional[Callable[[str], None]] = None) -> Value:
    return Parser(text, heap, debug).parse()


####################################################################
# Tests

class TestParser(unittest.TestCase):
    def setUp(self) -> None:
        self.heap = ValueHeap()

    def kinds_and_values(self, prg: Value):
        return [(v.kind, v.payload) for v in prg.items()]

    def test_literals_and_symbols_in_source_order(self):
        prg = parse("3 4 +\n  dup", self.heap)
        self.assertEqual(self.kinds_and_values(prg), [
            (VKind.INT, 3), (VKind.INT, 4), (VKind.SYMBOL, "+"), (VKind.SYMBOL, "dup"),
        ])

    def test_minus_before_digit_is_negative_literal(self):
        prg = parse("-12 3", self.heap)
        self.assertEqual(self.kinds_and_values(prg), [(VKind.INT, -12), (VKind.INT, 3)])

    def test_bare_minus_is_symbol(self):
        prg = parse("10 3 -", self.heap)
        self.assertEqual(prg.items()[-1].kind, VKind.SYMBOL)
        self.assertEqual(prg.items()[-1].payload, "-")

    def test_minus_followed_by_letter_is_symbol(self):
        prg = parse("-x", self.heap)
        self.assertEqual(self.kinds_and_values(prg), [(VKind.SYMBOL, "-x")])

    def test_number_then_symbol_without_space(self):
        prg = parse("3dup", self.heap)
        self.assertEqual(self.kinds_and_values(prg), [(VKind.INT, 3), (VKind.SYMBOL, "dup")])

    def test_empty_and_blank_input(self):
        self.assertEqual(parse("", self.heap).items(), [])
        self.assertEqual(parse(" \t\n ", self.heap).items(), [])

    def test_bytes_input(self):
        prg = parse(b"1 2 *", self.heap)
        self.assertEqual(render(prg), "[1,2,*]")

    def test_invalid_utf8_bytes_fail_with_position(self):
        with self.assertRaises(ParseError) as cm:
            parse(b"1 2 \xff", self.heap)
        self.assertEqual(cm.exception.position, 4)
        self.assertEqual(cm.exception.reason, "invalid UTF-8")
        self.assertEqual(cm.exception.snippet, "\ufffd")
        self.assertEqual(self.heap.live_count(), 0)

    def test_invalid_utf8_position_counts_characters(self):
        with self.assertRaises(ParseError) as cm:
            parse("é ".encode("utf-8") + b"\xe9", self.heap)
        self.assertEqual(cm.exception.position, 2)

    def test_pure_literal_program_reserializes(self):
        src = "1 -2 30 400"
        prg = parse(src, self.heap)
        self.assertEqual(" ".join(render(v) for v in prg.items()), src)

    def test_unexpected_character_fails_with_position(self):
        with self.assertRaises(ParseError) as cm:
            parse("1 2 @oops", self.heap)
        self.assertEqual(cm.exception.position, 4)
        self.assertTrue(cm.exception.snippet.startswith("@oops"))

    def test_too_many_digits_fails(self):
        with self.assertRaises(ParseError) as cm:
            parse("12" + "9" * 130, self.heap)
        self.assertEqual(cm.exception.position, 0)

    def test_out_of_range_literal_fails(self):
        with self.assertRaises(ParseError):
            parse("99999999999999999999", self.heap)

    def test_largest_literals_accepted(self):
        prg = parse(f"{INT64_MAX} {INT64_MIN}", self.heap)
        self.assertEqual([v.payload for v in prg.items()], [INT64_MAX, INT64_MIN])

    def test_failed_parse_releases_partial_program(self):
        with self.assertRaises(ParseError):
            parse("1 2 + ?", self.heap)
        self.assertEqual(self.heap.live_count(), 0)

    def test_debug_hook_receives_progress(self):
        lines = []
        parse("1", self.heap, debug=lines.append)
        self.assertEqual(lines, ["compilation started", "compilation finished"])


def test_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    test_all()
