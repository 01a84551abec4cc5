#!/usr/bin/env python3
# postfix_host_repl.py
#
# REPL interactif pour le langage postfix :
# - un seul Context persistant ; chaque ligne est parsée puis exécutée dessus
# - la pile est affichée après chaque ligne : <n> v1 v2 ...
# - les lignes qui commencent par une dot-command (.stack, .ops, ...) sont
#   dispatchées vers Context.handle_dot_command
# - complétion (prompt_toolkit) des noms d'opérations et des dot-commands
#
# Tests intégrés :
#   python postfix_host_repl.py --test

from __future__ import annotations

import io
import sys
import unittest
from contextlib import redirect_stdout
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import CompleteEvent, Completer, Completion
from prompt_toolkit.document import Document
from prompt_toolkit.history import InMemoryHistory

from postfix_vm_core import DOT_CMDS, Config, Context

# .bye appartient au REPL : le Context ne sait pas quitter l'hôte
REPL_CMDS = DOT_CMDS | {".bye"}


class PostfixCompleter(Completer):
    """Complète les dot-commands en tête de ligne, sinon les noms d'opérations."""

    def __init__(self, ctx: Context) -> None:
        self.ctx = ctx

    def get_completions(self, document, complete_event):
        word_before = document.get_word_before_cursor(WORD=True)
        if not word_before:
            return
        start_pos = -len(word_before)
        head = document.text_before_cursor.lstrip()

        if head == word_before and word_before.startswith("."):
            for dc in sorted(REPL_CMDS):
                if dc.startswith(word_before):
                    yield Completion(dc, start_position=start_pos)

        for name in self.ctx.ops.names():
            if name.startswith(word_before):
                yield Completion(name, start_position=start_pos)


class PostfixREPL:
    def __init__(self, config: Optional[Config] = None) -> None:
        # les diagnostics du contexte passent par self.write -> sys.stdout courant
        self.ctx = Context(config, out=self)

    def write(self, text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    def _is_dot_command(self, line: str) -> bool:
        parts = line.split()
        return bool(parts) and parts[0] in REPL_CMDS

    def handle_line(self, line: str) -> None:
        """
        Traite une ligne saisie.
        Peut lever SystemExit pour .bye.
        """
        if not line.strip():
            return

        if self._is_dot_command(line):
            if line.split()[0] == ".bye":
                self.ctx.close()
                print("bye.")
                raise SystemExit(0)
            out = io.StringIO()
            self.ctx.handle_dot_command(line.strip(), out)
            self.write(out.getvalue())
            return

        self.ctx.run_source(line)
        out = io.StringIO()
        self.ctx.handle_dot_command(".stack", out)
        self.write(out.getvalue())

    def _print_help(self) -> None:
        print("Type postfix code (e.g. 3 4 +) to run it on the shared stack.")
        print("Dot-commands:")
        print("  .stack               - show the operand stack")
        print("  .ops                 - list registered operations")
        print("  .objects             - live value counts")
        print("  .clear               - empty the stack")
        print("  .debug [on|off]      - toggle verbose diagnostics")
        print("  .bye                 - exit REPL")

    def run(self) -> None:
        print("postfix REPL")
        self._print_help()
        session = PromptSession(completer=PostfixCompleter(self.ctx), history=InMemoryHistory())
        try:
            while True:
                try:
                    line = session.prompt(f"[{self.ctx.depth()}] postfix> ")
                except EOFError:
                    print("\nEOF -> quitting.")
                    break
                except KeyboardInterrupt:
                    print("\nKeyboardInterrupt (Ctrl-C). Use .bye to exit.")
                    continue
                try:
                    self.handle_line(line)
                except SystemExit:
                    return
        finally:
            self.ctx.close()


def main() -> None:
    repl = PostfixREPL()
    repl.run()


# ======================================================================
# Tests intégrés (python postfix_host_repl.py --test)
# ======================================================================

class TestPostfixREPL(unittest.TestCase):
    def setUp(self):
        # On ne lance pas repl.run(), on utilise uniquement l'API interne
        self.repl = PostfixREPL()

    def tearDown(self):
        self.repl.ctx.close()

    def feed(self, line: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.repl.handle_line(line)
        return buf.getvalue()

    def test_stack_persists_across_lines(self):
        self.assertEqual(self.feed("3 4"), "<2> 3 4 \n")
        self.assertEqual(self.feed("+"), "<1> 7 \n")

    def test_error_is_reported_and_stack_kept(self):
        self.feed("1")
        out = self.feed("foo")
        self.assertIn("unknown operation: foo", out)
        self.assertIn("<1> 1", out)

    def test_parse_error_is_reported(self):
        out = self.feed("1 $")
        self.assertIn("unexpected token", out)
        self.assertIn("<0>", out)

    def test_dot_command_dispatch(self):
        out = self.feed(".ops")
        self.assertIn("dup", out)

    def test_blank_line_is_ignored(self):
        self.assertEqual(self.feed("   "), "")

    def test_bye_raises_systemexit_and_closes(self):
        with self.assertRaises(SystemExit):
            self.feed(".bye")
        self.assertTrue(self.repl.ctx.closed)
        self.assertEqual(self.repl.ctx.heap.live_count(), 0)

    def test_symbol_starting_with_dot_is_code(self):
        out = self.feed(".x")
        self.assertIn("unknown operation: .x", out)


class TestPostfixCompleter(unittest.TestCase):
    def setUp(self):
        self.ctx = Context(out=io.StringIO())
        self.completer = PostfixCompleter(self.ctx)

    def tearDown(self):
        self.ctx.close()

    def complete(self, text: str):
        doc = Document(text, cursor_position=len(text))
        return [c.text for c in self.completer.get_completions(doc, CompleteEvent())]

    def test_completes_operation_names(self):
        self.assertEqual(self.complete("5 d"), ["dup"])

    def test_completes_dot_commands_at_line_start(self):
        self.assertIn(".stack", self.complete(".st"))
        self.assertEqual(self.complete("1 .st"), [])

    def test_completes_bye(self):
        self.assertEqual(self.complete(".by"), [".bye"])

    def test_nothing_after_space(self):
        self.assertEqual(self.complete("1 "), [])


if __name__ == "__main__":
    if "--test" in sys.argv:
        sys.argv = [sys.argv[0]]
        unittest.main()
    else:
        main()
