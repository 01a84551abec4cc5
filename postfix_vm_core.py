#!/usr/bin/env python3
# postfix_vm_core.py
#
# Noyau d'exécution du langage postfix :
# - OperationTable : nom -> implémentation (register / lookup, remplacement en place)
# - Context : pile d'opérandes (LIST) + table d'opérations + heap de valeurs
# - exec : boucle d'évaluation du programme parsé
# - primitives : + - * / % dup
# - dot-commands (.stack, .ops, .objects, ...) utilisées par le REPL
#
# Tests intégrés :
#   python postfix_vm_core.py

from __future__ import annotations

import io
import sys
import unittest
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Union

from postfix_parser import ParseError, parse
from postfix_values import (
    INT64_MAX, INT64_MIN, PostfixError, Value, ValueHeap, VKind,
    equal_text, list_append, list_pop, release, render, retain,
)

DOT_CMDS = {".clear", ".debug", ".help", ".objects", ".ops", ".stack"}


# ============================================================
# Erreurs d'exécution
# ============================================================

class ExecError(PostfixError): ...


class StackUnderflow(ExecError):
    def __init__(self, opname: str, needed: int, depth: int) -> None:
        self.opname = opname
        self.needed = needed
        self.depth = depth
        super().__init__(f"stack underflow in {opname}: needs {needed}, stack has {depth}")


class TypeMismatch(ExecError):
    def __init__(self, opname: str, expected: VKind, got: VKind) -> None:
        self.opname = opname
        self.expected = expected
        self.got = got
        super().__init__(f"{opname} expects {expected.value}, got {got.value}")


class UnknownOperation(ExecError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"unknown operation: {name}")


class DivisionByZero(ExecError):
    def __init__(self, opname: str) -> None:
        self.opname = opname
        super().__init__(f"division by zero in {opname}")


# ============================================================
# Configuration
# ============================================================

@dataclass
class Config:
    verbose: bool = False


class ContextState(Enum):
    READY  = "READY"
    HALTED = "HALTED"


# ============================================================
# Table d'opérations
# ============================================================

Prim = Callable[["Context"], None]


@dataclass
class Operation:
    name: Value          # STR, possédée par la table
    prim: Prim
    doc: str = ""

    @property
    def label(self) -> str:
        return self.name.payload


class OperationTable:
    """
    Ordered name -> Operation mapping.

    Names are kept as STR values owned by the table, and matched against
    SYMBOL values with equal_text(). Registering an existing name replaces
    its implementation in place, so at most one entry exists per name.
    """

    def __init__(self, heap: ValueHeap) -> None:
        self.heap = heap
        self._entries: List[Operation] = []

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, name: str, prim: Prim, *, doc: str = "") -> Operation:
        key = self.heap.new_string(name)
        op = self.lookup(key)
        if op is None:
            op = Operation(key, prim, doc)
            self._entries.append(op)
            return op
        op.prim = prim
        if doc:
            op.doc = doc
        release(key)
        return op

    def lookup(self, name: Value) -> Optional[Operation]:
        for op in self._entries:
            if equal_text(op.name, name):
                return op
        return None

    def find(self, name: str) -> Optional[Operation]:
        key = self.heap.new_symbol(name)
        try:
            return self.lookup(key)
        finally:
            release(key)

    def names(self) -> List[str]:
        return [op.label for op in self._entries]

    def operations(self) -> List[Operation]:
        return list(self._entries)

    def close(self) -> None:
        entries, self._entries = self._entries, []
        for op in entries:
            release(op.name)


# ============================================================
# Arithmétique entière (sémantique machine 64 bits)
# ============================================================

def _trunc_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


def _trunc_mod(a: int, b: int) -> int:
    return a - b * _trunc_div(a, b)


ARITH = {
    "+": lambda a, b: a + b,
    "-": lambda a, b: a - b,
    "*": lambda a, b: a * b,
    "/": _trunc_div,
    "%": _trunc_mod,
}


# ============================================================
# Contexte d'exécution
# ============================================================

class Context:
    def __init__(self, config: Optional[Config] = None, *, out: Optional[Any] = None,
                 heap: Optional[ValueHeap] = None) -> None:
        self.config: Config = config if config is not None else Config()
        # Sortie des diagnostics
        self.out = out if out is not None else sys.stderr
        self.heap: ValueHeap = heap if heap is not None else ValueHeap()
        self.stack: Value = self.heap.new_list()
        self.ops = OperationTable(self.heap)
        self.state = ContextState.READY
        self.closed = False

        self._install_core()

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---- Diagnostics ----
    def emit(self, text: str) -> None:
        """Point central de sortie texte."""
        self.out.write(text)

    def debug(self, msg: str) -> None:
        if self.config.verbose:
            self.emit(f"debug: {msg}\n")

    # ---- Stack ----
    def depth(self) -> int:
        return self.stack.length()

    def push(self, v: Value) -> None:
        """Push v; the stack takes over the caller's reference."""
        list_append(self.stack, v)

    def pop(self, opname: str = "pop") -> Value:
        v = list_pop(self.stack)
        if v is None:
            raise StackUnderflow(opname, 1, 0)
        return v

    def peek(self, n: int = 0) -> Value:
        return self.stack.payload[-1 - n]

    def require(self, opname: str, n: int) -> None:
        if self.depth() < n:
            raise StackUnderflow(opname, n, self.depth())

    def stack_values(self) -> List[Any]:
        return self.stack.to_py()

    def clear_stack(self) -> None:
        while self.depth():
            release(self.pop())

    # ---- Operations ----
    def register(self, name: str, prim: Prim, *, doc: str = "") -> Operation:
        return self.ops.register(name, prim, doc=doc)

    def _install_core(self) -> None:
        def addp(name, prim, *, doc=""):
            return self.register(name, prim, doc=doc)

        def binary(name: str):
            fn = ARITH[name]
            def prim(vm: Context) -> None:
                vm.require(name, 2)
                b, a = vm.peek(0), vm.peek(1)
                for o in (a, b):
                    if o.kind is not VKind.INT:
                        raise TypeMismatch(name, VKind.INT, o.kind)
                if name in "/%" and b.payload == 0:
                    raise DivisionByZero(name)
                b = vm.pop(name); a = vm.pop(name)
                result = vm.heap.new_integer(fn(a.payload, b.payload))
                release(a); release(b)
                vm.push(result)
            return prim

        for name in ("+", "-", "*", "/", "%"):
            addp(name, binary(name), doc=f"( a b -- a{name}b )")

        def prim_DUP(vm: Context) -> None:
            vm.require("dup", 1)
            vm.push(retain(vm.peek()))
        addp("dup", prim_DUP, doc="( x -- x x ) shares x")

    # ---- Evaluation ----
    def exec(self, program: Value) -> None:
        """
        Run the parsed program once, left to right.

        Literals are pushed with a shared reference; symbols are looked up
        and invoked. The first error propagates and leaves the stack as it
        was at that point.
        """
        if not isinstance(program, Value) or program.kind is not VKind.LIST:
            raise TypeError("exec expects a LIST program")
        try:
            for word in program.items():
                if word.kind is VKind.SYMBOL:
                    op = self.ops.lookup(word)
                    if op is None:
                        raise UnknownOperation(word.payload)
                    self.debug(f"call {word.payload}")
                    op.prim(self)
                else:
                    self.push(retain(word))
        finally:
            self.state = ContextState.HALTED

    def run(self, program: Value) -> bool:
        try:
            self.exec(program)
        except ExecError as e:
            self.emit(f"Error: {e}\n")
            return False
        return True

    def run_source(self, text: Union[str, bytes]) -> bool:
        """Parse text with this context's heap, run it, release the program."""
        try:
            program = parse(text, self.heap, debug=self.debug)
        except ParseError as e:
            self.emit(f"{e}\n")
            return False
        try:
            return self.run(program)
        finally:
            release(program)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        release(self.stack)
        self.ops.close()

    # ---- Dot-commands ----
    def _dotcmd_dispatch(self):
        return {
            ".help": self._dot_help,
            ".stack": self._dot_stack,
            ".ops": self._dot_ops,
            ".objects": self._dot_objects,
            ".clear": self._dot_clear,
            ".debug": self._dot_debug,
        }

    def _dot_help(self, args, out):
        out.write(".stack .ops .objects .clear [.debug on|off]\n")

    def _dot_stack(self, args, out):
        items = self.stack.payload
        out.write(f"<{len(items)}> " + " ".join(render(v) for v in items) + " \n")

    def _dot_ops(self, args, out):
        for op in self.ops.operations():
            out.write(f"{op.label:6s} {op.doc}\n")

    def _dot_objects(self, args, out):
        counts = self.heap.counts_by_kind()
        out.write(" | ".join(f"{k} {n}" for k, n in counts.items()) + "\n")
        out.write(f"LIVE {self.heap.live_count()} | ALLOC {self.heap.allocated} | FREED {self.heap.freed_count}\n")

    def _dot_clear(self, args, out):
        self.clear_stack()

    def _dot_debug(self, args, out):
        if args:
            self.config.verbose = args[0].lower() in ("on", "1", "true")
        out.write(f"debug={'on' if self.config.verbose else 'off'}\n")

    def handle_dot_command(self, line: str, out):
        parts = line.split()
        if not parts:
            return
        cmd, args = parts[0], parts[1:]
        h = self._dotcmd_dispatch().get(cmd)
        if not h:
            out.write(f"unknown dot-cmd: {cmd}\n")
            return
        h(args, out)


####################################################################
# Tests

class TestOperationTable(unittest.TestCase):
    def setUp(self) -> None:
        self.heap = ValueHeap()
        self.table = OperationTable(self.heap)

    def test_register_and_lookup(self):
        prim = lambda vm: None
        self.table.register("swap", prim)
        sym = self.heap.new_symbol("swap")
        self.assertIs(self.table.lookup(sym).prim, prim)
        self.assertIsNone(self.table.find("nope"))

    def test_reregistration_replaces_in_place(self):
        first = lambda vm: None
        second = lambda vm: None
        self.table.register("x", first)
        self.table.register("y", first)
        self.table.register("x", second)
        self.assertEqual(self.table.names(), ["x", "y"])
        self.assertIs(self.table.find("x").prim, second)

    def test_close_releases_names(self):
        self.table.register("a", lambda vm: None)
        self.table.register("a", lambda vm: None)
        self.table.close()
        self.assertEqual(self.heap.live_count(), 0)


class TestBuiltins(unittest.TestCase):
    def setUp(self) -> None:
        self.err = io.StringIO()
        self.ctx = Context(out=self.err)

    def tearDown(self) -> None:
        self.ctx.close()

    def run_src(self, src: str) -> bool:
        return self.ctx.run_source(src)

    def test_builtins_are_registered(self):
        self.assertEqual(self.ctx.ops.names(), ["+", "-", "*", "/", "%", "dup"])

    def test_arithmetic(self):
        cases = {"3 4 +": 7, "10 3 -": 7, "6 7 *": 42, "7 2 /": 3, "7 2 %": 1}
        for src, expected in cases.items():
            with Context(out=self.err) as ctx:
                self.assertTrue(ctx.run_source(src), src)
                self.assertEqual(ctx.stack_values(), [expected], src)

    def test_division_truncates_toward_zero(self):
        self.assertTrue(self.run_src("-7 2 / -7 2 %"))
        self.assertEqual(self.ctx.stack_values(), [-3, -1])

    def test_results_wrap_to_64_bits(self):
        self.assertTrue(self.run_src(f"{INT64_MAX} 1 + {INT64_MIN} -1 /"))
        self.assertEqual(self.ctx.stack_values(), [INT64_MIN, INT64_MIN])

    def test_dup_then_add(self):
        self.assertTrue(self.run_src("5 dup +"))
        self.assertEqual(self.ctx.stack_values(), [10])

    def test_dup_shares_value(self):
        self.assertTrue(self.run_src("5 dup"))
        a, b = self.ctx.stack.items()
        self.assertIs(a, b)
        self.assertEqual(a.refcount, 2)

    def test_dup_on_empty_stack_underflows(self):
        with self.assertRaises(StackUnderflow):
            prg = parse("dup", self.ctx.heap)
            try:
                self.ctx.exec(prg)
            finally:
                release(prg)
        self.assertEqual(self.ctx.stack_values(), [])

    def test_add_without_operands_underflows(self):
        self.assertFalse(self.run_src("+"))
        self.assertEqual(self.ctx.stack_values(), [])
        self.assertIn("underflow", self.err.getvalue())

    def test_add_with_one_operand_leaves_it(self):
        self.assertFalse(self.run_src("4 +"))
        self.assertEqual(self.ctx.stack_values(), [4])

    def test_division_by_zero_is_typed_error(self):
        for src in ("1 0 /", "1 0 %"):
            with Context(out=self.err) as ctx:
                prg = parse(src, ctx.heap)
                with self.assertRaises(DivisionByZero):
                    ctx.exec(prg)
                release(prg)
                self.assertEqual(ctx.stack_values(), [1, 0])

    def test_type_mismatch_keeps_operands(self):
        self.ctx.push(self.ctx.heap.new_boolean(True))
        self.ctx.push(self.ctx.heap.new_integer(1))
        self.assertFalse(self.run_src("+"))
        self.assertEqual(self.ctx.stack_values(), [True, 1])
        self.assertIn("expects INT", self.err.getvalue())

    def test_custom_registration_replaces_builtin(self):
        def prim_ZERO(vm):
            vm.require("+", 2)
            release(vm.pop()); release(vm.pop())
            vm.push(vm.heap.new_integer(0))
        self.ctx.register("+", prim_ZERO)
        self.assertTrue(self.run_src("3 4 +"))
        self.assertEqual(self.ctx.stack_values(), [0])
        self.assertEqual(self.ctx.ops.names().count("+"), 1)


class TestExecLoop(unittest.TestCase):
    def setUp(self) -> None:
        self.err = io.StringIO()

    def test_literal_program_leaves_literals_in_order(self):
        with Context(out=self.err) as ctx:
            self.assertTrue(ctx.run_source("1 -2 3 40"))
            self.assertEqual(ctx.stack_values(), [1, -2, 3, 40])

    def test_unknown_operation_stops_after_pushing(self):
        with Context(out=self.err) as ctx:
            prg = parse("3 foo 4", ctx.heap)
            with self.assertRaises(UnknownOperation) as cm:
                ctx.exec(prg)
            self.assertEqual(cm.exception.name, "foo")
            self.assertEqual(ctx.stack_values(), [3])
            release(prg)

    def test_failure_stops_processing(self):
        with Context(out=self.err) as ctx:
            self.assertFalse(ctx.run_source("1 + 2 3"))
            self.assertEqual(ctx.stack_values(), [1])

    def test_state_goes_ready_to_halted(self):
        with Context(out=self.err) as ctx:
            self.assertIs(ctx.state, ContextState.READY)
            ctx.run_source("1")
            self.assertIs(ctx.state, ContextState.HALTED)

    def test_exec_requires_list(self):
        with Context(out=self.err) as ctx:
            v = ctx.heap.new_integer(1)
            with self.assertRaises(TypeError):
                ctx.exec(v)
            release(v)

    def test_literals_pushed_with_shared_ownership(self):
        with Context(out=self.err) as ctx:
            prg = parse("9", ctx.heap)
            ctx.exec(prg)
            lit = prg.items()[0]
            self.assertEqual(lit.refcount, 2)
            release(prg)
            self.assertEqual(lit.refcount, 1)
            self.assertEqual(ctx.stack_values(), [9])

    def test_parse_error_is_reported(self):
        with Context(out=self.err) as ctx:
            self.assertFalse(ctx.run_source("1 ~"))
            self.assertIn("unexpected token", self.err.getvalue())
            self.assertEqual(ctx.stack_values(), [])

    def test_invalid_utf8_source_is_parse_error(self):
        ctx = Context(out=self.err, heap=ValueHeap(trace=True))
        self.assertFalse(ctx.run_source(b"3 \xe9"))
        self.assertIn("invalid UTF-8", self.err.getvalue())
        self.assertEqual(ctx.stack_values(), [])
        ctx.close()
        self.assertEqual(ctx.heap.live_count(), 0)

    def test_verbose_config_emits_debug_lines(self):
        with Context(Config(verbose=True), out=self.err) as ctx:
            ctx.run_source("1 2 +")
        out = self.err.getvalue()
        self.assertIn("debug: compilation started", out)
        self.assertIn("debug: call +", out)

    def test_quiet_config_emits_nothing_on_success(self):
        with Context(out=self.err) as ctx:
            ctx.run_source("1 2 +")
        self.assertEqual(self.err.getvalue(), "")


class TestLifetimeAccounting(unittest.TestCase):
    """Every value must be freed exactly once with releases - retains == 1."""

    def check_balanced(self, heap: ValueHeap) -> None:
        self.assertEqual(heap.live_count(), 0)
        self.assertEqual(heap.freed_count, heap.allocated)
        self.assertEqual(len(heap.freed), heap.allocated)
        for oid, retains, releases in heap.freed:
            self.assertEqual(releases - retains, 1, f"oid={oid}")

    def test_successful_programs_do_not_leak(self):
        for src in ("3 4 +", "5 dup + dup *", "1 2 3 4 5", "7 2 / 7 2 % -", ""):
            ctx = Context(out=io.StringIO(), heap=ValueHeap(trace=True))
            self.assertTrue(ctx.run_source(src), src)
            ctx.close()
            self.check_balanced(ctx.heap)

    def test_failing_programs_do_not_leak(self):
        for src in ("+", "3 foo", "dup", "1 0 /", "5 dup 0 %", "1 @"):
            ctx = Context(out=io.StringIO(), heap=ValueHeap(trace=True))
            self.assertFalse(ctx.run_source(src), src)
            ctx.close()
            self.check_balanced(ctx.heap)

    def test_long_session_keeps_no_free_log(self):
        ctx = Context(out=io.StringIO())
        for _ in range(200):
            ctx.run_source("1 2 +")
            ctx.handle_dot_command(".clear", io.StringIO())
        self.assertEqual(ctx.heap.freed, [])
        ctx.close()
        self.assertEqual(ctx.heap.freed_count, ctx.heap.allocated)

    def test_close_is_idempotent(self):
        ctx = Context(out=io.StringIO(), heap=ValueHeap(trace=True))
        ctx.close()
        ctx.close()
        self.check_balanced(ctx.heap)


class TestDotCommands(unittest.TestCase):
    def setUp(self) -> None:
        self.ctx = Context(out=io.StringIO())
        self.out = io.StringIO()

    def tearDown(self) -> None:
        self.ctx.close()

    def test_stack(self):
        self.ctx.run_source("1 2")
        self.ctx.handle_dot_command(".stack", self.out)
        self.assertEqual(self.out.getvalue(), "<2> 1 2 \n")

    def test_ops_lists_builtins(self):
        self.ctx.handle_dot_command(".ops", self.out)
        self.assertIn("dup", self.out.getvalue())

    def test_objects_counts(self):
        self.ctx.run_source("1 2")
        self.ctx.handle_dot_command(".objects", self.out)
        first = self.out.getvalue().splitlines()[0]
        self.assertIn("INT 2", first)
        self.assertIn("STR 6", first)

    def test_clear_releases_stack(self):
        self.ctx.run_source("1 2 3")
        self.ctx.handle_dot_command(".clear", self.out)
        self.assertEqual(self.ctx.stack_values(), [])
        self.assertEqual(self.ctx.heap.counts_by_kind()["INT"], 0)

    def test_debug_toggle(self):
        self.ctx.handle_dot_command(".debug on", self.out)
        self.assertTrue(self.ctx.config.verbose)
        self.ctx.handle_dot_command(".debug off", self.out)
        self.assertFalse(self.ctx.config.verbose)

    def test_unknown(self):
        self.ctx.handle_dot_command(".nope", self.out)
        self.assertIn("unknown dot-cmd", self.out.getvalue())

    def test_blank_line_writes_nothing(self):
        self.ctx.handle_dot_command("", self.out)
        self.ctx.handle_dot_command("   ", self.out)
        self.assertEqual(self.out.getvalue(), "")

    def test_bye_is_not_a_context_command(self):
        self.ctx.handle_dot_command(".bye", self.out)
        self.assertIn("unknown dot-cmd: .bye", self.out.getvalue())
        self.assertFalse(self.ctx.closed)


def test_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    test_all()
