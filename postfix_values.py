#!/usr/bin/env python3
# postfix_values.py
#
# Modèle d'objets du langage postfix :
# - Value : variante taguée (INT, BOOL, STR, SYMBOL, LIST) avec refcount
# - ValueHeap : allocateur instrumenté (oids, compteurs retain/release)
# - retain / release / list_append / equal_text / render
#
# Tests intégrés :
#   python postfix_values.py

from __future__ import annotations

import sys
import unittest
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1


class PostfixError(RuntimeError):
    """Base class for every error raised by the interpreter."""


class RefCountError(PostfixError):
    """Lifetime contract violation (release of a dead value, use after free)."""


class VKind(Enum):
    INT    = "INT"
    BOOL   = "BOOL"
    STR    = "STR"
    SYMBOL = "SYMBOL"
    LIST   = "LIST"


TEXT_KINDS = (VKind.STR, VKind.SYMBOL)


def wrap_i64(n: int) -> int:
    """Fold an arbitrary Python int into the signed 64-bit range."""
    n &= (1 << 64) - 1
    return n - (1 << 64) if n > INT64_MAX else n


@dataclass(eq=False)
class Value:
    kind: VKind
    payload: Any
    oid: int
    heap: "ValueHeap" = field(repr=False)
    refcount: int = 1

    def __repr__(self) -> str:
        return f"VAL[{self.kind.value}:{self.oid} rc={self.refcount}] {render(self)}"

    @property
    def alive(self) -> bool:
        return self.refcount > 0

    def is_text(self) -> bool:
        return self.kind in TEXT_KINDS

    def items(self) -> List["Value"]:
        if self.kind is not VKind.LIST:
            raise TypeError(f"items() on {self.kind.value}")
        return list(self.payload)

    def length(self) -> int:
        if self.kind is VKind.LIST or self.kind in TEXT_KINDS:
            return len(self.payload)
        raise TypeError(f"length() on {self.kind.value}")

    def to_py(self) -> Any:
        """Plain Python view: int, bool, str, or list (recursively)."""
        if self.kind is VKind.LIST:
            return [v.to_py() for v in self.payload]
        return self.payload


@dataclass
class _Trace:
    retains: int = 0
    releases: int = 0


class ValueHeap:
    """
    Allocateur instrumenté pour les Value.

    Chaque valeur reçoit un oid ; le heap compte les allocations, les
    libérations, et pour chaque oid le nombre de retain/release reçus.
    `freed_count` compte les libérations. Le journal `freed` des paires
    (oid, retains, releases) n'est tenu que si trace=True (tests) : un heap
    de session REPL ne doit pas grossir avec les valeurs mortes.
    """

    def __init__(self, *, trace: bool = False) -> None:
        self.trace: bool = trace
        self._next_oid: int = 1
        self._live: Dict[int, Value] = {}
        self._trace: Dict[int, _Trace] = {}
        self.allocated: int = 0
        self.freed_count: int = 0
        self.freed: List[Tuple[int, int, int]] = []  # (oid, retains, releases)

    # ---- Allocation ----
    def _alloc(self, kind: VKind, payload: Any) -> Value:
        oid = self._next_oid; self._next_oid += 1
        v = Value(kind, payload, oid, self)
        self._live[oid] = v
        self._trace[oid] = _Trace()
        self.allocated += 1
        return v

    def new_integer(self, i: int) -> Value:
        return self._alloc(VKind.INT, wrap_i64(int(i)))

    def new_boolean(self, b: bool) -> Value:
        return self._alloc(VKind.BOOL, bool(b))

    def new_string(self, text: str) -> Value:
        return self._alloc(VKind.STR, _as_text(text))

    def new_symbol(self, text: str) -> Value:
        return self._alloc(VKind.SYMBOL, _as_text(text))

    def new_list(self) -> Value:
        return self._alloc(VKind.LIST, [])

    # ---- Lifetime ----
    def retain(self, v: Value) -> Value:
        self._check_owned(v, "retain")
        if v.refcount <= 0:
            raise RefCountError(f"retain on freed value oid={v.oid}")
        v.refcount += 1
        self._trace[v.oid].retains += 1
        return v

    def release(self, v: Value) -> None:
        self._check_owned(v, "release")
        # itératif : une longue liste ne doit pas épuiser la pile Python
        pending = [v]
        while pending:
            o = pending.pop()
            if o.refcount <= 0:
                raise RefCountError(f"release on freed value oid={o.oid}")
            o.refcount -= 1
            self._trace[o.oid].releases += 1
            if o.refcount == 0:
                if o.kind is VKind.LIST:
                    pending.extend(reversed(o.payload))
                    o.payload = []
                self._free(o)

    def _free(self, o: Value) -> None:
        tr = self._trace.pop(o.oid)
        del self._live[o.oid]
        self.freed_count += 1
        if self.trace:
            self.freed.append((o.oid, tr.retains, tr.releases))

    def _check_owned(self, v: Value, opname: str) -> None:
        if not isinstance(v, Value):
            raise TypeError(f"{opname} expects Value, got {type(v).__name__}")
        if v.heap is not self:
            raise RefCountError(f"{opname}: value oid={v.oid} belongs to another heap")

    # ---- Introspection ----
    def live_count(self) -> int:
        return len(self._live)

    def live_values(self) -> List[Value]:
        return [self._live[oid] for oid in sorted(self._live)]

    def counts_by_kind(self) -> Dict[str, int]:
        counts = {k.value: 0 for k in VKind}
        for v in self._live.values():
            counts[v.kind.value] += 1
        return counts

    def trace_of(self, v: Value) -> Optional[Tuple[int, int]]:
        tr = self._trace.get(v.oid)
        return None if tr is None else (tr.retains, tr.releases)


def _as_text(text) -> str:
    if isinstance(text, (bytes, bytearray)):
        return bytes(text).decode("utf-8")
    if not isinstance(text, str):
        raise TypeError(f"expected str or bytes, got {type(text).__name__}")
    return text


# ---- Helpers (API fonctionnelle) ----
def retain(v: Value) -> Value:
    return v.heap.retain(v)


def release(v: Value) -> None:
    v.heap.release(v)


def list_append(lst: Value, v: Value) -> None:
    """Append v to lst; the list takes over the caller's reference."""
    if not isinstance(lst, Value) or lst.kind is not VKind.LIST:
        raise TypeError("list_append expects a LIST value")
    if not lst.alive:
        raise RefCountError(f"list_append on freed list oid={lst.oid}")
    if v is lst:
        raise ValueError("a list cannot contain itself")
    if v.heap is not lst.heap:
        raise RefCountError(f"list_append: value oid={v.oid} belongs to another heap")
    lst.payload.append(v)


def list_pop(lst: Value) -> Optional[Value]:
    """Remove the last element and hand its reference to the caller."""
    if lst.kind is not VKind.LIST:
        raise TypeError("list_pop expects a LIST value")
    if not lst.payload:
        return None
    return lst.payload.pop()


def equal_text(a: Value, b: Value) -> bool:
    if not (a.is_text() and b.is_text()):
        raise TypeError(f"equal_text expects STR/SYMBOL, got {a.kind.value}/{b.kind.value}")
    return len(a.payload) == len(b.payload) and a.payload == b.payload


def render(v: Value) -> str:
    k = v.kind
    if k is VKind.SYMBOL: return v.payload
    if k is VKind.STR:    return f'"{v.payload}"'
    if k is VKind.INT:    return str(v.payload)
    if k is VKind.BOOL:   return "true" if v.payload else "false"
    if k is VKind.LIST:
        return "[" + ",".join(render(e) for e in v.payload) + "]"
    return f"<unexpected object type {k!r}>"


####################################################################
# Tests

class TestValueConstruction(unittest.TestCase):
    def setUp(self) -> None:
        self.heap = ValueHeap()

    def test_new_values_start_with_refcount_one(self):
        for v in (self.heap.new_integer(3), self.heap.new_boolean(True),
                  self.heap.new_string("abc"), self.heap.new_symbol("dup"),
                  self.heap.new_list()):
            self.assertEqual(v.refcount, 1)
        self.assertEqual(self.heap.live_count(), 5)

    def test_boolean_is_distinct_from_integer(self):
        b = self.heap.new_boolean(1)
        i = self.heap.new_integer(1)
        self.assertIs(b.kind, VKind.BOOL)
        self.assertIs(i.kind, VKind.INT)
        self.assertEqual(render(b), "true")

    def test_integer_wraps_to_64_bits(self):
        self.assertEqual(self.heap.new_integer(INT64_MAX + 1).payload, INT64_MIN)
        self.assertEqual(self.heap.new_integer(-1).payload, -1)

    def test_string_from_bytes_keeps_length(self):
        s = self.heap.new_string(b"he\x00llo")
        self.assertEqual(s.length(), 6)

    def test_render_like_object_printer(self):
        lst = self.heap.new_list()
        list_append(lst, self.heap.new_integer(1))
        list_append(lst, self.heap.new_symbol("+"))
        list_append(lst, self.heap.new_string("x"))
        self.assertEqual(render(lst), '[1,+,"x"]')


class TestRefCounting(unittest.TestCase):
    def setUp(self) -> None:
        self.heap = ValueHeap(trace=True)

    def test_release_to_zero_frees(self):
        v = self.heap.new_integer(7)
        retain(v)
        release(v)
        self.assertEqual(self.heap.live_count(), 1)
        release(v)
        self.assertEqual(self.heap.live_count(), 0)
        self.assertEqual(self.heap.freed, [(v.oid, 1, 2)])

    def test_double_release_raises(self):
        v = self.heap.new_symbol("foo")
        release(v)
        with self.assertRaises(RefCountError):
            release(v)

    def test_list_release_cascades_to_elements(self):
        lst = self.heap.new_list()
        shared = self.heap.new_integer(5)
        list_append(lst, shared)
        list_append(lst, retain(shared))
        inner = self.heap.new_list()
        list_append(inner, self.heap.new_string("deep"))
        list_append(lst, inner)
        release(lst)
        self.assertEqual(self.heap.live_count(), 0)
        for _oid, retains, releases in self.heap.freed:
            self.assertEqual(releases - retains, 1)

    def test_element_kept_alive_by_second_owner(self):
        lst = self.heap.new_list()
        v = self.heap.new_integer(1)
        list_append(lst, retain(v))
        release(lst)
        self.assertTrue(v.alive)
        self.assertEqual(v.refcount, 1)
        release(v)
        self.assertEqual(self.heap.live_count(), 0)

    def test_untraced_heap_only_counts_frees(self):
        heap = ValueHeap()
        for i in range(100):
            release(heap.new_integer(i))
        self.assertEqual(heap.freed_count, 100)
        self.assertEqual(heap.freed, [])
        self.assertEqual(heap.live_count(), 0)

    def test_list_cannot_contain_itself(self):
        lst = self.heap.new_list()
        with self.assertRaises(ValueError):
            list_append(lst, lst)

    def test_foreign_heap_rejected(self):
        other = ValueHeap()
        v = other.new_integer(1)
        with self.assertRaises(RefCountError):
            self.heap.release(v)

    def test_long_list_release_is_iterative(self):
        lst = self.heap.new_list()
        for i in range(50000):
            list_append(lst, self.heap.new_integer(i))
        release(lst)
        self.assertEqual(self.heap.live_count(), 0)


class TestEqualText(unittest.TestCase):
    def setUp(self) -> None:
        self.heap = ValueHeap()

    def test_string_and_symbol_compare_by_content(self):
        self.assertTrue(equal_text(self.heap.new_string("dup"), self.heap.new_symbol("dup")))
        self.assertFalse(equal_text(self.heap.new_string("dup"), self.heap.new_symbol("du")))

    def test_non_text_is_contract_violation(self):
        with self.assertRaises(TypeError):
            equal_text(self.heap.new_integer(1), self.heap.new_symbol("x"))


def test_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    test_all()
