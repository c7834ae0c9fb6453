# tests/test_oracle.py
"""
Tests for the alias oracles: the always-yes oracle and the escape oracle.
"""

from unittest.mock import MagicMock

from catflow.config import PassOptions
from catflow.ir import CallInst, Constant, IRType
from catflow.oracle import (
    AliasOracle,
    ConservativeOracle,
    EscapeOracle,
    conservative_factory,
    escape_factory,
)
from tests.conftest import ESCAPING_CELL_IR, only_function, parse, value_named


TWO_CELLS_IR = """
@g = global ptr

define ptr @f(i1 %c, ptr %arg) {
entry:
  %a = call ptr @create(i64 1)
  %b = call ptr @create(i64 2)
  %r = call ptr @create(i64 3)
  %p = alloca ptr
  %q = alloca ptr
  %s = alloca ptr
  store ptr %a, ptr %p
  store ptr %b, ptr %q
  store ptr %s, ptr @g
  call void @external(ptr %p)
  %m = select i1 %c, ptr %q, ptr %arg
  ret ptr %r
}
"""


def oracle_for(text, options=None):
    fn = only_function(parse(text))
    return fn, EscapeOracle(fn, options)


class TestConservativeOracle:

    def test_always_yes(self):
        oracle = ConservativeOracle()
        call = CallInst("anything")
        assert oracle.may_modify(call, Constant(0), 0)
        assert oracle.may_modify(call, MagicMock(), 8)

    def test_factory(self):
        assert isinstance(conservative_factory(MagicMock()), ConservativeOracle)

    def test_protocol(self):
        assert isinstance(ConservativeOracle(), AliasOracle)


class TestOrigins:

    def test_local_roots(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        p = value_named(fn, "p")
        a = value_named(fn, "a")
        assert oracle.origins(p) == frozenset({p})
        assert oracle.origins(a) == frozenset({a})

    def test_arguments_are_nonlocal(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        assert oracle.origins(value_named(fn, "arg")) == frozenset({None})

    def test_select_unions_inputs(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        m = value_named(fn, "m")
        assert oracle.origins(m) == frozenset({value_named(fn, "q"), None})

    def test_phi_cycle_terminates(self):
        fn, oracle = oracle_for("""
            define void @f(i1 %c) {
            entry:
              %p = alloca ptr
              br label %loop
            loop:
              %m = phi ptr [ %p, %entry ], [ %m, %loop ]
              br i1 %c, label %loop, label %exit
            exit:
              ret void
            }
        """)
        assert oracle.origins(value_named(fn, "m")) == frozenset(
            {value_named(fn, "p")}
        )


class TestEscapes:

    def test_passed_to_opaque_call(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        assert oracle.escapes(value_named(fn, "p"))

    def test_contents_of_escaped_cell(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        assert oracle.escapes(value_named(fn, "a"))

    def test_private_cell_does_not_escape(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        assert not oracle.escapes(value_named(fn, "q"))
        assert not oracle.escapes(value_named(fn, "b"))

    def test_returned_value(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        assert oracle.escapes(value_named(fn, "r"))

    def test_stored_into_global(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        assert oracle.escapes(value_named(fn, "s"))

    def test_globals_and_arguments_always_escape(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        assert oracle.escapes(value_named(fn, "arg"))
        assert oracle.escapes(fn.module.globals["g"])

    def test_loaded_value_escaping_marks_stored_values(self):
        fn, oracle = oracle_for("""
            define void @f() {
            entry:
              %a = call ptr @create(i64 1)
              %p = alloca ptr
              store ptr %a, ptr %p
              %b = load ptr, ptr %p
              call void @external(ptr %b)
              ret void
            }
        """)
        assert oracle.escapes(value_named(fn, "a"))
        assert not oracle.escapes(value_named(fn, "p"))

    def test_benign_and_cat_calls_do_not_leak(self):
        fn, oracle = oracle_for("""
            define void @f() {
            entry:
              %a = call ptr @create(i64 1)
              call void @printf(ptr %a)
              call void @write(ptr %a, i64 3)
              %x = call i64 @read(ptr %a)
              ret void
            }
        """)
        assert not oracle.escapes(value_named(fn, "a"))


class TestMayModify:

    def test_answers(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        call = fn.entry.instructions[9]
        assert call.callee == "external"
        assert oracle.may_modify(call, value_named(fn, "p"), 8)
        assert oracle.may_modify(call, value_named(fn, "a"), 0)
        assert not oracle.may_modify(call, value_named(fn, "q"), 8)
        assert not oracle.may_modify(call, value_named(fn, "b"), 0)
        assert oracle.may_modify(call, value_named(fn, "m"), 0)

    def test_readonly_callee(self):
        options = PassOptions(readonly_callees=frozenset({"external"}))
        fn, oracle = oracle_for(ESCAPING_CELL_IR, options)
        call = fn.entry.instructions[3]
        assert not oracle.may_modify(call, value_named(fn, "p"), 8)
        assert not oracle.may_modify(call, value_named(fn, "a"), 0)

    def test_factory_builds_one_oracle_per_function(self):
        module = parse(TWO_CELLS_IR)
        fn = module.get_function("f")
        factory = escape_factory(PassOptions())
        first, second = factory(fn), factory(fn)
        assert isinstance(first, EscapeOracle)
        assert first is not second
        assert first.fn is fn

    def test_unknown_location(self):
        fn, oracle = oracle_for(TWO_CELLS_IR)
        call = fn.entry.instructions[9]
        assert oracle.may_modify(call, Constant(0, IRType.PTR), 0)
