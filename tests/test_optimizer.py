# tests/test_optimizer.py
"""
Tests for constant folding, algebraic simplification and constant
propagation, end to end through the pass.
"""

import pytest

from catflow.config import OperationNames, PassOptions
from catflow.engine import DataflowEngine
from catflow.ir import Constant
from catflow.optimizer import OptimizationStats, Optimizer, wrap_int64
from catflow.oracle import ConservativeOracle
from tests.conftest import (
    ESCAPING_CELL_IR,
    FOLD_ADD_IR,
    LOOP_IR,
    PHI_DIFFERENT_CONSTANTS_IR,
    PHI_SAME_CONSTANT_IR,
    PRIVATE_CELL_IR,
    SELF_SUBTRACT_IR,
    calls_to,
    only_function,
    optimize,
    parse,
)


def lines_of(fn):
    return [str(i) for i in fn.instructions()]


def run_again(fn, options=None):
    options = options or PassOptions()
    ctx = DataflowEngine(options).analyze(fn, ConservativeOracle())
    return Optimizer(ctx).run()


class TestWrap:

    @pytest.mark.parametrize("value, expected", [
        (0, 0),
        (-1, -1),
        (2 ** 63 - 1, 2 ** 63 - 1),
        (2 ** 63, -(2 ** 63)),
        (-(2 ** 63) - 1, 2 ** 63 - 1),
        (2 ** 64 + 5, 5),
    ])
    def test_wrap_int64(self, value, expected):
        assert wrap_int64(value) == expected


class TestFolding:

    def test_fold_add_and_propagate(self):
        fn, changed, cat_pass = optimize(FOLD_ADD_IR)
        assert changed
        assert lines_of(fn) == [
            "%a = call ptr @create(i64 3)",
            "%b = call ptr @create(i64 4)",
            "call void @write(ptr %a, i64 7)",
            "call void @print(i64 7)",
            "ret void",
        ]
        stats = cat_pass.results[0].stats
        assert (stats.folded, stats.simplified, stats.propagated) == (1, 0, 1)

    def test_fold_subtract(self):
        fn, changed, _ = optimize("""
            define i64 @f() {
            entry:
              %a = call ptr @create(i64 0)
              %b = call ptr @create(i64 10)
              %c = call ptr @create(i64 4)
              call void @subtract(ptr %a, ptr %b, ptr %c)
              %x = call i64 @read(ptr %a)
              ret i64 %x
            }
        """)
        assert changed
        assert "call void @write(ptr %a, i64 6)" in lines_of(fn)
        assert lines_of(fn)[-1] == "ret i64 6"

    def test_fold_wraps(self):
        fn, _, _ = optimize("""
            define void @f() {
            entry:
              %a = call ptr @create(i64 9223372036854775807)
              %b = call ptr @create(i64 1)
              call void @add(ptr %a, ptr %a, ptr %b)
              ret void
            }
        """)
        assert "call void @write(ptr %a, i64 -9223372036854775808)" in lines_of(fn)

    def test_no_fold_with_unknown_operand(self):
        text = """
            define void @f(ptr %arg) {
            entry:
              %a = call ptr @create(i64 1)
              %b = call ptr @create(i64 2)
              call void @add(ptr %a, ptr %b, ptr %arg)
              ret void
            }
        """
        fn, changed, _ = optimize(text)
        assert not changed
        assert len(calls_to(fn, "add")) == 1

    def test_no_fold_on_conflicting_definitions(self):
        fn, changed, _ = optimize("""
            define void @f(i1 %c) {
            entry:
              %a = call ptr @create(i64 1)
              %b = call ptr @create(i64 2)
              br i1 %c, label %then, label %join
            then:
              call void @write(ptr %b, i64 3)
              br label %join
            join:
              call void @add(ptr %a, ptr %a, ptr %b)
              ret void
            }
        """)
        assert not changed
        assert len(calls_to(fn, "add")) == 1

    def test_cat_style_names(self):
        options = PassOptions(names=OperationNames.cat_style())
        fn, changed, _ = optimize("""
            define void @f() {
            entry:
              %a = call ptr @CAT_new(i64 3)
              %b = call ptr @CAT_new(i64 4)
              call void @CAT_add(ptr %a, ptr %a, ptr %b)
              %x = call i64 @CAT_get(ptr %a)
              call void @print(i64 %x)
              ret void
            }
        """, options)
        assert changed
        assert "call void @CAT_set(ptr %a, i64 7)" in lines_of(fn)
        assert "call void @print(i64 7)" in lines_of(fn)


class TestSimplification:

    def test_self_subtract(self):
        fn, changed, cat_pass = optimize(SELF_SUBTRACT_IR)
        assert changed
        assert lines_of(fn) == [
            "call void @write(ptr %a, i64 0)",
            "ret i64 0",
        ]
        assert cat_pass.results[0].stats.simplified == 1

    @pytest.mark.parametrize("args", ["ptr %z, ptr %arg", "ptr %arg, ptr %z"])
    def test_add_zero(self, args):
        fn, changed, _ = optimize(f"""
            define void @f(ptr %arg) {{
            entry:
              %a = call ptr @create(i64 5)
              %z = call ptr @create(i64 0)
              call void @add(ptr %a, {args})
              ret void
            }}
        """)
        assert changed
        assert lines_of(fn) == [
            "%a = call ptr @create(i64 5)",
            "%z = call ptr @create(i64 0)",
            "%val = call i64 @read(ptr %arg)",
            "call void @write(ptr %a, i64 %val)",
            "ret void",
        ]

    @pytest.mark.parametrize("args", ["ptr %z, ptr %arg", "ptr %arg, ptr %z"])
    def test_subtract_zero_is_left_alone(self, args):
        fn, changed, _ = optimize(f"""
            define void @f(ptr %arg) {{
            entry:
              %a = call ptr @create(i64 5)
              %z = call ptr @create(i64 0)
              call void @subtract(ptr %a, {args})
              ret void
            }}
        """)
        assert not changed
        assert len(calls_to(fn, "subtract")) == 1

    def test_both_operands_zero_folds(self):
        fn, _, _ = optimize("""
            define void @f() {
            entry:
              %a = call ptr @create(i64 5)
              %z = call ptr @create(i64 0)
              call void @add(ptr %a, ptr %z, ptr %z)
              ret void
            }
        """)
        assert "call void @write(ptr %a, i64 0)" in lines_of(fn)
        assert calls_to(fn, "read") == []


class TestPropagation:

    def test_phi_with_equal_constants(self):
        fn, changed, _ = optimize(PHI_SAME_CONSTANT_IR)
        assert changed
        assert calls_to(fn, "read") == []
        assert str(fn.block_named("join").terminator) == "ret i64 5"

    def test_phi_with_different_constants(self):
        fn, changed, cat_pass = optimize(PHI_DIFFERENT_CONSTANTS_IR)
        assert changed
        reads = calls_to(fn, "read")
        assert [r.name for r in reads] == ["x"]
        assert cat_pass.results[0].stats.propagated == 2

    def test_private_cell_is_propagated(self):
        fn, changed, _ = optimize(PRIVATE_CELL_IR)
        assert changed
        assert "call void @print(i64 1)" in lines_of(fn)

    @pytest.mark.parametrize("conservative", [False, True])
    def test_escaping_cell_blocks_propagation(self, conservative):
        fn, changed, _ = optimize(ESCAPING_CELL_IR, conservative=conservative)
        assert not changed
        assert len(calls_to(fn, "read")) == 1

    def test_readonly_callee_allows_propagation(self):
        options = PassOptions(readonly_callees=frozenset({"external"}))
        fn, changed, _ = optimize(ESCAPING_CELL_IR, options)
        assert changed
        assert "call void @print(i64 1)" in lines_of(fn)

    def test_loop_blocks_propagation(self):
        fn, changed, _ = optimize(LOOP_IR)
        assert not changed
        assert len(calls_to(fn, "read")) == 1

    def test_loop_with_same_value_propagates(self):
        fn, changed, _ = optimize(LOOP_IR.replace("i64 1)", "i64 0)"))
        assert changed
        assert calls_to(fn, "read") == []

    def test_opaque_definition_blocks_propagation(self):
        fn, changed, _ = optimize("""
            define i64 @f() {
            entry:
              %r = call ptr @make()
              %x = call i64 @read(ptr %r)
              ret i64 %x
            }
        """)
        assert not changed

    def test_unconverged_facts_are_not_used(self, caplog):
        options = PassOptions(max_iterations=1)
        fn, changed, cat_pass = optimize(PHI_SAME_CONSTANT_IR, options)
        assert not changed
        assert not cat_pass.results[0].converged
        assert len(calls_to(fn, "read")) == 1
        assert "did not converge" in caplog.text

    def test_write_of_non_constant_blocks_propagation(self):
        fn, changed, _ = optimize("""
            define i64 @f(i64 %n) {
            entry:
              %a = call ptr @create(i64 1)
              call void @write(ptr %a, i64 %n)
              %x = call i64 @read(ptr %a)
              ret i64 %x
            }
        """)
        assert not changed


class TestIdempotence:

    @pytest.mark.parametrize("text", [
        FOLD_ADD_IR,
        SELF_SUBTRACT_IR,
        PHI_SAME_CONSTANT_IR,
        PHI_DIFFERENT_CONSTANTS_IR,
        PRIVATE_CELL_IR,
    ])
    def test_second_run_changes_nothing(self, text):
        fn, _, _ = optimize(text)
        before = lines_of(fn)
        assert not run_again(fn)
        assert lines_of(fn) == before

    def test_rewritten_function_still_verifies(self):
        fn, _, _ = optimize(FOLD_ADD_IR)
        assert fn.verify() == []


class TestOptimizerApi:

    def test_constant_of(self):
        fn = only_function(parse(FOLD_ADD_IR))
        ctx = DataflowEngine().analyze(fn, ConservativeOracle())
        optimizer = Optimizer(ctx)
        add = calls_to(fn, "add")[0]
        a, b = add.arg(1), add.arg(2)
        assert optimizer.constant_of(add, a) == 3
        assert optimizer.constant_of(add, b) == 4
        assert optimizer.constant_of(add, Constant(1)) is None

    def test_stats_total(self):
        assert OptimizationStats(1, 2, 3).total == 6

    def test_fold_only(self):
        fn = only_function(parse(FOLD_ADD_IR))
        ctx = DataflowEngine().analyze(fn, ConservativeOracle())
        optimizer = Optimizer(ctx)
        assert optimizer.fold_and_simplify()
        assert calls_to(fn, "add") == []
        assert len(calls_to(fn, "read")) == 1
