# tests/conftest.py
"""
Shared fixtures and IR snippets for the catflow test-suite.

The snippets are complete modules in textual IR; tests parse them with
:func:`parse` and inspect or optimise the result.
"""

import logging
import textwrap
from typing import List, Optional

import pytest

from catflow.config import PassOptions
from catflow.ir import CallInst, Function, Module
from catflow.ir_parser import parse_module
from catflow.oracle import conservative_factory, escape_factory
from catflow.passes import CatPass


# ═══════════════════════════════════════════════════════════════════
#  IR SNIPPETS
# ═══════════════════════════════════════════════════════════════════

FOLD_ADD_IR = """
define void @f() {
entry:
  %a = call ptr @create(i64 3)
  %b = call ptr @create(i64 4)
  call void @add(ptr %a, ptr %a, ptr %b)
  %x = call i64 @read(ptr %a)
  call void @print(i64 %x)
  ret void
}
"""

SELF_SUBTRACT_IR = """
define i64 @f(ptr %a, ptr %b) {
entry:
  call void @subtract(ptr %a, ptr %b, ptr %b)
  %x = call i64 @read(ptr %a)
  ret i64 %x
}
"""

PHI_SAME_CONSTANT_IR = """
define i64 @f(i1 %c) {
entry:
  br i1 %c, label %then, label %else
then:
  %a1 = call ptr @create(i64 5)
  br label %join
else:
  %a2 = call ptr @create(i64 5)
  br label %join
join:
  %a = phi ptr [ %a1, %then ], [ %a2, %else ]
  %x = call i64 @read(ptr %a)
  ret i64 %x
}
"""

ESCAPING_CELL_IR = """
declare void @external(ptr)

define void @f() {
entry:
  %a = call ptr @create(i64 1)
  %p = alloca ptr
  store ptr %a, ptr %p
  call void @external(ptr %p)
  %b = load ptr, ptr %p
  %x = call i64 @read(ptr %b)
  call void @print(i64 %x)
  ret void
}
"""

PRIVATE_CELL_IR = """
define void @f() {
entry:
  %a = call ptr @create(i64 1)
  %p = alloca ptr
  store ptr %a, ptr %p
  %b = load ptr, ptr %p
  %x = call i64 @read(ptr %b)
  call void @print(i64 %x)
  ret void
}
"""

PHI_DIFFERENT_CONSTANTS_IR = """
define i64 @f(i1 %c) {
entry:
  br i1 %c, label %then, label %else
then:
  %a1 = call ptr @create(i64 1)
  %x1 = call i64 @read(ptr %a1)
  br label %join
else:
  %a2 = call ptr @create(i64 2)
  %x2 = call i64 @read(ptr %a2)
  br label %join
join:
  %a = phi ptr [ %a1, %then ], [ %a2, %else ]
  %x = call i64 @read(ptr %a)
  ret i64 %x
}
"""

LOOP_IR = """
define void @f(i1 %c) {
entry:
  %a = call ptr @create(i64 0)
  br label %loop
loop:
  %x = call i64 @read(ptr %a)
  call void @write(ptr %a, i64 1)
  br i1 %c, label %loop, label %exit
exit:
  ret void
}
"""


# ═══════════════════════════════════════════════════════════════════
#  HELPERS
# ═══════════════════════════════════════════════════════════════════

def parse(text: str, options: Optional[PassOptions] = None) -> Module:
    """Parse an indented IR snippet."""
    return parse_module(textwrap.dedent(text), options=options)


def only_function(module: Module) -> Function:
    functions = list(module)
    assert len(functions) == 1
    return functions[0]


def calls_to(fn: Function, callee: str) -> List[CallInst]:
    return [c for c in fn.calls() if c.callee == callee]


def value_named(fn: Function, name: str):
    for arg in fn.args:
        if arg.name == name:
            return arg
    for inst in fn.instructions():
        if inst.name == name:
            return inst
    raise KeyError(name)


def optimize(
    text: str,
    options: Optional[PassOptions] = None,
    conservative: bool = False,
):
    """Parse *text*, run the pass, return ``(function, changed, pass)``."""
    options = options or PassOptions()
    module = parse(text, options)
    factory = conservative_factory if conservative else escape_factory(options)
    cat_pass = CatPass(factory, options)
    changed = cat_pass.run_on_module(module)
    return only_function(module), changed, cat_pass


# ═══════════════════════════════════════════════════════════════════
#  FIXTURES
# ═══════════════════════════════════════════════════════════════════

@pytest.fixture
def options():
    return PassOptions()


@pytest.fixture
def ir_file(tmp_path):
    """Factory writing an IR snippet to a temporary ``.ll`` file."""

    def _write(text: str, name: str = "prog.ll"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return path

    return _write


@pytest.fixture(autouse=True)
def _reset_catflow_logger():
    """Drop handlers installed by ``catflow.main`` between tests."""
    yield
    logger = logging.getLogger("catflow")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
