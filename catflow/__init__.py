"""
catflow — dataflow analysis and constant folding for boxed integers
===================================================================

Programs handled by this package manipulate integer handles ("Data"
values) exclusively through six operations: ``create``, ``read``,
``write``, ``add``, ``subtract`` and ``destroy``.  For each function the
pass classifies values, computes reaching definitions, may-alias sets and
points-to sets to a fixpoint, then folds provably constant arithmetic and
replaces provably constant reads by literals.

Core modules
------------
ir
    Values, instructions, basic blocks, functions, modules, builder, printer.
ir_parser
    Parsimonious-based reader for the textual IR.
classifier
    Data / Pointer / Irrelevant classification with dense value ids.
lattices
    Powerset and map lattices used to merge facts.
engine
    Worklist fixpoint over reaching definitions, aliases and points-to sets.
oracle
    "May this call write this location?" oracles.
optimizer
    Constant folding, algebraic simplification, constant propagation.
passes
    The per-function driver tying the above together.

Quick start
-----------
>>> from catflow import CatPass, parse_module
>>> module = parse_module('''
... define void @f() {
... entry:
...   %a = call ptr @create(i64 3)
...   %x = call i64 @read(ptr %a)
...   ret void
... }
... ''')
>>> CatPass().run_on_module(module)
True

Package layout
--------------
::

    catflow/
    ├── __init__.py            ← this file
    ├── __main__.py
    ├── classifier.py
    ├── config.py
    ├── engine.py
    ├── errors.py
    ├── ir.py
    ├── ir_parser.py
    ├── lattices.py
    ├── main.py
    ├── optimizer.py
    ├── oracle.py
    ├── passes.py
    └── report.py
"""

from __future__ import annotations

import logging

__version__ = "0.1.0"

from .classifier import Classification, TypeClassifier, ValueArena, ValueClass
from .config import OperationNames, OpKind, PassOptions
from .engine import UNKNOWN, AnalysisContext, DataflowEngine, FactState
from .errors import (
    CatflowError,
    ConfigError,
    IRParseError,
    IRValidationError,
    SourceSpan,
)
from .ir import (
    Argument,
    BasicBlock,
    CallInst,
    Constant,
    Function,
    GlobalVariable,
    IRBuilder,
    IRType,
    Module,
)
from .ir_parser import check_operation_arity, parse_module, parse_module_file
from .optimizer import Optimizer
from .oracle import AliasOracle, ConservativeOracle, EscapeOracle
from .passes import CatPass

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    # ir
    "Argument",
    "BasicBlock",
    "CallInst",
    "Constant",
    "Function",
    "GlobalVariable",
    "IRBuilder",
    "IRType",
    "Module",
    "parse_module",
    "parse_module_file",
    "check_operation_arity",
    # analysis
    "Classification",
    "TypeClassifier",
    "ValueArena",
    "ValueClass",
    "UNKNOWN",
    "AnalysisContext",
    "DataflowEngine",
    "FactState",
    "AliasOracle",
    "ConservativeOracle",
    "EscapeOracle",
    "Optimizer",
    "CatPass",
    # configuration and errors
    "OperationNames",
    "OpKind",
    "PassOptions",
    "CatflowError",
    "ConfigError",
    "IRParseError",
    "IRValidationError",
    "SourceSpan",
]
