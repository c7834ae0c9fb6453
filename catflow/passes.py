"""
catflow.passes
==============

The per-function driver: classifier → engine → optimizer.

The pass declares the alias oracle it depends on through an
``OracleFactory``; a fresh oracle and a fresh :class:`AnalysisContext` are
built for every function, so no state leaks from one function to the next.

Usage::

    from catflow import CatPass, parse_module_file

    module = parse_module_file("prog.ll")
    changed = CatPass().run_on_module(module)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .classifier import TypeClassifier
from .config import PassOptions
from .engine import AnalysisContext, DataflowEngine
from .ir import Function, Module
from .optimizer import OptimizationStats, Optimizer
from .oracle import OracleFactory, escape_factory

logger = logging.getLogger(__name__)


@dataclass
class FunctionResult:
    """What one :meth:`CatPass.run_on_function` call did."""

    function: str
    changed: bool
    iterations: int
    converged: bool
    stats: OptimizationStats = field(default_factory=OptimizationStats)
    warnings: List[str] = field(default_factory=list)


class CatPass:
    """Analyse and optimise functions one at a time.

    Parameters
    ----------
    oracle_factory : OracleFactory, optional
        Builds the alias oracle of each function.  Defaults to
        :class:`catflow.oracle.EscapeOracle`.
    options : PassOptions, optional
    on_analyzed : callable, optional
        Called with each solved :class:`AnalysisContext` before the
        optimizer rewrites the function (used for fact dumps).
    """

    def __init__(
        self,
        oracle_factory: Optional[OracleFactory] = None,
        options: Optional[PassOptions] = None,
        on_analyzed: Optional[Callable[[AnalysisContext], None]] = None,
    ) -> None:
        self.options = options or PassOptions()
        self.oracle_factory = oracle_factory or escape_factory(self.options)
        self.on_analyzed = on_analyzed
        self.results: List[FunctionResult] = []

    def analyze(self, fn: Function) -> AnalysisContext:
        """Classify and solve *fn* without rewriting it."""
        classification = TypeClassifier(self.options).classify(fn)
        oracle = self.oracle_factory(fn)
        return DataflowEngine(self.options).analyze(fn, oracle, classification)

    def run_on_function(self, fn: Function) -> bool:
        """Run the pass over *fn*; return whether it was changed."""
        if not fn.blocks:
            return False
        ctx = self.analyze(fn)
        if self.on_analyzed is not None:
            self.on_analyzed(ctx)
        optimizer = Optimizer(ctx)
        changed = optimizer.run()

        result = FunctionResult(
            function=fn.name,
            changed=changed,
            iterations=ctx.iterations,
            converged=ctx.converged,
            stats=optimizer.stats,
            warnings=list(ctx.warnings),
        )
        self.results.append(result)
        logger.info(
            "@%s: %d data, %d pointer; %d iteration(s); "
            "%d folded, %d simplified, %d propagated",
            fn.name,
            len(ctx.classification.data),
            len(ctx.classification.pointer - ctx.classification.data),
            ctx.iterations,
            optimizer.stats.folded,
            optimizer.stats.simplified,
            optimizer.stats.propagated,
        )
        return changed

    def run_on_module(self, module: Module) -> bool:
        changed = False
        for fn in module:
            changed |= self.run_on_function(fn)
        return changed
