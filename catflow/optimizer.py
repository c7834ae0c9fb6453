"""
catflow.optimizer
=================

Rewrites that consume the fixpoint of :mod:`catflow.engine`.

Constant folding and algebraic simplification
    ``add`` / ``subtract`` calls whose operands are provably constant (or
    trivially simplifiable) become a single ``write`` of the destination.

Constant propagation
    ``read`` calls of a provably constant handle are replaced by the
    literal.

A handle is *provably constant* before an instruction when its reaching
definitions there are known (non-empty, no ``UNKNOWN``) and every one of
them is a ``create`` or ``write`` supplying the same integer literal.

The optimizer runs once; it never re-runs the engine after rewriting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import OpKind
from .engine import AnalysisContext
from .ir import CallInst, Constant, IRBuilder, IRType, Instruction, Value

logger = logging.getLogger(__name__)

_INT64_MASK = (1 << 64) - 1
_INT64_SIGN = 1 << 63


def wrap_int64(value: int) -> int:
    """Reduce *value* to a signed 64-bit two's-complement integer."""
    value &= _INT64_MASK
    return value - (1 << 64) if value & _INT64_SIGN else value


@dataclass
class OptimizationStats:
    """Counts of the rewrites one optimizer run performed."""

    folded: int = 0
    simplified: int = 0
    propagated: int = 0

    @property
    def total(self) -> int:
        return self.folded + self.simplified + self.propagated


class Optimizer:
    """Folds, simplifies and propagates constants in ``ctx.fn``.

    Parameters
    ----------
    ctx : AnalysisContext
        A solved context.  Its facts are read, never updated.
    """

    def __init__(self, ctx: AnalysisContext) -> None:
        self.ctx = ctx
        self.names = ctx.options.names
        self.stats = OptimizationStats()
        # Deleted add/subtract call -> the write call that replaced it.
        self._rewritten: Dict[CallInst, CallInst] = {}

    # ----- constancy --------------------------------------------------------

    def _literal_of(self, definition: Optional[Value]) -> Optional[int]:
        if definition is None or not isinstance(definition, CallInst):
            return None
        definition = self._rewritten.get(definition, definition)
        kind = self.ctx.op_kind(definition)
        if kind is OpKind.CREATE and definition.args:
            literal = definition.arg(0)
        elif kind is OpKind.WRITE and len(definition.args) > 1:
            literal = definition.arg(1)
        else:
            return None
        return literal.value if isinstance(literal, Constant) else None

    def constant_of(self, inst: Instruction, value: Value) -> Optional[int]:
        """Literal *value* provably holds immediately before *inst*, if any."""
        definitions = self.ctx.definitions(inst, value)
        if not definitions:
            return None
        constant: Optional[int] = None
        for definition in definitions:
            literal = self._literal_of(definition)
            if literal is None:
                return None
            if constant is None:
                constant = literal
            elif constant != literal:
                return None
        return constant

    # ----- rewrites ---------------------------------------------------------

    def _calls_of(self, *kinds: OpKind) -> List[CallInst]:
        return [
            inst for inst in list(self.ctx.fn.instructions())
            if isinstance(inst, CallInst) and self.ctx.op_kind(inst) in kinds
        ]

    def _replace_with_write(self, call: CallInst, operand: Value) -> CallInst:
        builder = IRBuilder.before(call)
        write = builder.call(self.names.write, [call.arg(0), operand], IRType.VOID)
        self.ctx.classification.op_kinds[write] = OpKind.WRITE
        self._rewritten[call] = write
        return write

    def fold_and_simplify(self) -> bool:
        """Rewrite ``add`` / ``subtract`` calls; return ``True`` on change."""
        doomed: List[CallInst] = []
        for call in self._calls_of(OpKind.ADD, OpKind.SUBTRACT):
            if len(call.args) < 3:
                continue
            is_add = self.ctx.op_kind(call) is OpKind.ADD
            lhs, rhs = call.arg(1), call.arg(2)

            if not is_add and lhs is rhs:
                write = self._replace_with_write(call, Constant(0))
                logger.debug("Simplified %s to %s", call, write)
                self.stats.simplified += 1
                doomed.append(call)
                continue

            c1 = self.constant_of(call, lhs)
            c2 = self.constant_of(call, rhs)
            if c1 is not None and c2 is not None:
                folded = wrap_int64(c1 + c2 if is_add else c1 - c2)
                write = self._replace_with_write(call, Constant(folded))
                logger.debug("Folded %s to %s", call, write)
                self.stats.folded += 1
            elif is_add and (c1 == 0 and c2 is None or c2 == 0 and c1 is None):
                other = rhs if c1 == 0 else lhs
                read = IRBuilder.before(call).call(
                    self.names.read, [other], IRType.I64, name="val"
                )
                self.ctx.classification.op_kinds[read] = OpKind.READ
                write = self._replace_with_write(call, read)
                logger.debug("Simplified %s to %s", call, write)
                self.stats.simplified += 1
            else:
                continue
            doomed.append(call)

        for call in doomed:
            call.erase_from_parent()
        return bool(doomed)

    def propagate_constants(self) -> bool:
        """Replace constant ``read`` results by literals; ``True`` on change."""
        doomed: List[CallInst] = []
        for call in self._calls_of(OpKind.READ):
            if not call.args:
                continue
            constant = self.constant_of(call, call.arg(0))
            if constant is None:
                continue
            literal = Constant(constant, call.type if call.has_result else IRType.I64)
            uses = self.ctx.fn.replace_all_uses_with(call, literal)
            logger.debug("Propagated %d into %d use(s) of %s", constant, uses, call)
            self.stats.propagated += 1
            doomed.append(call)

        for call in doomed:
            call.erase_from_parent()
        return bool(doomed)

    def run(self) -> bool:
        if not self.ctx.converged:
            logger.warning(
                "Skipping rewrites of @%s: dataflow facts did not converge",
                self.ctx.fn.name,
            )
            return False
        changed = self.fold_and_simplify()
        changed |= self.propagate_constants()
        return changed
