"""
catflow.engine
==============

Forward worklist dataflow analysis computing, for every instruction of a
function, the facts holding immediately before (IN) and after (OUT) it:

reaching definitions
    For each DATA value, the set of calls whose write may be the last one
    observed, or ``UNKNOWN`` when an untracked source (argument, global,
    opaque call) may have defined it.
may-alias sets
    For each classified value, the values a write through it may be
    observed through.  The relation is kept reflexive and symmetric.
points-to sets
    For each POINTER value, the values the cell may currently hold, or
    ``UNKNOWN``.

All three fact tables are ``MapLattice(PowersetLattice)`` values keyed by
the dense ids of :class:`catflow.classifier.ValueArena`.  Blocks are merged
by pointwise union; a block's successors are revisited when its exit state
changes.

Usage::

    engine = DataflowEngine(options)
    ctx = engine.analyze(fn, EscapeOracle(fn, options))
    ctx.definitions(inst, value)     # reaching definitions before ``inst``
"""

from __future__ import annotations

import logging
from collections import deque
from typing import (
    Deque,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
)

from .classifier import Classification, TypeClassifier, ValueArena, ValueClass
from .config import OpKind, PassOptions
from .ir import (
    AllocaInst,
    Argument,
    BasicBlock,
    CallInst,
    Function,
    GlobalVariable,
    Instruction,
    LoadInst,
    PhiNode,
    SelectInst,
    StoreInst,
    Value,
    location_size,
)
from .lattices import FACT_LATTICE
from .oracle import AliasOracle

logger = logging.getLogger(__name__)

#: Reserved id standing for "defined by / pointing to an untracked source".
UNKNOWN = -1

FactMap = Dict[int, FrozenSet[int]]

_EMPTY: FrozenSet[int] = frozenset()


# ===========================================================================
# FACT STATE
# ===========================================================================

class FactState:
    """The three fact tables at one program point.

    ``FactState`` objects stored in an :class:`AnalysisContext` are treated
    as immutable; the engine works on :meth:`copy` results.
    """

    __slots__ = ("defs", "aliases", "points_to")

    def __init__(
        self,
        defs: Optional[FactMap] = None,
        aliases: Optional[FactMap] = None,
        points_to: Optional[FactMap] = None,
    ) -> None:
        self.defs: FactMap = defs if defs is not None else {}
        self.aliases: FactMap = aliases if aliases is not None else {}
        self.points_to: FactMap = points_to if points_to is not None else {}

    def copy(self) -> "FactState":
        return FactState(dict(self.defs), dict(self.aliases), dict(self.points_to))

    def join(self, other: "FactState") -> "FactState":
        return FactState(
            FACT_LATTICE.join(self.defs, other.defs),
            FACT_LATTICE.join(self.aliases, other.aliases),
            FACT_LATTICE.join(self.points_to, other.points_to),
        )

    def leq(self, other: "FactState") -> bool:
        return (
            FACT_LATTICE.leq(self.defs, other.defs)
            and FACT_LATTICE.leq(self.aliases, other.aliases)
            and FACT_LATTICE.leq(self.points_to, other.points_to)
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FactState):
            return NotImplemented
        norm = FACT_LATTICE.normalize
        return (
            norm(self.defs) == norm(other.defs)
            and norm(self.aliases) == norm(other.aliases)
            and norm(self.points_to) == norm(other.points_to)
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"FactState(defs={len(self.defs)}, aliases={len(self.aliases)}, "
            f"points_to={len(self.points_to)})"
        )


def _get(m: FactMap, key: int) -> FrozenSet[int]:
    return m.get(key, _EMPTY)


def _add(m: FactMap, key: int, items: Iterable[int]) -> None:
    m[key] = m.get(key, _EMPTY).union(items)


# ===========================================================================
# ANALYSIS CONTEXT
# ===========================================================================

class AnalysisContext:
    """Everything the analysis of one function produces.

    A fresh context is built for every function and discarded once the
    optimizer has consumed it; nothing is shared between runs.

    Attributes
    ----------
    fn : Function
    options : PassOptions
    oracle : AliasOracle
    classification : Classification
    facts_in, facts_out : dict[Instruction, FactState]
        Per-instruction snapshots.
    block_out : dict[BasicBlock, FactState]
        State at the exit of each processed block.
    iterations : int
        Number of block visits.
    converged : bool
        ``False`` if the iteration bound stopped the worklist.
    warnings : list[str]
        Distinct classification violations met during the run.
    """

    def __init__(
        self,
        fn: Function,
        options: PassOptions,
        oracle: AliasOracle,
        classification: Classification,
    ) -> None:
        self.fn = fn
        self.options = options
        self.oracle = oracle
        self.classification = classification
        self.facts_in: Dict[Instruction, FactState] = {}
        self.facts_out: Dict[Instruction, FactState] = {}
        self.block_out: Dict[BasicBlock, FactState] = {}
        self.iterations = 0
        self.converged = True
        self.warnings: List[str] = []
        self._warned: Set[str] = set()

    @property
    def arena(self) -> ValueArena:
        return self.classification.arena

    def vid(self, value: Value) -> int:
        return self.arena.id_of(value)

    def class_of(self, value: Value) -> ValueClass:
        return self.classification.class_of(value)

    def class_of_id(self, vid: int) -> ValueClass:
        return self.classification.class_of_id(vid)

    def op_kind(self, call: CallInst) -> OpKind:
        return self.classification.op_kind(call)

    def warn(self, fmt: str, *args: object) -> None:
        """Log a classification violation once per distinct message."""
        message = fmt % args
        if message in self._warned:
            return
        self._warned.add(message)
        self.warnings.append(message)
        logger.warning(fmt, *args)

    # ----- queries on the fixpoint ------------------------------------------

    def state_before(self, inst: Instruction) -> FactState:
        return self.facts_in.get(inst, _EMPTY_STATE)

    def state_after(self, inst: Instruction) -> FactState:
        return self.facts_out.get(inst, _EMPTY_STATE)

    def _ids(self, table: FactMap, value: Value) -> FrozenSet[int]:
        vid = self.arena.find(value)
        return _EMPTY if vid is None else _get(table, vid)

    def defs_before(self, inst: Instruction, value: Value) -> FrozenSet[int]:
        """Reaching-definition ids of *value* immediately before *inst*."""
        return self._ids(self.state_before(inst).defs, value)

    def definitions(
        self, inst: Instruction, value: Value
    ) -> List[Optional[Value]]:
        """Reaching definitions of *value* before *inst* (``None`` = UNKNOWN)."""
        return [self._value(i) for i in sorted(self.defs_before(inst, value))]

    def aliases_after(self, inst: Instruction, value: Value) -> List[Value]:
        return [
            self.arena.value_of(i)
            for i in sorted(self._ids(self.state_after(inst).aliases, value))
        ]

    def points_to_after(
        self, inst: Instruction, value: Value
    ) -> List[Optional[Value]]:
        return [
            self._value(i)
            for i in sorted(self._ids(self.state_after(inst).points_to, value))
        ]

    def _value(self, vid: int) -> Optional[Value]:
        return None if vid == UNKNOWN else self.arena.value_of(vid)


_EMPTY_STATE = FactState()


# ===========================================================================
# ENGINE
# ===========================================================================

class DataflowEngine:
    """Runs the reaching-definition / alias / points-to fixpoint.

    Parameters
    ----------
    options : PassOptions, optional
        Operation names and ``max_iterations``.
    """

    def __init__(self, options: Optional[PassOptions] = None) -> None:
        self.options = options or PassOptions()

    def analyze(
        self,
        fn: Function,
        oracle: AliasOracle,
        classification: Optional[Classification] = None,
    ) -> AnalysisContext:
        """Classify (unless given a classification) and solve *fn*."""
        if classification is None:
            classification = TypeClassifier(self.options).classify(fn)
        ctx = AnalysisContext(fn, self.options, oracle, classification)
        self._solve(ctx)
        return ctx

    # ----- worklist ---------------------------------------------------------

    def _solve(self, ctx: AnalysisContext) -> None:
        worklist: Deque[BasicBlock] = deque(
            b for b in ctx.fn.blocks if not b.predecessors
        )
        in_worklist: Set[BasicBlock] = set(worklist)
        limit = ctx.options.max_iterations

        while worklist:
            if ctx.iterations >= limit:
                logger.warning(
                    "Dataflow analysis of @%s stopped after %d iterations "
                    "without reaching a fixpoint", ctx.fn.name, ctx.iterations,
                )
                ctx.converged = False
                break
            block = worklist.popleft()
            in_worklist.discard(block)
            ctx.iterations += 1

            if self._visit_block(ctx, block):
                for succ in block.successor_blocks():
                    if succ not in in_worklist:
                        worklist.append(succ)
                        in_worklist.add(succ)

        logger.debug(
            "Dataflow analysis of @%s: %d block visit(s), converged=%s",
            ctx.fn.name, ctx.iterations, ctx.converged,
        )

    def _visit_block(self, ctx: AnalysisContext, block: BasicBlock) -> bool:
        """Recompute *block*; return ``True`` if its successors need a visit."""
        previous = ctx.block_out.get(block)
        state = self._block_entry(ctx, block)
        for inst in block.instructions:
            ctx.facts_in[inst] = state
            state = self.transfer(ctx, inst, state)
            ctx.facts_out[inst] = state
        ctx.block_out[block] = state
        return previous is None or previous != state

    def _block_entry(self, ctx: AnalysisContext, block: BasicBlock) -> FactState:
        preds = block.predecessor_blocks()
        if not preds:
            return self._seed(ctx)
        state = FactState()
        for pred in preds:
            out = ctx.block_out.get(pred)
            if out is not None:
                state = state.join(out)
        return state

    @staticmethod
    def _seed(ctx: AnalysisContext) -> FactState:
        state = FactState()
        cls = ctx.classification
        for vid in sorted(cls.classified_ids()):
            state.aliases[vid] = frozenset({vid})
            value = ctx.arena.value_of(vid)
            if not isinstance(value, (Argument, GlobalVariable)):
                continue
            if cls.class_of_id(vid) is ValueClass.DATA:
                state.defs[vid] = frozenset({UNKNOWN})
            else:
                state.points_to[vid] = frozenset({UNKNOWN})
        return state

    # ----- transfer ---------------------------------------------------------

    def transfer(
        self, ctx: AnalysisContext, inst: Instruction, state: FactState
    ) -> FactState:
        """Return the state after *inst* given the state *state* before it."""
        out = state.copy()
        if isinstance(inst, PhiNode):
            self._transfer_phi(ctx, inst, state, out)
        elif isinstance(inst, SelectInst):
            self._transfer_select(ctx, inst, state, out)
        elif isinstance(inst, AllocaInst):
            self._transfer_alloca(ctx, inst, state, out)
        elif isinstance(inst, StoreInst):
            self._transfer_store(ctx, inst, state, out)
        elif isinstance(inst, LoadInst):
            self._transfer_load(ctx, inst, state, out)
        elif isinstance(inst, CallInst):
            self._transfer_call(ctx, inst, state, out)
        return out

    # Helpers shared by the rules below.  ``inp`` is the state before the
    # instruction, ``out`` the state being built.

    @staticmethod
    def _reset_alias(vid: int, inp: FactState, out: FactState) -> None:
        for alias in _get(inp.aliases, vid):
            out.aliases[alias] = _get(out.aliases, alias) - {vid}
        out.aliases[vid] = frozenset({vid})

    @staticmethod
    def _link_aliases(
        target: int, sources: Iterable[int], out: FactState
    ) -> None:
        for alias in sources:
            _add(out.aliases, target, (alias,))
            _add(out.aliases, alias, (target,))

    @staticmethod
    def _aliases_of(
        ctx: AnalysisContext, vid: int, aliases: FactMap, out: FactState
    ) -> FrozenSet[int]:
        found = aliases.get(vid)
        if found is None:
            ctx.warn("%s alias not initialised", ctx.arena.value_of(vid).ref())
            found = frozenset({vid})
            _add(out.aliases, vid, found)
        return found

    def _set_def(
        self,
        ctx: AnalysisContext,
        vid: int,
        definition: int,
        aliases: FactMap,
        out: FactState,
    ) -> None:
        # Strong update on the value itself, weak update on its aliases.
        out.defs[vid] = _EMPTY
        for alias in self._aliases_of(ctx, vid, aliases, out):
            _add(out.defs, alias, (definition,))

    def _add_points_to(
        self,
        ctx: AnalysisContext,
        ptr: int,
        target: int,
        aliases: FactMap,
        out: FactState,
    ) -> None:
        for alias in self._aliases_of(ctx, ptr, aliases, out):
            _add(out.points_to, alias, (target,))

    def _set_points_to(
        self,
        ctx: AnalysisContext,
        ptr: int,
        target: int,
        aliases: FactMap,
        out: FactState,
    ) -> None:
        out.points_to[ptr] = _EMPTY
        self._add_points_to(ctx, ptr, target, aliases, out)

    # ----- phi / select -----------------------------------------------------

    def _transfer_phi(
        self, ctx: AnalysisContext, phi: PhiNode, inp: FactState, out: FactState
    ) -> None:
        cls = ctx.class_of(phi)
        if cls is ValueClass.IRRELEVANT:
            return
        pid = ctx.vid(phi)
        self._reset_alias(pid, inp, out)
        merged: Set[int] = set()
        for value, pred in phi.incoming():
            pred_out = ctx.block_out.get(pred)
            vid = ctx.arena.find(value)
            if pred_out is None or vid is None:
                continue
            self._link_aliases(pid, _get(pred_out.aliases, vid), out)
            table = pred_out.defs if cls is ValueClass.DATA else pred_out.points_to
            merged |= _get(table, vid)
        if cls is ValueClass.DATA:
            out.defs[pid] = frozenset(merged)
        else:
            out.points_to[pid] = frozenset(merged)

    def _transfer_select(
        self,
        ctx: AnalysisContext,
        sel: SelectInst,
        inp: FactState,
        out: FactState,
    ) -> None:
        cls = ctx.class_of(sel)
        if cls is ValueClass.IRRELEVANT:
            return
        sid = ctx.vid(sel)
        self._reset_alias(sid, inp, out)
        merged: Set[int] = set()
        for value in (sel.true_value, sel.false_value):
            vid = ctx.arena.find(value)
            if vid is None:
                continue
            self._link_aliases(sid, _get(inp.aliases, vid), out)
            table = inp.defs if cls is ValueClass.DATA else inp.points_to
            merged |= _get(table, vid)
        if cls is ValueClass.DATA:
            out.defs[sid] = frozenset(merged)
        else:
            out.points_to[sid] = frozenset(merged)

    # ----- memory -----------------------------------------------------------

    def _transfer_alloca(
        self,
        ctx: AnalysisContext,
        inst: AllocaInst,
        inp: FactState,
        out: FactState,
    ) -> None:
        if ctx.class_of(inst) is not ValueClass.POINTER:
            ctx.warn("In %s the ptr is not recognized", inst)
            return
        vid = ctx.vid(inst)
        self._reset_alias(vid, inp, out)
        out.points_to[vid] = _EMPTY

    def _transfer_store(
        self,
        ctx: AnalysisContext,
        inst: StoreInst,
        inp: FactState,
        out: FactState,
    ) -> None:
        ptr = inst.pointer_operand
        if ctx.class_of(ptr) is not ValueClass.POINTER:
            ctx.warn("In %s the ptr is not recognized", inst)
            return
        self._set_points_to(
            ctx, ctx.vid(ptr), ctx.vid(inst.value_operand), inp.aliases, out
        )

    def _transfer_load(
        self,
        ctx: AnalysisContext,
        inst: LoadInst,
        inp: FactState,
        out: FactState,
    ) -> None:
        ptr = inst.pointer_operand
        if ctx.class_of(ptr) is not ValueClass.POINTER:
            ctx.warn("In %s the ptr is not recognized", inst)
            return
        pid = ctx.vid(ptr)
        lid = ctx.vid(inst)
        pointees = _get(inp.points_to, pid)

        self._reset_alias(lid, inp, out)
        for pointee in pointees:
            if pointee != UNKNOWN:
                self._link_aliases(lid, _get(inp.aliases, pointee), out)

        cls = ctx.class_of(inst)
        if cls is not ValueClass.IRRELEVANT:
            table = inp.defs if cls is ValueClass.DATA else inp.points_to
            merged: Set[int] = set()
            for pointee in pointees:
                if pointee == UNKNOWN:
                    merged.add(UNKNOWN)
                elif ctx.class_of_id(pointee) is not cls:
                    ctx.warn(
                        "In %s trying to assign invalid type to %s",
                        inst, "DATA" if cls is ValueClass.DATA else "PTR",
                    )
                else:
                    merged |= _get(table, pointee)
            if cls is ValueClass.DATA:
                out.defs[lid] = frozenset(merged)
            else:
                out.points_to[lid] = frozenset(merged)

        # The loaded value now carries whatever UNKNOWN stood for.
        out.points_to[pid] = _get(out.points_to, pid) - {UNKNOWN}
        self._add_points_to(ctx, pid, lid, inp.aliases, out)

    # ----- calls ------------------------------------------------------------

    def _transfer_call(
        self,
        ctx: AnalysisContext,
        call: CallInst,
        inp: FactState,
        out: FactState,
    ) -> None:
        kind = ctx.op_kind(call)
        if kind is OpKind.CREATE:
            cid = ctx.vid(call)
            self._reset_alias(cid, inp, out)
            self._set_def(ctx, cid, cid, out.aliases, out)
        elif kind.defines_arg0:
            if not call.args or ctx.class_of(call.arg(0)) is not ValueClass.DATA:
                ctx.warn("In %s the data is not recognized", call)
                return
            self._set_def(ctx, ctx.vid(call.arg(0)), ctx.vid(call), out.aliases, out)
        elif kind is OpKind.OPAQUE:
            self._transfer_opaque(ctx, call, inp, out)

    def reachable_data(
        self, ctx: AnalysisContext, ptr: int, state: FactState
    ) -> Set[int]:
        """DATA ids reachable from *ptr* through POINTER→POINTER chains.

        ``UNKNOWN`` is included when some link of a chain is unknown.
        """
        found: Set[int] = set()
        visited: Set[int] = {ptr}
        pending = [ptr]
        while pending:
            current = pending.pop()
            for pointee in _get(state.points_to, current):
                if pointee == UNKNOWN:
                    found.add(UNKNOWN)
                    continue
                cls = ctx.class_of_id(pointee)
                if cls is ValueClass.DATA:
                    found.add(pointee)
                elif cls is ValueClass.POINTER and pointee not in visited:
                    visited.add(pointee)
                    pending.append(pointee)
        return found

    def _transfer_opaque(
        self,
        ctx: AnalysisContext,
        call: CallInst,
        inp: FactState,
        out: FactState,
    ) -> None:
        data: Set[int] = set()
        pointers: Set[int] = set()
        for arg in call.args:
            cls = ctx.class_of(arg)
            if cls is ValueClass.DATA:
                data.add(ctx.vid(arg))
            elif cls is ValueClass.POINTER:
                vid = ctx.vid(arg)
                pointers.add(vid)
                data |= self.reachable_data(ctx, vid, inp)

        for ptr in sorted(pointers):
            if self._may_modify(ctx, call, ptr):
                for target in sorted(data):
                    self._add_points_to(ctx, ptr, target, inp.aliases, out)

        for vid in sorted(data):
            if vid != UNKNOWN and self._may_modify(ctx, call, vid):
                self._set_def(ctx, vid, UNKNOWN, inp.aliases, out)

        cls = ctx.class_of(call)
        if cls is ValueClass.IRRELEVANT:
            return
        cid = ctx.vid(call)
        self._reset_alias(cid, inp, out)
        merged: Set[int] = {UNKNOWN}
        sources = data if cls is ValueClass.DATA else pointers
        table = out.defs if cls is ValueClass.DATA else out.points_to
        for vid in sorted(sources):
            if vid == UNKNOWN:
                continue
            merged |= _get(table, vid)
            self._link_aliases(cid, _get(inp.aliases, vid), out)
        table[cid] = frozenset(merged)

    @staticmethod
    def _may_modify(ctx: AnalysisContext, call: CallInst, vid: int) -> bool:
        location = ctx.arena.value_of(vid)
        return ctx.oracle.may_modify(call, location, location_size(location))


def analyze_function(
    fn: Function,
    oracle: AliasOracle,
    options: Optional[PassOptions] = None,
) -> AnalysisContext:
    """Convenience wrapper: classify and solve *fn* in one call."""
    return DataflowEngine(options).analyze(fn, oracle)


__all__: Tuple[str, ...] = (
    "UNKNOWN",
    "FactState",
    "AnalysisContext",
    "DataflowEngine",
    "analyze_function",
)
