"""
catflow.classifier
==================

Decides which values of a function are boxed-integer handles (``DATA``),
which are storage cells holding handles or other cells (``POINTER``), and
which the analysis ignores (``IRRELEVANT``).

Every classified value receives a dense integer id from a
:class:`ValueArena`; the engine's fact tables are keyed by those ids.  The
arena also hands out ids lazily for values that only appear as facts (the
defining calls of reaching definitions, stored values, …).

Algorithm
---------
1. Seed from the recognised operations and allocas.
2. Propagate through stores, loads, phis and selects, scanning the whole
   function repeatedly until a scan adds nothing.  The sets only grow, so
   the loop terminates after at most ``2 * |values|`` productive scans.
"""

from __future__ import annotations

import enum
import logging
from typing import Dict, Iterator, List, Optional, Set

from .config import OpKind, PassOptions
from .ir import (
    AllocaInst,
    CallInst,
    Constant,
    Function,
    LoadInst,
    PhiNode,
    SelectInst,
    StoreInst,
    Value,
)

logger = logging.getLogger(__name__)


class ValueClass(enum.Enum):
    DATA = "data"
    POINTER = "pointer"
    IRRELEVANT = "irrelevant"


# ---------------------------------------------------------------------------
# Arena
# ---------------------------------------------------------------------------

class ValueArena:
    """Bidirectional map between IR values and dense integer ids."""

    def __init__(self) -> None:
        self._values: List[Value] = []
        self._ids: Dict[Value, int] = {}

    def id_of(self, value: Value) -> int:
        """Id of *value*, allocating the next free one on first sight."""
        vid = self._ids.get(value)
        if vid is None:
            vid = len(self._values)
            self._ids[value] = vid
            self._values.append(value)
        return vid

    def find(self, value: Value) -> Optional[int]:
        return self._ids.get(value)

    def value_of(self, vid: int) -> Value:
        return self._values[vid]

    def __contains__(self, value: Value) -> bool:
        return value in self._ids

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Value]:
        return iter(self._values)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

class Classification:
    """Outcome of :meth:`TypeClassifier.classify`.

    Attributes
    ----------
    arena : ValueArena
    data : set[int]
        Ids of DATA values.
    pointer : set[int]
        Ids of POINTER values.  An id present in both sets counts as DATA.
    pointee_classes : dict[int, set[ValueClass]]
        For POINTER ids, the classes of values stored into them.
    op_kinds : dict[CallInst, OpKind]
        Operation kind of every call of the function, resolved once.
    """

    def __init__(self, arena: Optional[ValueArena] = None) -> None:
        self.arena = arena if arena is not None else ValueArena()
        self.data: Set[int] = set()
        self.pointer: Set[int] = set()
        self.pointee_classes: Dict[int, Set[ValueClass]] = {}
        self.op_kinds: Dict[CallInst, OpKind] = {}

    def class_of(self, value: Value) -> ValueClass:
        vid = self.arena.find(value)
        if vid is None:
            return ValueClass.IRRELEVANT
        return self.class_of_id(vid)

    def class_of_id(self, vid: int) -> ValueClass:
        if vid in self.data:
            return ValueClass.DATA
        if vid in self.pointer:
            return ValueClass.POINTER
        return ValueClass.IRRELEVANT

    def is_data(self, value: Value) -> bool:
        return self.class_of(value) is ValueClass.DATA

    def is_pointer(self, value: Value) -> bool:
        return self.class_of(value) is ValueClass.POINTER

    def is_classified(self, value: Value) -> bool:
        return self.class_of(value) is not ValueClass.IRRELEVANT

    def op_kind(self, call: CallInst) -> OpKind:
        return self.op_kinds.get(call, OpKind.OPAQUE)

    def classified_ids(self) -> Set[int]:
        return self.data | self.pointer

    def values_of(self, cls: ValueClass) -> List[Value]:
        """Values of one class, in id order."""
        ids = sorted(self.classified_ids())
        return [self.arena.value_of(i) for i in ids if self.class_of_id(i) is cls]

    # ----- growth (used by the classifier) ----------------------------------

    def add(self, value: Value, cls: ValueClass) -> bool:
        """Put *value* into the set for *cls*; ``True`` if that is new."""
        if cls is ValueClass.IRRELEVANT or isinstance(value, Constant):
            return False
        target = self.data if cls is ValueClass.DATA else self.pointer
        vid = self.arena.id_of(value)
        if vid in target:
            return False
        target.add(vid)
        return True

    def add_pointee_class(self, ptr: Value, cls: ValueClass) -> bool:
        if cls is ValueClass.IRRELEVANT:
            return False
        classes = self.pointee_classes.setdefault(self.arena.id_of(ptr), set())
        if cls in classes:
            return False
        classes.add(cls)
        return True

    def pointee_class(self, ptr: Value) -> ValueClass:
        vid = self.arena.find(ptr)
        classes = self.pointee_classes.get(vid, set()) if vid is not None else set()
        if ValueClass.DATA in classes:
            return ValueClass.DATA
        if ValueClass.POINTER in classes:
            return ValueClass.POINTER
        return ValueClass.IRRELEVANT

    def __repr__(self) -> str:
        return (
            f"Classification(data={len(self.data)}, "
            f"pointer={len(self.pointer - self.data)})"
        )


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

_DATA_ARGS: Dict[OpKind, int] = {
    OpKind.READ: 1,
    OpKind.WRITE: 1,
    OpKind.DESTROY: 1,
    OpKind.ADD: 3,
    OpKind.SUBTRACT: 3,
}


class TypeClassifier:
    """Computes a :class:`Classification` for one function.

    Parameters
    ----------
    options : PassOptions
        Supplies the operation names used to recognise calls.
    """

    def __init__(self, options: Optional[PassOptions] = None) -> None:
        self.options = options or PassOptions()

    def classify(
        self, fn: Function, arena: Optional[ValueArena] = None
    ) -> Classification:
        result = Classification(arena)
        self._seed(fn, result)
        scans = 0
        while True:
            scans += 1
            if not self._propagate(fn, result):
                break
        logger.debug(
            "Classified @%s in %d scan(s): %d data, %d pointer",
            fn.name, scans, len(result.data),
            len(result.pointer - result.data),
        )
        return result

    # ----- seeding ----------------------------------------------------------

    def _seed(self, fn: Function, result: Classification) -> None:
        for inst in fn.instructions():
            if isinstance(inst, AllocaInst):
                result.add(inst, ValueClass.POINTER)
            elif isinstance(inst, CallInst):
                kind = self.options.kind_of(inst.callee)
                result.op_kinds[inst] = kind
                if kind is OpKind.CREATE:
                    result.add(inst, ValueClass.DATA)
                for arg in inst.args[:_DATA_ARGS.get(kind, 0)]:
                    result.add(arg, ValueClass.DATA)

    # ----- propagation ------------------------------------------------------

    def _propagate(self, fn: Function, result: Classification) -> bool:
        changed = False
        for inst in fn.instructions():
            if isinstance(inst, StoreInst):
                changed |= self._visit_store(inst, result)
            elif isinstance(inst, LoadInst):
                changed |= self._visit_load(inst, result)
            elif isinstance(inst, PhiNode):
                changed |= self._visit_merge(inst, list(inst.operands), result)
            elif isinstance(inst, SelectInst):
                changed |= self._visit_merge(
                    inst, [inst.true_value, inst.false_value], result
                )
        return changed

    @staticmethod
    def _visit_store(inst: StoreInst, result: Classification) -> bool:
        cls = result.class_of(inst.value_operand)
        if cls is ValueClass.IRRELEVANT:
            return False
        ptr = inst.pointer_operand
        changed = result.add(ptr, ValueClass.POINTER)
        changed |= result.add_pointee_class(ptr, cls)
        return changed

    @staticmethod
    def _visit_load(inst: LoadInst, result: Classification) -> bool:
        ptr = inst.pointer_operand
        changed = False
        if result.is_classified(inst):
            changed |= result.add(ptr, ValueClass.POINTER)
            changed |= result.add_pointee_class(ptr, result.class_of(inst))
        if result.is_pointer(ptr):
            changed |= result.add(inst, result.pointee_class(ptr))
        return changed

    @staticmethod
    def _visit_merge(
        node: Value, inputs: List[Value], result: Classification
    ) -> bool:
        changed = False
        cls = result.class_of(node)
        if cls is not ValueClass.IRRELEVANT:
            for value in inputs:
                changed |= result.add(value, cls)
        else:
            for value in inputs:
                in_cls = result.class_of(value)
                if in_cls is not ValueClass.IRRELEVANT:
                    changed |= result.add(node, in_cls)
        if result.is_pointer(node):
            # Cells merged by a phi/select share what they may hold.
            members = [node] + [v for v in inputs if result.is_pointer(v)]
            for a in members:
                for b in members:
                    changed |= result.add_pointee_class(a, result.pointee_class(b))
        return changed
