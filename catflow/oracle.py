"""
catflow.oracle
==============

Answers the one question the engine asks about calls it cannot see into:
*may this call write through this storage location?*

Two oracles are provided:

``ConservativeOracle``
    Always answers "yes".  Sound, but every opaque call wipes the
    definitions of every handle it can reach.

``EscapeOracle``
    A flow-insensitive escape analysis over one function.  A location
    whose every possible origin is a local allocation (an ``alloca`` or a
    ``create`` result) that never escapes cannot be written by a callee.
    A local allocation escapes when it may be passed to an opaque call,
    returned, or stored into a cell that escapes or is not local.  Function
    arguments, globals and any value whose origin cannot be traced are
    treated as escaped.

The engine builds one oracle per function through an ``OracleFactory``.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import (
    Callable,
    Deque,
    Dict,
    FrozenSet,
    List,
    Optional,
    Protocol,
    Set,
    runtime_checkable,
)

from .config import OpKind, PassOptions
from .ir import (
    AllocaInst,
    CallInst,
    Function,
    LoadInst,
    PhiNode,
    ReturnInst,
    SelectInst,
    StoreInst,
    Value,
    location_size,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AliasOracle",
    "ConservativeOracle",
    "EscapeOracle",
    "OracleFactory",
    "conservative_factory",
    "escape_factory",
    "location_size",
]


@runtime_checkable
class AliasOracle(Protocol):
    """Mod query consumed by the engine for opaque calls."""

    def may_modify(self, call: CallInst, location: Value, size: int) -> bool:
        """Return ``True`` if *call* may write the *size* bytes at *location*.

        A *size* of ``0`` means the extent of the location is unknown.
        """
        ...


OracleFactory = Callable[[Function], AliasOracle]


class ConservativeOracle:
    """Every opaque call may modify every location."""

    def may_modify(self, call: CallInst, location: Value, size: int) -> bool:
        return True

    def __repr__(self) -> str:
        return "ConservativeOracle()"


# Origin marker for values the analysis cannot trace to a local allocation.
_NONLOCAL = None


class EscapeOracle:
    """Escape-based oracle for one function.

    Parameters
    ----------
    fn : Function
        The function whose locations will be queried.
    options : PassOptions, optional
        Supplies operation names (to tell ``create`` and the benign calls
        from opaque ones) and ``readonly_callees``.
    """

    def __init__(self, fn: Function, options: Optional[PassOptions] = None) -> None:
        self.fn = fn
        self.options = options or PassOptions()
        self._origins: Dict[Value, FrozenSet[Optional[Value]]] = {}
        self._stored: Dict[Value, List[Value]] = {}
        self.escaped: Set[Value] = set()
        self._analyse()

    # ----- queries ----------------------------------------------------------

    def may_modify(self, call: CallInst, location: Value, size: int) -> bool:
        if call.callee in self.options.readonly_callees:
            return False
        origins = self.origins(location)
        if _NONLOCAL in origins:
            return True
        return any(o in self.escaped for o in origins)

    def origins(self, value: Value) -> FrozenSet[Optional[Value]]:
        """Local allocations *value* may be, plus ``None`` for anything else."""
        return self._origin_of(value, set())

    def escapes(self, value: Value) -> bool:
        origins = self.origins(value)
        return _NONLOCAL in origins or any(o in self.escaped for o in origins)

    # ----- analysis ---------------------------------------------------------

    def _is_local_root(self, value: Value) -> bool:
        if isinstance(value, AllocaInst):
            return True
        return (
            isinstance(value, CallInst)
            and self.options.kind_of(value.callee) is OpKind.CREATE
        )

    def _origin_of(
        self, value: Value, visiting: Set[Value]
    ) -> FrozenSet[Optional[Value]]:
        cached = self._origins.get(value)
        if cached is not None:
            return cached
        if self._is_local_root(value):
            result: FrozenSet[Optional[Value]] = frozenset({value})
        elif isinstance(value, (PhiNode, SelectInst)):
            if value in visiting:
                return frozenset()
            visiting.add(value)
            inputs = (
                value.operands if isinstance(value, PhiNode)
                else [value.true_value, value.false_value]
            )
            merged: Set[Optional[Value]] = set()
            for v in inputs:
                merged |= self._origin_of(v, visiting)
            visiting.discard(value)
            result = frozenset(merged)
            if visiting:
                # Partial answer inside a cycle; do not cache it.
                return result
        else:
            result = frozenset({_NONLOCAL})
        self._origins[value] = result
        return result

    def _analyse(self) -> None:
        pending: Deque[Value] = deque()

        def mark(value: Value) -> None:
            if value not in self.escaped:
                self.escaped.add(value)
                pending.append(value)

        for inst in self.fn.instructions():
            if isinstance(inst, StoreInst):
                for origin in self.origins(inst.pointer_operand):
                    self._stored.setdefault(origin, []).append(inst.value_operand)
            elif isinstance(inst, ReturnInst) and inst.return_value is not None:
                mark(inst.return_value)
            elif isinstance(inst, CallInst):
                if self.options.kind_of(inst.callee) is OpKind.OPAQUE:
                    for arg in inst.args:
                        mark(arg)

        # Anything stored into a non-local cell escapes.
        for value in self._stored.get(_NONLOCAL, []):
            mark(value)

        while pending:
            value = pending.popleft()
            if isinstance(value, PhiNode):
                for v in value.operands:
                    mark(v)
            elif isinstance(value, SelectInst):
                mark(value.true_value)
                mark(value.false_value)
            elif isinstance(value, LoadInst):
                # The loaded value may be anything stored into the cell.
                for origin in self.origins(value.pointer_operand):
                    for stored in self._stored.get(origin, []):
                        mark(stored)
            if self._is_local_root(value):
                # A callee reaching an escaped cell reaches what it holds.
                for stored in self._stored.get(value, []):
                    mark(stored)

        logger.debug(
            "Escape analysis of @%s: %d escaping value(s)",
            self.fn.name, len(self.escaped),
        )

    def __repr__(self) -> str:
        return f"EscapeOracle(@{self.fn.name}, escaped={len(self.escaped)})"


def conservative_factory(fn: Function) -> AliasOracle:
    return ConservativeOracle()


def escape_factory(options: Optional[PassOptions] = None) -> OracleFactory:
    """Return an ``OracleFactory`` building :class:`EscapeOracle` objects."""

    def build(fn: Function) -> AliasOracle:
        return EscapeOracle(fn, options)

    return build
