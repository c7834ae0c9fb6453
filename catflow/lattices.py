"""
catflow.lattices
================

The lattices the engine merges facts with.

Every fact table of the analysis (reaching definitions, may-alias sets,
points-to sets) is a map from dense value ids to finite sets of ids.  The
matching lattice is ``MapLattice(PowersetLattice())``: the join is the
pointwise union, keys absent from a map are implicitly the empty set.

Both lattices have finite height over a single function (the id universe is
fixed by the arena), so no widening is needed and the worklist terminates.

Public API
----------
    Lattice             - abstract base for lattice definitions
    PowersetLattice     - ``(2^U, ⊆, ∅, ∪)``
    MapLattice          - pointwise lifting of a value lattice to maps
    FACT_LATTICE        - ``MapLattice(PowersetLattice())``, shared instance
"""

from __future__ import annotations

import abc
from typing import Dict, FrozenSet, Generic, TypeVar

L = TypeVar("L")


# ===========================================================================
# LATTICE — ABSTRACT BASE
# ===========================================================================

class Lattice(abc.ABC, Generic[L]):
    """Abstract base class for a join-semilattice with a least element.

    Subclasses provide ``bottom()``, ``join(a, b)`` and ``leq(a, b)``.
    """

    @abc.abstractmethod
    def bottom(self) -> L:
        """Return the least element ⊥."""
        ...

    @abc.abstractmethod
    def join(self, a: L, b: L) -> L:
        """Return the least upper bound ``a ⊔ b``."""
        ...

    @abc.abstractmethod
    def leq(self, a: L, b: L) -> bool:
        """Return ``True`` iff ``a ⊑ b``."""
        ...

    def eq(self, a: L, b: L) -> bool:
        """Equality: ``a = b`` iff ``a ⊑ b`` and ``b ⊑ a``."""
        return self.leq(a, b) and self.leq(b, a)

    def is_bottom(self, a: L) -> bool:
        return self.eq(a, self.bottom())


# ===========================================================================
# BUILT-IN LATTICES
# ===========================================================================

class PowersetLattice(Lattice[FrozenSet]):
    """Powerset lattice over value ids."""

    def bottom(self) -> FrozenSet:
        return frozenset()

    def join(self, a: FrozenSet, b: FrozenSet) -> FrozenSet:
        return a | b

    def leq(self, a: FrozenSet, b: FrozenSet) -> bool:
        return a <= b


class MapLattice(Lattice[Dict]):
    """Lattice of maps ``Key → ValueLattice`` ordered pointwise.

    Parameters
    ----------
    value_lattice : Lattice
        The lattice for individual values.  A key missing from a map stands
        for ``value_lattice.bottom()``; :meth:`normalize` drops such keys so
        that ``==`` on normalized maps coincides with :meth:`eq`.
    """

    def __init__(self, value_lattice: Lattice) -> None:
        self.value_lattice = value_lattice

    def bottom(self) -> Dict:
        return {}

    def join(self, a: Dict, b: Dict) -> Dict:
        if not a:
            return dict(b)
        result = dict(a)
        vl = self.value_lattice
        for k, v in b.items():
            mine = result.get(k)
            result[k] = v if mine is None else vl.join(mine, v)
        return result

    def leq(self, a: Dict, b: Dict) -> bool:
        vl = self.value_lattice
        bot = vl.bottom()
        return all(vl.leq(va, b.get(k, bot)) for k, va in a.items())

    def normalize(self, m: Dict) -> Dict:
        vl = self.value_lattice
        return {k: v for k, v in m.items() if not vl.is_bottom(v)}


FACT_LATTICE: MapLattice = MapLattice(PowersetLattice())
