"""
catflow.report
==============

Human-readable dumps of an :class:`~catflow.engine.AnalysisContext`.

Each dump lists the instructions of the function in order together with
the facts holding before (``IN``) and after (``OUT``) them.  Values are
printed by reference (``%name`` / ``@name``), ``UNKNOWN`` is spelled out.
"""

from __future__ import annotations

from typing import Callable, Dict, FrozenSet, List

from .classifier import ValueClass
from .engine import UNKNOWN, AnalysisContext, FactMap, FactState
from .ir import Instruction

DUMP_KINDS = ("types", "rda", "points-to", "aliases")


def _name(ctx: AnalysisContext, vid: int) -> str:
    if vid == UNKNOWN:
        return "UNKNOWN"
    value = ctx.arena.value_of(vid)
    if value.name is None and isinstance(value, Instruction):
        return f"<{value}>"
    return value.ref()


def _format_map(ctx: AnalysisContext, facts: FactMap) -> List[str]:
    lines = []
    for key in sorted(facts, key=lambda k: _name(ctx, k)):
        members: FrozenSet[int] = facts[key]
        if not members:
            continue
        rendered = ", ".join(sorted(_name(ctx, m) for m in members))
        lines.append(f"      {_name(ctx, key)}: {{{rendered}}}")
    return lines


def _format_facts(
    ctx: AnalysisContext,
    title: str,
    select: Callable[[FactState], FactMap],
) -> str:
    lines = [f"{title} of @{ctx.fn.name}"]
    for block in ctx.fn.blocks:
        lines.append(f"  {block.name}:")
        for inst in block.instructions:
            if inst not in ctx.facts_in:
                continue
            lines.append(f"    {inst}")
            for label, state in (("IN", ctx.facts_in[inst]),
                                 ("OUT", ctx.facts_out[inst])):
                body = _format_map(ctx, select(state))
                lines.append(f"    {label}:" + ("" if body else " {}"))
                lines.extend(body)
    return "\n".join(lines) + "\n"


def format_classification(ctx: AnalysisContext) -> str:
    cls = ctx.classification
    lines = [f"Classification of @{ctx.fn.name}"]
    for kind, title in ((ValueClass.DATA, "data"),
                        (ValueClass.POINTER, "pointers")):
        lines.append(f"  {title}:")
        for value in cls.values_of(kind):
            lines.append(f"    {value.ref()}")
    return "\n".join(lines) + "\n"


def format_reaching_definitions(ctx: AnalysisContext) -> str:
    return _format_facts(ctx, "Reaching definitions", lambda s: s.defs)


def format_points_to(ctx: AnalysisContext) -> str:
    return _format_facts(ctx, "Points-to sets", lambda s: s.points_to)


def format_aliases(ctx: AnalysisContext) -> str:
    return _format_facts(ctx, "Alias sets", lambda s: s.aliases)


FORMATTERS: Dict[str, Callable[[AnalysisContext], str]] = {
    "types": format_classification,
    "rda": format_reaching_definitions,
    "points-to": format_points_to,
    "aliases": format_aliases,
}
