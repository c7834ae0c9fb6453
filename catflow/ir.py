"""
catflow.ir
==========

In-memory program representation consumed by the analysis: values,
instructions, basic blocks joined by typed edges, functions and modules.

A function is an ordered list of basic blocks.  Every block is a straight
sequence of instructions ending in exactly one terminator; the terminators
define the block's outgoing :class:`CFGEdge` objects, which are kept in sync
automatically when terminators are inserted or erased.

Public API
----------
    IRType          - the handful of scalar / pointer types the IR knows
    Value           - base of everything that can be an operand
    Constant        - integer literal
    Argument        - formal parameter of a function
    GlobalVariable  - module-level storage cell
    Instruction     - base of all instructions (see subclasses below)
    EdgeKind        - classification of a CFG edge
    CFGEdge         - a directed edge between two blocks
    BasicBlock      - a basic block
    Function        - the CFG of one function
    Module          - a set of functions, globals and declarations
    IRBuilder       - convenience API for creating instructions
    location_size   - storage size (bytes) behind a pointer-like value
    format_function - render a function in textual IR syntax
    format_module   - render a module in textual IR syntax

Typical usage::

    from catflow.ir import Function, IRBuilder, IRType

    fn = Function("main")
    b = IRBuilder(fn.add_block("entry"))
    a = b.call("create", [b.const(3)], IRType.PTR, name="a")
    x = b.call("read", [a], IRType.I64, name="x")
    b.ret(x)
    print(fn)
"""

from __future__ import annotations

import enum
from collections import OrderedDict
from typing import (
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

class IRType(enum.Enum):
    """Scalar and pointer types of the IR."""

    VOID = "void"
    I1 = "i1"
    I8 = "i8"
    I32 = "i32"
    I64 = "i64"
    PTR = "ptr"

    @property
    def store_size(self) -> int:
        """Number of bytes a value of this type occupies in memory."""
        return _STORE_SIZES[self]

    @property
    def is_pointer(self) -> bool:
        return self is IRType.PTR

    @classmethod
    def from_name(cls, name: str) -> "IRType":
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"unknown IR type {name!r}") from None


_STORE_SIZES: Dict[IRType, int] = {
    IRType.VOID: 0,
    IRType.I1: 1,
    IRType.I8: 1,
    IRType.I32: 4,
    IRType.I64: 8,
    IRType.PTR: 8,
}


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------

class Value:
    """Anything that can appear as an operand.

    Values compare by identity: two distinct ``Value`` objects are always
    different program values, even when they print the same.
    """

    __slots__ = ("name", "type")

    def __init__(self, ty: IRType, name: Optional[str] = None) -> None:
        self.name = name
        self.type = ty

    def ref(self) -> str:
        """Textual reference used when this value appears as an operand."""
        if self.name is None:
            return f"%<{id(self):x}>"
        return f"%{self.name}"

    def typed_ref(self) -> str:
        return f"{self.type.value} {self.ref()}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.ref()})"


class Constant(Value):
    """An integer literal."""

    __slots__ = ("value",)

    def __init__(self, value: int, ty: IRType = IRType.I64) -> None:
        super().__init__(ty)
        self.value = int(value)

    def ref(self) -> str:
        return str(self.value)


class Argument(Value):
    """A formal parameter; ``index`` is its position in the signature."""

    __slots__ = ("index", "parent")

    def __init__(
        self,
        ty: IRType,
        name: str,
        index: int,
        parent: Optional["Function"] = None,
    ) -> None:
        super().__init__(ty, name)
        self.index = index
        self.parent = parent


class GlobalVariable(Value):
    """A module-level storage cell.  The value itself is its address."""

    __slots__ = ("value_type",)

    def __init__(self, name: str, value_type: IRType = IRType.PTR) -> None:
        super().__init__(IRType.PTR, name)
        self.value_type = value_type

    def ref(self) -> str:
        return f"@{self.name}"


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------

class Opcode(enum.Enum):
    ALLOCA = "alloca"
    LOAD = "load"
    STORE = "store"
    PHI = "phi"
    SELECT = "select"
    CALL = "call"
    BR = "br"
    RET = "ret"
    UNREACHABLE = "unreachable"


_TERMINATORS = frozenset({Opcode.BR, Opcode.RET, Opcode.UNREACHABLE})


class Instruction(Value):
    """Base class of all instructions.

    Attributes
    ----------
    opcode : Opcode
    operands : list[Value]
        Ordered operand list.  Subclasses expose named accessors on top.
    block : BasicBlock or None
        The block that currently holds the instruction (``None`` once
        erased or before insertion).
    """

    __slots__ = ("opcode", "operands", "block")

    def __init__(
        self,
        opcode: Opcode,
        ty: IRType,
        operands: Sequence[Value] = (),
        name: Optional[str] = None,
    ) -> None:
        super().__init__(ty, name)
        self.opcode = opcode
        self.operands: List[Value] = list(operands)
        self.block: Optional[BasicBlock] = None

    @property
    def is_terminator(self) -> bool:
        return self.opcode in _TERMINATORS

    @property
    def has_result(self) -> bool:
        return self.type is not IRType.VOID

    @property
    def function(self) -> Optional["Function"]:
        return self.block.parent if self.block is not None else None

    def replace_uses_of(self, old: Value, new: Value) -> int:
        """Replace every operand that *is* ``old`` with ``new``.

        Returns the number of operands rewritten.
        """
        count = 0
        for i, op in enumerate(self.operands):
            if op is old:
                self.operands[i] = new
                count += 1
        return count

    def erase_from_parent(self) -> None:
        """Remove this instruction from its block."""
        if self.block is not None:
            self.block.remove(self)

    def __str__(self) -> str:
        return format_instruction(self)


class AllocaInst(Instruction):
    """Introduces a fresh stack cell holding one ``allocated_type``."""

    __slots__ = ("allocated_type",)

    def __init__(
        self,
        allocated_type: IRType = IRType.PTR,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(Opcode.ALLOCA, IRType.PTR, (), name)
        self.allocated_type = allocated_type


class LoadInst(Instruction):
    __slots__ = ()

    def __init__(
        self,
        ptr: Value,
        ty: IRType = IRType.PTR,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(Opcode.LOAD, ty, (ptr,), name)

    @property
    def pointer_operand(self) -> Value:
        return self.operands[0]


class StoreInst(Instruction):
    __slots__ = ()

    def __init__(self, value: Value, ptr: Value) -> None:
        super().__init__(Opcode.STORE, IRType.VOID, (value, ptr))

    @property
    def value_operand(self) -> Value:
        return self.operands[0]

    @property
    def pointer_operand(self) -> Value:
        return self.operands[1]


class PhiNode(Instruction):
    """SSA merge.  ``operands[i]`` flows in from ``incoming_blocks[i]``."""

    __slots__ = ("incoming_blocks",)

    def __init__(
        self,
        ty: IRType,
        incoming: Sequence[Tuple[Value, "BasicBlock"]] = (),
        name: Optional[str] = None,
    ) -> None:
        super().__init__(Opcode.PHI, ty, [v for v, _ in incoming], name)
        self.incoming_blocks: List[BasicBlock] = [b for _, b in incoming]

    def incoming(self) -> Iterator[Tuple[Value, "BasicBlock"]]:
        return zip(self.operands, self.incoming_blocks)


class SelectInst(Instruction):
    __slots__ = ()

    def __init__(
        self,
        cond: Value,
        if_true: Value,
        if_false: Value,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(
            Opcode.SELECT, if_true.type, (cond, if_true, if_false), name
        )

    @property
    def condition(self) -> Value:
        return self.operands[0]

    @property
    def true_value(self) -> Value:
        return self.operands[1]

    @property
    def false_value(self) -> Value:
        return self.operands[2]


class CallInst(Instruction):
    """Direct call of a function identified by name."""

    __slots__ = ("callee",)

    def __init__(
        self,
        callee: str,
        args: Sequence[Value] = (),
        ty: IRType = IRType.VOID,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(Opcode.CALL, ty, args, name)
        self.callee = callee

    @property
    def args(self) -> List[Value]:
        return self.operands

    def arg(self, i: int) -> Value:
        return self.operands[i]


class BranchInst(Instruction):
    """Unconditional (one target) or conditional (two targets) branch."""

    __slots__ = ("targets",)

    def __init__(
        self,
        targets: Sequence["BasicBlock"],
        cond: Optional[Value] = None,
    ) -> None:
        super().__init__(
            Opcode.BR, IRType.VOID, (cond,) if cond is not None else ()
        )
        self.targets: List[BasicBlock] = list(targets)

    @property
    def is_conditional(self) -> bool:
        return bool(self.operands)

    @property
    def condition(self) -> Optional[Value]:
        return self.operands[0] if self.operands else None


class ReturnInst(Instruction):
    __slots__ = ()

    def __init__(self, value: Optional[Value] = None) -> None:
        super().__init__(
            Opcode.RET, IRType.VOID, (value,) if value is not None else ()
        )

    @property
    def return_value(self) -> Optional[Value]:
        return self.operands[0] if self.operands else None


class UnreachableInst(Instruction):
    __slots__ = ()

    def __init__(self) -> None:
        super().__init__(Opcode.UNREACHABLE, IRType.VOID)


def location_size(value: Value) -> int:
    """Storage size in bytes of the cell *value* points at (0 if unsized)."""
    if isinstance(value, AllocaInst):
        return value.allocated_type.store_size
    if isinstance(value, GlobalVariable):
        return value.value_type.store_size
    return 0


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------

class EdgeKind(enum.Enum):
    """Classification of a CFG edge."""

    FALL_THROUGH = "fall-through"
    BRANCH_TRUE = "branch-true"
    BRANCH_FALSE = "branch-false"


class CFGEdge:
    """A directed edge in the CFG.

    Attributes
    ----------
    src : BasicBlock
    dst : BasicBlock
    kind : EdgeKind
    """

    __slots__ = ("src", "dst", "kind")

    def __init__(
        self,
        src: "BasicBlock",
        dst: "BasicBlock",
        kind: EdgeKind = EdgeKind.FALL_THROUGH,
    ) -> None:
        self.src = src
        self.dst = dst
        self.kind = kind

    def __repr__(self) -> str:
        return (
            f"CFGEdge({self.src.name} -> {self.dst.name}, "
            f"kind={self.kind.value!r})"
        )


# ---------------------------------------------------------------------------
# BasicBlock
# ---------------------------------------------------------------------------

class BasicBlock:
    """A basic block.

    Attributes
    ----------
    id : int
        Position-independent identifier, unique within the owning function.
    name : str
        Label used in textual IR.
    instructions : list[Instruction]
    parent : Function or None
    successors : list[CFGEdge]
        Outgoing edges, derived from the terminator.
    predecessors : list[CFGEdge]
        Incoming edges.
    """

    __slots__ = (
        "id",
        "name",
        "instructions",
        "parent",
        "successors",
        "predecessors",
    )

    def __init__(
        self,
        name: str,
        parent: Optional["Function"] = None,
        block_id: int = 0,
    ) -> None:
        self.id = block_id
        self.name = name
        self.instructions: List[Instruction] = []
        self.parent = parent
        self.successors: List[CFGEdge] = []
        self.predecessors: List[CFGEdge] = []

    # ----- structure --------------------------------------------------------

    @property
    def terminator(self) -> Optional[Instruction]:
        if self.instructions and self.instructions[-1].is_terminator:
            return self.instructions[-1]
        return None

    def phis(self) -> List[PhiNode]:
        return [i for i in self.instructions if isinstance(i, PhiNode)]

    def successor_blocks(self) -> List["BasicBlock"]:
        return [e.dst for e in self.successors]

    def predecessor_blocks(self) -> List["BasicBlock"]:
        return [e.src for e in self.predecessors]

    # ----- mutation ---------------------------------------------------------

    def append(self, inst: Instruction) -> Instruction:
        self.instructions.append(inst)
        self._adopt(inst)
        return inst

    def insert_before(self, inst: Instruction, anchor: Instruction) -> Instruction:
        """Insert ``inst`` immediately before ``anchor`` (which must be here)."""
        idx = self.instructions.index(anchor)
        self.instructions.insert(idx, inst)
        self._adopt(inst)
        return inst

    def remove(self, inst: Instruction) -> None:
        self.instructions.remove(inst)
        inst.block = None
        if inst.is_terminator and self.parent is not None:
            self.parent._unlink(self)

    def _adopt(self, inst: Instruction) -> None:
        inst.block = self
        if self.parent is not None:
            if inst.name is not None:
                self.parent.claim_name(inst.name)
            if inst.is_terminator:
                self.parent._link(self, inst)

    def __repr__(self) -> str:
        return (
            f"BasicBlock(id={self.id}, name={self.name!r}, "
            f"ninstructions={len(self.instructions)})"
        )


# ---------------------------------------------------------------------------
# Function
# ---------------------------------------------------------------------------

class Function:
    """Control flow graph of a single function.

    Attributes
    ----------
    name : str
    return_type : IRType
    args : list[Argument]
    blocks : list[BasicBlock]
        In textual order; ``blocks[0]`` is the entry block.
    module : Module or None
    """

    def __init__(
        self,
        name: str,
        return_type: IRType = IRType.VOID,
        params: Sequence[Tuple[IRType, str]] = (),
        module: Optional["Module"] = None,
    ) -> None:
        self.name = name
        self.return_type = return_type
        self.module = module
        self.blocks: List[BasicBlock] = []
        self._names: Set[str] = set()
        self._next_block_id = 0
        self.args: List[Argument] = []
        for index, (ty, pname) in enumerate(params):
            self.claim_name(pname)
            self.args.append(Argument(ty, pname, index, parent=self))

    # ----- graph mutation ---------------------------------------------------

    @property
    def entry(self) -> Optional[BasicBlock]:
        return self.blocks[0] if self.blocks else None

    def add_block(self, name: Optional[str] = None) -> BasicBlock:
        """Create, register and return a new (empty) block."""
        block = BasicBlock(
            self.fresh_name(name or "bb"), parent=self,
            block_id=self._next_block_id,
        )
        self._next_block_id += 1
        self.blocks.append(block)
        return block

    def block_named(self, name: str) -> Optional[BasicBlock]:
        for block in self.blocks:
            if block.name == name:
                return block
        return None

    def _link(self, block: BasicBlock, term: Instruction) -> None:
        if not isinstance(term, BranchInst):
            return
        if term.is_conditional:
            kinds = (EdgeKind.BRANCH_TRUE, EdgeKind.BRANCH_FALSE)
        else:
            kinds = (EdgeKind.FALL_THROUGH,)
        for target, kind in zip(term.targets, kinds):
            edge = CFGEdge(block, target, kind)
            block.successors.append(edge)
            target.predecessors.append(edge)

    def _unlink(self, block: BasicBlock) -> None:
        for edge in block.successors:
            edge.dst.predecessors = [
                e for e in edge.dst.predecessors if e is not edge
            ]
        block.successors = []

    # ----- names ------------------------------------------------------------

    def claim_name(self, name: str) -> None:
        self._names.add(name)

    def fresh_name(self, hint: str = "t") -> str:
        """Return ``hint`` or ``hint.N``, whichever is unused, and claim it."""
        candidate = hint
        n = 0
        while candidate in self._names:
            n += 1
            candidate = f"{hint}.{n}"
        self._names.add(candidate)
        return candidate

    # ----- queries ----------------------------------------------------------

    def instructions(self) -> Iterator[Instruction]:
        for block in self.blocks:
            yield from block.instructions

    def calls(self) -> List[CallInst]:
        return [i for i in self.instructions() if isinstance(i, CallInst)]

    def replace_all_uses_with(self, old: Value, new: Value) -> int:
        """Rewrite every operand use of ``old`` in this function to ``new``."""
        return sum(i.replace_uses_of(old, new) for i in self.instructions())

    def verify(self) -> List[str]:
        """Check structural well-formedness; return one message per problem."""
        problems: List[str] = []
        if not self.blocks:
            return [f"@{self.name}: function has no blocks"]
        if self.entry.predecessors:
            problems.append(
                f"@{self.name}: entry block {self.entry.name!r} has predecessors"
            )
        owned = set(self.instructions())
        for block in self.blocks:
            where = f"@{self.name}:{block.name}"
            if block.terminator is None:
                problems.append(f"{where}: block does not end in a terminator")
            phis = block.phis()
            leading = block.instructions[:len(phis)]
            preds = set(block.predecessor_blocks())
            for phi in phis:
                if phi not in leading:
                    problems.append(f"{where}: phi after non-phi: {phi}")
                if set(phi.incoming_blocks) != preds:
                    problems.append(
                        f"{where}: phi incoming blocks do not match "
                        f"predecessors: {phi}"
                    )
            for inst in block.instructions:
                if inst.is_terminator and inst is not block.instructions[-1]:
                    problems.append(f"{where}: terminator in the middle: {inst}")
                for op in inst.operands:
                    if isinstance(op, Instruction) and op not in owned:
                        problems.append(
                            f"{where}: operand {op.ref()} is not in this function"
                        )
        return problems

    # ----- serialisation helpers --------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation of this CFG."""
        lines = ["digraph CFG {"]
        if title:
            lines.append(f'  label="{title}";')
        lines.append("  node [shape=box, fontname=monospace, fontsize=10];")
        for n in self.blocks:
            body = "\\l".join(
                str(i).replace('"', '\\"') for i in n.instructions
            )
            color = ""
            if n is self.entry:
                color = ', style=filled, fillcolor="#ccffcc"'
            lines.append(f'  BB{n.id} [label="{n.name}:\\l{body}\\l"{color}];')
        for n in self.blocks:
            for e in n.successors:
                style = ""
                if e.kind == EdgeKind.BRANCH_TRUE:
                    style = ', color=green, fontcolor=green'
                elif e.kind == EdgeKind.BRANCH_FALSE:
                    style = ', color=red, fontcolor=red'
                lines.append(
                    f'  BB{e.src.id} -> BB{e.dst.id} '
                    f'[label="{e.kind.value}"{style}];'
                )
        lines.append("}")
        return "\n".join(lines)

    def __str__(self) -> str:
        return format_function(self)

    def __repr__(self) -> str:
        return f"Function(name={self.name!r}, blocks={len(self.blocks)})"


# ---------------------------------------------------------------------------
# Module
# ---------------------------------------------------------------------------

class Module:
    """Functions, globals and external declarations of one translation unit."""

    def __init__(self, name: str = "module") -> None:
        self.name = name
        self.functions: Dict[str, Function] = OrderedDict()
        self.globals: Dict[str, GlobalVariable] = OrderedDict()
        self.declarations: Dict[str, Tuple[IRType, Tuple[IRType, ...]]] = (
            OrderedDict()
        )

    def add_function(
        self,
        name: str,
        return_type: IRType = IRType.VOID,
        params: Sequence[Tuple[IRType, str]] = (),
    ) -> Function:
        fn = Function(name, return_type, params, module=self)
        self.functions[name] = fn
        return fn

    def add_global(
        self, name: str, value_type: IRType = IRType.PTR
    ) -> GlobalVariable:
        gv = GlobalVariable(name, value_type)
        self.globals[name] = gv
        return gv

    def declare(
        self,
        name: str,
        return_type: IRType,
        param_types: Sequence[IRType] = (),
    ) -> None:
        self.declarations[name] = (return_type, tuple(param_types))

    def get_function(self, name: str) -> Optional[Function]:
        return self.functions.get(name)

    def __iter__(self) -> Iterator[Function]:
        return iter(self.functions.values())

    def __str__(self) -> str:
        return format_module(self)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class IRBuilder:
    """Creates instructions at the end of a block or before an anchor.

    Result-producing instructions are given a unique name derived from
    ``name`` (or ``"t"``).
    """

    def __init__(
        self,
        block: BasicBlock,
        anchor: Optional[Instruction] = None,
    ) -> None:
        self.block = block
        self.anchor = anchor

    @classmethod
    def before(cls, inst: Instruction) -> "IRBuilder":
        """Builder inserting immediately before ``inst``."""
        if inst.block is None:
            raise ValueError(f"{inst!r} is not in a block")
        return cls(inst.block, inst)

    def _insert(self, inst: Instruction, name: Optional[str]) -> Instruction:
        fn = self.block.parent
        if inst.has_result and fn is not None:
            inst.name = fn.fresh_name(name or "t")
        elif inst.has_result:
            inst.name = name
        if self.anchor is None:
            return self.block.append(inst)
        return self.block.insert_before(inst, self.anchor)

    @staticmethod
    def const(value: int, ty: IRType = IRType.I64) -> Constant:
        return Constant(value, ty)

    def phi(
        self,
        ty: IRType,
        incoming: Sequence[Tuple[Value, BasicBlock]] = (),
        name: Optional[str] = None,
    ) -> PhiNode:
        return self._insert(PhiNode(ty, incoming), name)

    def call(
        self,
        callee: str,
        args: Sequence[Value] = (),
        ty: IRType = IRType.VOID,
        name: Optional[str] = None,
    ) -> CallInst:
        return self._insert(CallInst(callee, args, ty), name)

    def br(self, target: BasicBlock) -> BranchInst:
        return self._insert(BranchInst([target]), None)

    def cond_br(
        self, cond: Value, if_true: BasicBlock, if_false: BasicBlock
    ) -> BranchInst:
        return self._insert(BranchInst([if_true, if_false], cond), None)

    def ret(self, value: Optional[Value] = None) -> ReturnInst:
        return self._insert(ReturnInst(value), None)


# ---------------------------------------------------------------------------
# Printing
# ---------------------------------------------------------------------------

def format_instruction(inst: Instruction) -> str:
    """Render one instruction in textual IR syntax."""
    lhs = f"{inst.ref()} = " if inst.has_result else ""
    ops = inst.operands
    if isinstance(inst, AllocaInst):
        body = f"alloca {inst.allocated_type.value}"
    elif isinstance(inst, LoadInst):
        body = f"load {inst.type.value}, {ops[0].typed_ref()}"
    elif isinstance(inst, StoreInst):
        body = f"store {ops[0].typed_ref()}, {ops[1].typed_ref()}"
    elif isinstance(inst, PhiNode):
        pairs = ", ".join(
            f"[ {v.ref()}, %{b.name} ]" for v, b in inst.incoming()
        )
        body = f"phi {inst.type.value} {pairs}"
    elif isinstance(inst, SelectInst):
        body = "select " + ", ".join(op.typed_ref() for op in ops)
    elif isinstance(inst, CallInst):
        args = ", ".join(op.typed_ref() for op in ops)
        body = f"call {inst.type.value} @{inst.callee}({args})"
    elif isinstance(inst, BranchInst):
        labels = ", ".join(f"label %{t.name}" for t in inst.targets)
        if inst.is_conditional:
            body = f"br {ops[0].typed_ref()}, {labels}"
        else:
            body = f"br {labels}"
    elif isinstance(inst, ReturnInst):
        body = f"ret {ops[0].typed_ref()}" if ops else "ret void"
    else:
        body = inst.opcode.value
    return lhs + body


def format_function(fn: Function) -> str:
    params = ", ".join(a.typed_ref() for a in fn.args)
    lines = [f"define {fn.return_type.value} @{fn.name}({params}) {{"]
    for block in fn.blocks:
        lines.append(f"{block.name}:")
        for inst in block.instructions:
            lines.append(f"  {inst}")
    lines.append("}")
    return "\n".join(lines)


def format_module(module: Module) -> str:
    parts: List[str] = []
    header: List[str] = []
    for gv in module.globals.values():
        header.append(f"@{gv.name} = global {gv.value_type.value}")
    for name, (ret, params) in module.declarations.items():
        plist = ", ".join(p.value for p in params)
        header.append(f"declare {ret.value} @{name}({plist})")
    if header:
        parts.append("\n".join(header))
    parts.extend(format_function(fn) for fn in module.functions.values())
    return "\n\n".join(parts) + "\n"
