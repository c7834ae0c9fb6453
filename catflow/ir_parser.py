"""
catflow.ir_parser
=================

Reader for the textual IR, an LLVM-flavoured subset::

    @g = global ptr
    declare void @external(ptr)

    define void @f(ptr %arg) {
    entry:
      %a = call ptr @create(i64 3)
      %p = alloca ptr
      store ptr %a, ptr %p
      call void @external(ptr %p)    ; comments run to end of line
      %b = load ptr, ptr %p
      %x = call i64 @read(ptr %b)
      ret void
    }

The text is parsed with a Parsimonious PEG grammar; a ``NodeVisitor``
turns the parse tree into plain records, which are then resolved into
:mod:`catflow.ir` objects (forward references to values and blocks are
allowed).  The resulting module is verified structurally and the arity of
every recognised operation is checked.

Public API
----------
    IR_GRAMMAR             - the Parsimonious grammar
    parse_module           - text → Module
    parse_module_file      - path → Module
    check_operation_arity  - reject malformed create/read/write/... calls
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from parsimonious.exceptions import (
    IncompleteParseError,
    ParseError,
    VisitationError,
)
from parsimonious.grammar import Grammar
from parsimonious.nodes import Node, NodeVisitor

from .config import OPERATION_ARITY, OpKind, PassOptions
from .errors import IRParseError, IRValidationError, SourceSpan
from .ir import (
    AllocaInst,
    BasicBlock,
    BranchInst,
    CallInst,
    Constant,
    Instruction,
    IRType,
    LoadInst,
    Module,
    PhiNode,
    ReturnInst,
    SelectInst,
    StoreInst,
    UnreachableInst,
    Value,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — GRAMMAR
# ═══════════════════════════════════════════════════════════════════

IR_GRAMMAR = Grammar(r'''
    module              = _ toplevel*
    toplevel            = global_decl / declare_decl / function_def

    global_decl         = global_name _ "=" _ "global" _ type _
    declare_decl        = "declare" _ type _ global_name _ "(" _ type_list? ")" _
    type_list           = type _ ("," _ type _)*

    function_def        = "define" _ type _ global_name _ "(" _ param_list? ")" _
                          "{" _ block+ "}" _
    param_list          = param ("," _ param)*
    param               = type _ local_name _

    block               = label_name ":" _ instruction+

    instruction         = assignment / statement
    assignment          = local_name _ "=" _ value_inst
    value_inst          = alloca_inst / load_inst / phi_inst / select_inst / call_inst
    statement           = store_inst / call_inst / br_inst / ret_inst / unreachable_inst

    alloca_inst         = "alloca" _ type _
    load_inst           = "load" _ type _ "," _ typed_operand
    store_inst          = "store" _ typed_operand "," _ typed_operand
    phi_inst            = "phi" _ type _ incoming ("," _ incoming)*
    incoming            = "[" _ operand "," _ local_name _ "]" _
    select_inst         = "select" _ typed_operand "," _ typed_operand "," _ typed_operand
    call_inst           = "call" _ type _ global_name _ "(" _ arg_list? ")" _
    arg_list            = typed_operand ("," _ typed_operand)*
    br_inst             = "br" _ (cond_branch / label_ref)
    cond_branch         = typed_operand "," _ label_ref "," _ label_ref
    label_ref           = "label" _ local_name _
    ret_inst            = "ret" _ (ret_void / typed_operand)
    ret_void            = "void" _
    unreachable_inst    = "unreachable" _

    typed_operand       = type _ operand
    operand             = (local_name / global_name / integer) _

    type                = ~r"(void|i64|i32|i8|i1|ptr)(?![A-Za-z0-9_])"
    local_name          = ~r"%[A-Za-z0-9_.$-]+"
    global_name         = ~r"@[A-Za-z0-9_.$-]+"
    label_name          = ~r"[A-Za-z0-9_.$-]+"
    integer             = ~r"-?[0-9]+"
    _                   = ~r"(?:\s|;[^\n]*)*"
''')


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — PARSE RECORDS
# ═══════════════════════════════════════════════════════════════════

# (kind, payload): kind is "local", "global" or "int".
OperandRef = Tuple[str, Union[str, int]]


@dataclass
class TypedRef:
    type: IRType
    ref: OperandRef


@dataclass
class RawInst:
    opcode: str
    pos: int
    result: Optional[str] = None
    type: IRType = IRType.VOID
    operands: List[TypedRef] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    callee: Optional[str] = None
    allocated: Optional[IRType] = None


@dataclass
class RawBlock:
    label: str
    pos: int
    instructions: List[RawInst]


@dataclass
class RawFunction:
    name: str
    pos: int
    return_type: IRType
    params: List[Tuple[IRType, str]]
    blocks: List[RawBlock]


@dataclass
class RawGlobal:
    name: str
    value_type: IRType


@dataclass
class RawDeclare:
    name: str
    return_type: IRType
    param_types: List[IRType]


def _seq(x: Any) -> List[Any]:
    """Children of a ``*`` / ``+`` node (``[]`` when it matched nothing)."""
    return x if isinstance(x, list) else []


def _opt(x: Any) -> Any:
    """Value of a ``?`` node, ``None`` when absent."""
    return x[0] if isinstance(x, list) and x else None


# ═══════════════════════════════════════════════════════════════════
#  PART 3 — VISITOR (Parse Tree → records)
# ═══════════════════════════════════════════════════════════════════

class IRRecordBuilder(NodeVisitor):
    """Transforms the Parsimonious parse tree into parse records."""

    def generic_visit(self, node, visited_children):
        return visited_children or node

    # ─────────────────────────────────────────────────────────────
    # Top level
    # ─────────────────────────────────────────────────────────────

    def visit_module(self, node, visited_children):
        _, toplevel = visited_children
        return _seq(toplevel)

    def visit_toplevel(self, node, visited_children):
        return visited_children[0]

    def visit_global_decl(self, node, visited_children):
        name, _, _, _, _, _, ty, _ = visited_children
        return RawGlobal(name=name, value_type=ty)

    def visit_declare_decl(self, node, visited_children):
        _, _, ret, _, name, _, _, _, types, _, _ = visited_children
        return RawDeclare(name=name, return_type=ret, param_types=_opt(types) or [])

    def visit_type_list(self, node, visited_children):
        first, _, rest = visited_children
        return [first] + [item[2] for item in _seq(rest)]

    def visit_function_def(self, node, visited_children):
        (_, _, ret, _, name, _, _, _, params, _, _,
         _, _, blocks, _, _) = visited_children
        return RawFunction(
            name=name,
            pos=node.start,
            return_type=ret,
            params=_opt(params) or [],
            blocks=_seq(blocks),
        )

    def visit_param_list(self, node, visited_children):
        first, rest = visited_children
        return [first] + [item[2] for item in _seq(rest)]

    def visit_param(self, node, visited_children):
        ty, _, name, _ = visited_children
        return (ty, name)

    def visit_block(self, node, visited_children):
        label, _, _, instructions = visited_children
        return RawBlock(label=label, pos=node.start, instructions=_seq(instructions))

    # ─────────────────────────────────────────────────────────────
    # Instructions
    # ─────────────────────────────────────────────────────────────

    def visit_instruction(self, node, visited_children):
        return visited_children[0]

    def visit_assignment(self, node, visited_children):
        name, _, _, _, inst = visited_children
        inst.result = name
        return inst

    def visit_value_inst(self, node, visited_children):
        return visited_children[0]

    def visit_statement(self, node, visited_children):
        return visited_children[0]

    def visit_alloca_inst(self, node, visited_children):
        _, _, ty, _ = visited_children
        return RawInst("alloca", node.start, type=IRType.PTR, allocated=ty)

    def visit_load_inst(self, node, visited_children):
        _, _, ty, _, _, _, ptr = visited_children
        return RawInst("load", node.start, type=ty, operands=[ptr])

    def visit_store_inst(self, node, visited_children):
        _, _, value, _, _, ptr = visited_children
        return RawInst("store", node.start, operands=[value, ptr])

    def visit_phi_inst(self, node, visited_children):
        _, _, ty, _, first, rest = visited_children
        pairs = [first] + [item[2] for item in _seq(rest)]
        return RawInst(
            "phi", node.start, type=ty,
            operands=[TypedRef(ty, ref) for ref, _ in pairs],
            labels=[label for _, label in pairs],
        )

    def visit_incoming(self, node, visited_children):
        _, _, ref, _, _, label, _, _, _ = visited_children
        return (ref, label)

    def visit_select_inst(self, node, visited_children):
        _, _, cond, _, _, if_true, _, _, if_false = visited_children
        return RawInst(
            "select", node.start, type=if_true.type,
            operands=[cond, if_true, if_false],
        )

    def visit_call_inst(self, node, visited_children):
        _, _, ty, _, callee, _, _, _, args, _, _ = visited_children
        return RawInst(
            "call", node.start, type=ty, operands=_opt(args) or [], callee=callee,
        )

    def visit_arg_list(self, node, visited_children):
        first, rest = visited_children
        return [first] + [item[2] for item in _seq(rest)]

    def visit_br_inst(self, node, visited_children):
        _, _, (target,) = visited_children
        if isinstance(target, tuple):
            cond, if_true, if_false = target
            return RawInst("br", node.start, operands=[cond],
                           labels=[if_true, if_false])
        return RawInst("br", node.start, labels=[target])

    def visit_cond_branch(self, node, visited_children):
        cond, _, _, if_true, _, _, if_false = visited_children
        return (cond, if_true, if_false)

    def visit_label_ref(self, node, visited_children):
        _, _, name, _ = visited_children
        return name

    def visit_ret_inst(self, node, visited_children):
        _, _, (value,) = visited_children
        return RawInst("ret", node.start, operands=[] if value is None else [value])

    def visit_ret_void(self, node, visited_children):
        return None

    def visit_unreachable_inst(self, node, visited_children):
        return RawInst("unreachable", node.start)

    # ─────────────────────────────────────────────────────────────
    # Leaves
    # ─────────────────────────────────────────────────────────────

    def visit_typed_operand(self, node, visited_children):
        ty, _, ref = visited_children
        return TypedRef(ty, ref)

    def visit_operand(self, node, visited_children):
        (value,), _ = visited_children
        kind = node.children[0].children[0].expr_name
        if kind == "integer":
            return ("int", value)
        return ("global" if kind == "global_name" else "local", value)

    def visit_type(self, node, visited_children):
        return IRType.from_name(node.text)

    def visit_local_name(self, node, visited_children):
        return node.text[1:]

    def visit_global_name(self, node, visited_children):
        return node.text[1:]

    def visit_label_name(self, node, visited_children):
        return node.text

    def visit_integer(self, node, visited_children):
        return int(node.text)


# ═══════════════════════════════════════════════════════════════════
#  PART 4 — RESOLUTION (records → catflow.ir)
# ═══════════════════════════════════════════════════════════════════

def _span(text: str, pos: int, filename: str) -> SourceSpan:
    line = text.count("\n", 0, pos) + 1
    column = pos - (text.rfind("\n", 0, pos) + 1) + 1
    return SourceSpan(filename, line, column)


class _Resolver:
    """Builds :mod:`catflow.ir` objects from parse records.

    Blocks are created first so that branches and phis may name later
    blocks; instructions are created next and their operands patched in a
    final sweep so that phis may use values defined further down.
    """

    def __init__(self, text: str, filename: str, name: str) -> None:
        self.text = text
        self.filename = filename
        self.module = Module(name)

    def error(self, message: str, pos: int) -> IRParseError:
        return IRParseError(message, _span(self.text, pos, self.filename))

    def resolve(self, records: List[Any]) -> Module:
        functions: List[RawFunction] = []
        for record in records:
            if isinstance(record, RawGlobal):
                self.module.add_global(record.name, record.value_type)
            elif isinstance(record, RawDeclare):
                self.module.declare(record.name, record.return_type, record.param_types)
            else:
                functions.append(record)
        for raw in functions:
            if raw.name in self.module.functions:
                raise self.error(f"function @{raw.name} redefined", raw.pos)
            self._resolve_function(raw)
        return self.module

    def _resolve_function(self, raw: RawFunction) -> None:
        param_names = [pname for _, pname in raw.params]
        if len(set(param_names)) != len(param_names):
            raise self.error(f"duplicate parameter in @{raw.name}", raw.pos)
        fn = self.module.add_function(raw.name, raw.return_type, raw.params)
        values: Dict[str, Value] = {arg.name: arg for arg in fn.args}

        blocks: Dict[str, BasicBlock] = {}
        for raw_block in raw.blocks:
            if raw_block.label in blocks or raw_block.label in values:
                raise self.error(f"duplicate label {raw_block.label!r}", raw_block.pos)
            blocks[raw_block.label] = fn.add_block(raw_block.label)
        for raw_block in raw.blocks:
            for raw_inst in raw_block.instructions:
                if raw_inst.result is not None:
                    fn.claim_name(raw_inst.result)

        pending: List[Tuple[Instruction, RawInst]] = []
        for raw_block in raw.blocks:
            block = blocks[raw_block.label]
            for raw_inst in raw_block.instructions:
                inst = self._create(raw_inst, blocks)
                if raw_inst.result is not None:
                    if raw_inst.result in values or raw_inst.result in blocks:
                        raise self.error(f"%{raw_inst.result} redefined", raw_inst.pos)
                    if not inst.has_result:
                        raise self.error(
                            f"%{raw_inst.result} is assigned a void value", raw_inst.pos
                        )
                    inst.name = raw_inst.result
                    values[raw_inst.result] = inst
                elif inst.has_result:
                    inst.name = fn.fresh_name("t")
                block.append(inst)
                pending.append((inst, raw_inst))

        for inst, raw_inst in pending:
            inst.operands = [
                self._operand(op, values, raw_inst.pos) for op in raw_inst.operands
            ]

    def _create(self, raw: RawInst, blocks: Dict[str, BasicBlock]) -> Instruction:
        def block_of(label: str) -> BasicBlock:
            if label not in blocks:
                raise self.error(f"unknown label %{label}", raw.pos)
            return blocks[label]

        # Operands are patched once every value of the function exists.
        hole = Constant(0, raw.type)
        op = raw.opcode
        if op == "alloca":
            return AllocaInst(raw.allocated)
        if op == "load":
            return LoadInst(hole, raw.type)
        if op == "store":
            return StoreInst(hole, hole)
        if op == "phi":
            return PhiNode(raw.type, [(hole, block_of(label)) for label in raw.labels])
        if op == "select":
            return SelectInst(hole, hole, hole)
        if op == "call":
            return CallInst(raw.callee, [], raw.type)
        if op == "br":
            targets = [block_of(label) for label in raw.labels]
            return BranchInst(targets, hole if raw.operands else None)
        if op == "ret":
            return ReturnInst(hole if raw.operands else None)
        return UnreachableInst()

    def _operand(self, typed: TypedRef, values: Dict[str, Value], pos: int) -> Value:
        kind, payload = typed.ref
        if kind == "int":
            return Constant(payload, typed.type)
        if kind == "global":
            gv = self.module.globals.get(payload)
            if gv is None:
                raise self.error(f"unknown global @{payload}", pos)
            return gv
        value = values.get(payload)
        if value is None:
            raise self.error(f"use of undefined value %{payload}", pos)
        return value


# ═══════════════════════════════════════════════════════════════════
#  PART 5 — PUBLIC API
# ═══════════════════════════════════════════════════════════════════

def check_operation_arity(
    module: Module, options: Optional[PassOptions] = None
) -> None:
    """Raise :class:`IRValidationError` if a recognised call is malformed.

    ``create`` must take one argument and produce a result; ``read`` and
    ``destroy`` take one argument, ``write`` two, ``add`` / ``subtract``
    three.
    """
    options = options or PassOptions()
    problems: List[str] = []
    for fn in module:
        for inst in fn.instructions():
            if not isinstance(inst, CallInst):
                continue
            kind = options.kind_of(inst.callee)
            expected = OPERATION_ARITY.get(kind)
            if expected is None:
                continue
            where = f"@{fn.name}:{inst.block.name}"
            if len(inst.args) != expected:
                problems.append(
                    f"{where}: @{inst.callee} expects {expected} argument(s), "
                    f"got {len(inst.args)}: {inst}"
                )
            if kind is OpKind.CREATE and not inst.has_result:
                problems.append(f"{where}: @{inst.callee} must return a value: {inst}")
    if problems:
        raise IRValidationError(problems)


def parse_module(
    text: str,
    filename: str = "<input>",
    options: Optional[PassOptions] = None,
    name: Optional[str] = None,
) -> Module:
    """Parse, resolve and validate a module.

    Raises
    ------
    IRParseError
        The text does not match the grammar or refers to undefined names.
    IRValidationError
        The module is structurally invalid or misuses an operation.
    """
    try:
        tree: Node = IR_GRAMMAR.parse(text)
        records = IRRecordBuilder().visit(tree)
    except IncompleteParseError as exc:
        raise IRParseError(
            f"unexpected text {text[exc.pos:exc.pos + 20]!r}",
            _span(text, exc.pos, filename), cause=exc,
        ) from exc
    except ParseError as exc:
        raise IRParseError(
            f"syntax error near {text[exc.pos:exc.pos + 20]!r}",
            _span(text, exc.pos, filename), cause=exc,
        ) from exc
    except VisitationError as exc:
        raise IRParseError(f"malformed IR: {exc}", SourceSpan(filename), cause=exc) from exc

    module = _Resolver(text, filename, name or "module").resolve(records)

    problems: List[str] = []
    for fn in module:
        problems.extend(fn.verify())
    if problems:
        raise IRValidationError(problems, SourceSpan(filename))
    check_operation_arity(module, options)
    logger.debug(
        "Parsed %s: %d function(s), %d global(s)",
        filename, len(module.functions), len(module.globals),
    )
    return module


def parse_module_file(
    path: Union[str, Path], options: Optional[PassOptions] = None
) -> Module:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise IRParseError(f"cannot read {path}: {exc}", cause=exc) from exc
    return parse_module(text, str(path), options, name=path.stem)
