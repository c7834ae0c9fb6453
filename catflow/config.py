"""
catflow.config
==============

Names of the recognised operations and the knobs of the pass.

The six boxed-integer operations are recognised by callee name.  The
defaults are the plain names ``create/read/write/add/subtract/destroy``;
:meth:`OperationNames.cat_style` gives the ``CAT_*`` runtime names.

Options can be built in code or loaded from a JSON object::

    {
      "names": "cat",
      "benign_callees": ["printf", "puts"],
      "benign_prefixes": ["llvm.lifetime"],
      "readonly_callees": ["strlen"],
      "max_iterations": 100000
    }

``names`` is either ``"default"``, ``"cat"`` or an object mapping the six
operation keys to callee names.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Union

from .errors import ConfigError

logger = logging.getLogger(__name__)


class OpKind(enum.Enum):
    """What a call instruction means to the analysis."""

    CREATE = "create"
    READ = "read"
    WRITE = "write"
    ADD = "add"
    SUBTRACT = "subtract"
    DESTROY = "destroy"
    BENIGN = "benign"
    OPAQUE = "opaque"

    @property
    def is_cat_operation(self) -> bool:
        return self not in (OpKind.BENIGN, OpKind.OPAQUE)

    @property
    def defines_arg0(self) -> bool:
        """write / add / subtract redefine the Data handle in argument 0."""
        return self in (OpKind.WRITE, OpKind.ADD, OpKind.SUBTRACT)


# Number of arguments each recognised operation takes.
OPERATION_ARITY: Dict[OpKind, int] = {
    OpKind.CREATE: 1,
    OpKind.READ: 1,
    OpKind.WRITE: 2,
    OpKind.ADD: 3,
    OpKind.SUBTRACT: 3,
    OpKind.DESTROY: 1,
}


@dataclass(frozen=True)
class OperationNames:
    """Callee names of the six operations."""

    create: str = "create"
    read: str = "read"
    write: str = "write"
    add: str = "add"
    subtract: str = "subtract"
    destroy: str = "destroy"

    @classmethod
    def default(cls) -> "OperationNames":
        return cls()

    @classmethod
    def cat_style(cls) -> "OperationNames":
        return cls(
            create="CAT_new",
            read="CAT_get",
            write="CAT_set",
            add="CAT_add",
            subtract="CAT_sub",
            destroy="CAT_destroy",
        )

    def __post_init__(self) -> None:
        # Reverse table for kind_of(), consulted once per call instruction.
        object.__setattr__(self, "_by_callee", self.as_dict())

    def as_dict(self) -> Dict[str, OpKind]:
        return {getattr(self, f.name): OpKind(f.name) for f in fields(self)}

    def name_of(self, kind: OpKind) -> str:
        return getattr(self, kind.value)

    def kind_of(self, callee: str) -> OpKind:
        """Operation kind of *callee*, ``OPAQUE`` if it is not one of the six.

        Benign callees are decided by :meth:`PassOptions.kind_of`.
        """
        return self._by_callee.get(callee, OpKind.OPAQUE)


def _names_from(raw: Any) -> OperationNames:
    if isinstance(raw, OperationNames):
        return raw
    if raw in (None, "default"):
        return OperationNames.default()
    if raw == "cat":
        return OperationNames.cat_style()
    if isinstance(raw, Mapping):
        allowed = {f.name for f in fields(OperationNames)}
        unknown = set(raw) - allowed
        if unknown:
            raise ConfigError(
                f"unknown operation name key(s): {', '.join(sorted(unknown))}"
            )
        for key, value in raw.items():
            if not isinstance(value, str) or not value:
                raise ConfigError(f"operation name {key!r} must be a non-empty string")
        names = OperationNames(**raw)
        if len(set(names.as_dict())) != len(allowed):
            raise ConfigError("operation names must be distinct")
        return names
    raise ConfigError(f"invalid 'names' value: {raw!r}")


def _str_set(key: str, raw: Any) -> FrozenSet[str]:
    if isinstance(raw, str) or not isinstance(raw, Iterable):
        raise ConfigError(f"{key!r} must be a list of strings")
    items = list(raw)
    if not all(isinstance(x, str) for x in items):
        raise ConfigError(f"{key!r} must be a list of strings")
    return frozenset(items)


@dataclass
class PassOptions:
    """Options shared by the classifier, engine, oracle and optimizer.

    Attributes
    ----------
    names : OperationNames
    benign_callees : frozenset[str]
        Calls with no effect on tracked state (besides the ``read`` and
        ``destroy`` operations, which are always benign).
    benign_prefixes : frozenset[str]
        Callee name prefixes treated as benign.
    readonly_callees : frozenset[str]
        External functions known not to write memory; consulted by
        :class:`catflow.oracle.EscapeOracle`.
    max_iterations : int
        Bound on block visits of the worklist.
    """

    names: OperationNames = field(default_factory=OperationNames.default)
    benign_callees: FrozenSet[str] = frozenset({"printf"})
    benign_prefixes: FrozenSet[str] = frozenset({"llvm.lifetime"})
    readonly_callees: FrozenSet[str] = frozenset()
    max_iterations: int = 1_000_000

    def kind_of(self, callee: str) -> OpKind:
        kind = self.names.kind_of(callee)
        if kind is not OpKind.OPAQUE:
            return kind
        if callee in self.benign_callees:
            return OpKind.BENIGN
        if any(callee.startswith(p) for p in self.benign_prefixes):
            return OpKind.BENIGN
        return OpKind.OPAQUE

    # ----- loading ----------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PassOptions":
        if not isinstance(data, Mapping):
            raise ConfigError("configuration must be a JSON object")
        allowed = {f.name for f in fields(cls)}
        unknown = set(data) - allowed
        if unknown:
            raise ConfigError(
                f"unknown configuration key(s): {', '.join(sorted(unknown))}"
            )
        kwargs: Dict[str, Any] = {}
        if "names" in data:
            kwargs["names"] = _names_from(data["names"])
        for key in ("benign_callees", "benign_prefixes", "readonly_callees"):
            if key in data:
                kwargs[key] = _str_set(key, data[key])
        if "max_iterations" in data:
            value = data["max_iterations"]
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError("'max_iterations' must be a positive integer")
            kwargs["max_iterations"] = value
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "PassOptions":
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"cannot read config {path}: {exc}", cause=exc) from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(
                f"{path}: invalid JSON at line {exc.lineno}: {exc.msg}", cause=exc
            ) from exc
        options = cls.from_dict(data)
        logger.debug("Loaded pass options from %s: %r", path, options)
        return options
