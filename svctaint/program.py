"""
svctaint.program
================

The program model consumed by the analysis.

A :class:`Program` is the procedure abstraction handed to the taint engine
by its front-end (see :mod:`svctaint.listing`) or built directly in code.
It exposes, per procedure, the parameter list, the declaring type and a
body made of basic blocks; and, per class, the base classes, the
capability tags, the method table and the named constants.

    ┌──────────────┐   methods   ┌────────────────┐  blocks  ┌────────────┐
    │  ClassDecl   │────────────▶│   Procedure    │─────────▶│ BasicBlock │
    │ bases, tags, │             │ params, locals │          │ statements │
    │ constants    │             │ visibility     │          │ successors │
    └──────────────┘             └────────────────┘          └────────────┘

Statements are assignments, expression evaluations (calls) and returns;
control flow is explicit through each block's successor list.  A block with
no successors is an exit block.

Public API
----------
    SourceLocation   - file:line:column of a statement or call
    Expr subclasses  - IntLit, StrLit, Var, This, FieldRead, BinOp, Cast, Call
    Stmt subclasses  - Assign, Evaluate, Return
    BasicBlock       - one straight-line block with its successors
    Parameter        - a formal parameter (by value or by reference)
    Procedure        - a function or method
    ClassDecl        - a class with bases, capability tags and methods
    StructDecl       - a plain data record with typed fields
    Program          - the whole program, plus hierarchy queries
"""

from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)

from .errors import MalformedProgramError


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceLocation:
    """A specific point in the analysed source."""
    file: str = ""
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        if self.column:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

# Types whose values cannot carry attacker-controlled text.
SCALAR_TYPES: FrozenSet[str] = frozenset({
    "bool", "char", "short", "int", "long", "unsigned", "signed",
    "float", "double", "size_t", "ssize_t",
    "int8_t", "int16_t", "int32_t", "int64_t",
    "uint8_t", "uint16_t", "uint32_t", "uint64_t",
    "void",
})


def base_type_name(type_name: str) -> str:
    """Strip cv-qualifiers, references and pointer stars from a type."""
    name = type_name.strip()
    for qualifier in ("const ", "volatile "):
        if name.startswith(qualifier):
            name = name[len(qualifier):]
    return name.rstrip("&* ").strip()


def is_scalar_type(type_name: str) -> bool:
    """True for integer/bool-like types (pointers to them are not scalar)."""
    name = type_name.strip()
    if name.endswith("*"):
        return False
    words = base_type_name(name).split()
    return bool(words) and all(w in SCALAR_TYPES for w in words)


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IntLit:
    value: int


@dataclass(frozen=True)
class StrLit:
    value: str


@dataclass(frozen=True)
class Var:
    """A local, a formal parameter, or a named constant."""
    name: str


@dataclass(frozen=True)
class This:
    pass


@dataclass(frozen=True)
class FieldRead:
    base: "Expr"
    name: str


@dataclass(frozen=True)
class BinOp:
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Cast:
    type_name: str
    operand: "Expr"


@dataclass(frozen=True)
class Call:
    """
    A call expression.

    Attributes
    ----------
    callee : str
        Function name (possibly qualified, e.g. ``std::system``), method name
        when *receiver* is given, or the constructed type's constructor name
        (``std::ofstream::ofstream``) when *constructor* is set.
    args : tuple
        Explicit arguments; the receiver is never counted among them.
    receiver : Expr or None
        The object a method is invoked on.
    constructor : bool
        Whether this call constructs an object (``new T(...)``).
    location : SourceLocation or None
        Where the call appears; identifies the call site in findings.
    """
    callee: str
    args: Tuple["Expr", ...] = ()
    receiver: Optional["Expr"] = None
    constructor: bool = False
    location: Optional[SourceLocation] = None


Expr = Union[IntLit, StrLit, Var, This, FieldRead, BinOp, Cast, Call]


def iter_calls(expr: Expr) -> Iterator[Call]:
    """Yield every call nested in *expr*, innermost first."""
    if isinstance(expr, Call):
        if expr.receiver is not None:
            yield from iter_calls(expr.receiver)
        for arg in expr.args:
            yield from iter_calls(arg)
        yield expr
    elif isinstance(expr, FieldRead):
        yield from iter_calls(expr.base)
    elif isinstance(expr, BinOp):
        yield from iter_calls(expr.left)
        yield from iter_calls(expr.right)
    elif isinstance(expr, Cast):
        yield from iter_calls(expr.operand)


# ---------------------------------------------------------------------------
# Statements and blocks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Assign:
    """``target = value`` where *target* is a ``Var`` or a ``FieldRead``."""
    target: Expr
    value: Expr
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class Evaluate:
    """An expression evaluated for its effects (usually a call)."""
    expr: Expr
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class Return:
    value: Optional[Expr] = None
    location: Optional[SourceLocation] = None


Stmt = Union[Assign, Evaluate, Return]


@dataclass(frozen=True)
class BasicBlock:
    """A straight-line sequence of statements."""
    id: str
    statements: Tuple[Stmt, ...] = ()
    successors: Tuple[str, ...] = ()

    @property
    def is_exit(self) -> bool:
        return not self.successors

    def label(self) -> str:
        succ = ", ".join(self.successors) or "exit"
        return f"{self.id} ({len(self.statements)} stmts) -> {succ}"


# ---------------------------------------------------------------------------
# Procedures
# ---------------------------------------------------------------------------

class Visibility(enum.Enum):
    PUBLIC = "public"
    PROTECTED = "protected"
    PRIVATE = "private"


@dataclass(frozen=True)
class Parameter:
    name: str
    type_name: str = "string"
    by_ref: bool = False

    @property
    def is_scalar(self) -> bool:
        return is_scalar_type(self.type_name)


@dataclass(eq=False)
class Procedure:
    """
    A function or method.

    ``name`` is the qualified name (``ns::Service::method`` for methods).
    A procedure without blocks is a declaration only (an interface stub or
    an external function).
    """
    name: str
    params: Tuple[Parameter, ...] = ()
    return_type: str = "void"
    blocks: Tuple[BasicBlock, ...] = ()
    entry: Optional[str] = None
    declaring_class: Optional[str] = None
    visibility: Visibility = Visibility.PUBLIC
    is_virtual: bool = False
    locals: Dict[str, str] = field(default_factory=dict)
    location: Optional[SourceLocation] = None

    def __post_init__(self) -> None:
        self.params = tuple(self.params)
        self.blocks = tuple(self.blocks)
        if self.entry is None and self.blocks:
            self.entry = self.blocks[0].id
        self._block_index: Dict[str, BasicBlock] = {
            b.id: b for b in self.blocks
        }

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other) -> bool:
        return isinstance(other, Procedure) and other.name == self.name

    # ---- queries ----------------------------------------------------------

    @property
    def short_name(self) -> str:
        return self.name.rsplit("::", 1)[-1]

    @property
    def has_body(self) -> bool:
        return bool(self.blocks)

    @property
    def is_private(self) -> bool:
        return self.visibility is Visibility.PRIVATE

    @property
    def is_method(self) -> bool:
        return self.declaring_class is not None

    def block(self, block_id: str) -> BasicBlock:
        return self._block_index[block_id]

    @property
    def entry_block(self) -> Optional[BasicBlock]:
        if self.entry is None:
            return None
        return self._block_index.get(self.entry)

    def exit_blocks(self) -> List[BasicBlock]:
        return [b for b in self.blocks if b.is_exit]

    def predecessors(self) -> Dict[str, List[str]]:
        preds: Dict[str, List[str]] = {b.id: [] for b in self.blocks}
        for b in self.blocks:
            for s in b.successors:
                preds.setdefault(s, []).append(b.id)
        return preds

    def param_index(self, name: str) -> Optional[int]:
        for i, p in enumerate(self.params):
            if p.name == name:
                return i
        return None

    def parameter(self, name: str) -> Optional[Parameter]:
        index = self.param_index(name)
        return None if index is None else self.params[index]

    def calls(self) -> Iterator[Call]:
        """Every call expression in the body, in block order."""
        for b in self.blocks:
            for stmt in b.statements:
                if isinstance(stmt, Assign):
                    yield from iter_calls(stmt.target)
                    yield from iter_calls(stmt.value)
                elif isinstance(stmt, Evaluate):
                    yield from iter_calls(stmt.expr)
                elif stmt.value is not None:
                    yield from iter_calls(stmt.value)

    def __repr__(self) -> str:
        return (f"Procedure({self.name}, params={len(self.params)}, "
                f"blocks={len(self.blocks)})")


# ---------------------------------------------------------------------------
# Classes and structs
# ---------------------------------------------------------------------------

@dataclass
class ClassDecl:
    """
    A class: base classes, capability tags, methods and named constants.

    ``methods`` is keyed by the method's short name.
    """
    name: str
    bases: Tuple[str, ...] = ()
    capabilities: FrozenSet[str] = frozenset()
    methods: Dict[str, Procedure] = field(default_factory=dict)
    constants: Dict[str, int] = field(default_factory=dict)
    fields: Dict[str, str] = field(default_factory=dict)

    @property
    def is_marker(self) -> bool:
        """True when the class declares no methods, not even stubs."""
        return not self.methods


@dataclass
class StructDecl:
    name: str
    fields: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Program
# ---------------------------------------------------------------------------

class Program:
    """The whole analysed program."""

    def __init__(self, name: str = "<program>") -> None:
        self.name = name
        self.procedures: Dict[str, Procedure] = {}
        self.classes: Dict[str, ClassDecl] = {}
        self.structs: Dict[str, StructDecl] = {}
        self.constants: Dict[str, int] = {}
        self._subclass_cache: Optional[Dict[str, List[str]]] = None

    # ---- construction -----------------------------------------------------

    def add_procedure(self, proc: Procedure) -> Procedure:
        self.procedures[proc.name] = proc
        return proc

    def add_class(self, cls: ClassDecl) -> ClassDecl:
        self.classes[cls.name] = cls
        for method in cls.methods.values():
            if method.declaring_class is None:
                method.declaring_class = cls.name
            self.procedures[method.name] = method
        for const_name, value in cls.constants.items():
            self.constants[f"{cls.name}::{const_name}"] = value
        self._subclass_cache = None
        return cls

    def add_struct(self, struct: StructDecl) -> StructDecl:
        self.structs[struct.name] = struct
        return struct

    def add_constant(self, name: str, value: int) -> None:
        self.constants[name] = value

    # ---- structural contract ----------------------------------------------

    def validate(self) -> "Program":
        """
        Check the structural contract of every procedure body.

        Raises
        ------
        MalformedProgramError
            On duplicate block ids, an unknown entry block or a successor
            that names no block.
        """
        for proc in self.procedures.values():
            if not proc.has_body:
                continue
            seen = set()
            for b in proc.blocks:
                if b.id in seen:
                    raise MalformedProgramError(
                        proc.name, f"duplicate block id '{b.id}'")
                seen.add(b.id)
            if proc.entry not in seen:
                raise MalformedProgramError(
                    proc.name, f"unknown entry block '{proc.entry}'")
            for b in proc.blocks:
                for succ in b.successors:
                    if succ not in seen:
                        raise MalformedProgramError(
                            proc.name,
                            f"block '{b.id}' has missing successor '{succ}'")
        return self

    # ---- hierarchy --------------------------------------------------------

    def ancestors(self, class_name: str) -> List[str]:
        """All transitive base-class names (declared or not), nearest first."""
        result: List[str] = []
        seen = {class_name}
        queue = deque([class_name])
        while queue:
            cls = self.classes.get(queue.popleft())
            if cls is None:
                continue
            for base in cls.bases:
                if base not in seen:
                    seen.add(base)
                    result.append(base)
                    queue.append(base)
        return result

    def subclasses(self, class_name: str) -> List[str]:
        """All transitive subclasses of *class_name*."""
        if self._subclass_cache is None:
            direct: Dict[str, List[str]] = {}
            for cls in self.classes.values():
                for base in cls.bases:
                    direct.setdefault(base, []).append(cls.name)
            self._subclass_cache = direct
        result: List[str] = []
        seen = {class_name}
        queue = deque([class_name])
        while queue:
            for sub in self._subclass_cache.get(queue.popleft(), ()):
                if sub not in seen:
                    seen.add(sub)
                    result.append(sub)
                    queue.append(sub)
        return result

    def capabilities_of(self, class_name: str) -> FrozenSet[str]:
        """Own tags plus the tags and names of every base class."""
        caps = set()
        cls = self.classes.get(class_name)
        if cls is not None:
            caps.update(cls.capabilities)
        for base in self.ancestors(class_name):
            caps.add(base)
            base_cls = self.classes.get(base)
            if base_cls is not None:
                caps.update(base_cls.capabilities)
        return frozenset(caps)

    def resolve_method(self, class_name: str,
                       method: str) -> Optional[Procedure]:
        """Find *method* in *class_name* or its nearest declaring base."""
        for name in [class_name] + self.ancestors(class_name):
            cls = self.classes.get(name)
            if cls is not None and method in cls.methods:
                return cls.methods[method]
        return None

    def is_virtual(self, class_name: str, method: str) -> bool:
        for name in [class_name] + self.ancestors(class_name):
            cls = self.classes.get(name)
            if cls is not None and method in cls.methods \
                    and cls.methods[method].is_virtual:
                return True
        return False

    def dispatch_targets(self, class_name: str,
                         method: str) -> List[Procedure]:
        """
        Every implementation a call to ``class_name::method`` may reach.

        Non-virtual methods resolve statically; virtual ones also reach every
        override declared in a subclass.
        """
        targets: List[Procedure] = []
        resolved = self.resolve_method(class_name, method)
        if resolved is not None:
            targets.append(resolved)
        if self.is_virtual(class_name, method):
            for sub in self.subclasses(class_name):
                impl = self.classes[sub].methods.get(method)
                if impl is not None and impl not in targets:
                    targets.append(impl)
        return targets

    # ---- constants and types ----------------------------------------------

    def resolve_constant(self, name: str,
                         enclosing_class: Optional[str] = None) -> Optional[int]:
        """Look *name* up as a qualified, class-relative or bare constant."""
        if name in self.constants:
            return self.constants[name]
        if enclosing_class is not None:
            for owner in [enclosing_class] + self.ancestors(enclosing_class):
                qualified = f"{owner}::{name}"
                if qualified in self.constants:
                    return self.constants[qualified]
        return None

    def field_type(self, type_name: str, field_name: str) -> Optional[str]:
        base = base_type_name(type_name)
        struct = self.structs.get(base)
        if struct is not None:
            return struct.fields.get(field_name)
        cls = self.classes.get(base)
        if cls is not None:
            return cls.fields.get(field_name)
        return None

    def record_fields(self, type_name: str) -> Optional[Dict[str, str]]:
        """The fields of a struct or class type, or ``None`` for others."""
        base = base_type_name(type_name)
        if base in self.structs:
            return dict(self.structs[base].fields)
        if base in self.classes and self.classes[base].fields:
            return dict(self.classes[base].fields)
        return None

    def static_type(self, expr: Expr, proc: Procedure) -> Optional[str]:
        """Best-effort static type of *expr* inside *proc*."""
        if isinstance(expr, This):
            return proc.declaring_class
        if isinstance(expr, Var):
            param = proc.parameter(expr.name)
            if param is not None:
                return param.type_name
            return proc.locals.get(expr.name)
        if isinstance(expr, FieldRead):
            owner = self.static_type(expr.base, proc)
            if owner is None:
                return None
            return self.field_type(owner, expr.name)
        if isinstance(expr, Cast):
            return expr.type_name
        if isinstance(expr, Call):
            if expr.constructor:
                return expr.callee.rsplit("::", 1)[0]
            return None
        if isinstance(expr, StrLit):
            return "string"
        if isinstance(expr, IntLit):
            return "int"
        return None

    # ---- iteration --------------------------------------------------------

    def bodied_procedures(self) -> Iterable[Procedure]:
        return (p for p in self.procedures.values() if p.has_body)

    def __repr__(self) -> str:
        return (f"Program({self.name}, procedures={len(self.procedures)}, "
                f"classes={len(self.classes)}, structs={len(self.structs)})")


__all__ = [
    "SourceLocation",
    "SCALAR_TYPES",
    "base_type_name",
    "is_scalar_type",
    "IntLit",
    "StrLit",
    "Var",
    "This",
    "FieldRead",
    "BinOp",
    "Cast",
    "Call",
    "Expr",
    "iter_calls",
    "Assign",
    "Evaluate",
    "Return",
    "Stmt",
    "BasicBlock",
    "Visibility",
    "Parameter",
    "Procedure",
    "ClassDecl",
    "StructDecl",
    "Program",
]
