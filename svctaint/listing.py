"""
listing.py — textual program listings
=====================================

A small declarative listing language that describes the program model the
taint engine consumes: classes with capability tags and methods, plain
structs, named constants, and procedure bodies made of labelled basic
blocks.

Usage::

    from svctaint.listing import parse_listing

    program = parse_listing('''
        interface facebook::fb303::cpp2::FacebookServiceSvIf;

        struct ns::request { s: string; i: int; }

        class ns::Service : facebook::fb303::cpp2::FacebookServiceSvIf {
            const URL_OPTION = 10002;

            public method run(cmd: string, &_return: string) -> void {
                b0: tmp = cmd + "x";
                    goto b1, b2;
                b1: system(tmp);
                b2: return;
            }

            private method hidden(x: string) -> void;
        }

        extern function system(cmd: char*) -> int;
    ''')

Bodies either list labelled blocks (``label: statements [goto l1, l2;]``)
or, for straight-line code, just statements.  A block without ``goto``
falls through to the next block unless it ends in ``return``; the last
block is an exit block.

Expressions are literals, names (locals, formals or constants), ``this``,
field accesses (``a.f`` or ``a->f``), method calls (``a.m(x)``), calls
(``ns::f(x)``), constructions (``new std::ofstream(p)``), casts
(``(int) K``) and ``+``.

Depends on:
    - parsimonious (PEG parser)
"""

from __future__ import annotations

import bisect
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

from parsimonious.grammar import Grammar
from parsimonious.nodes import Node, NodeVisitor
from parsimonious.exceptions import IncompleteParseError, ParseError

from .errors import ListingSyntaxError
from .program import (
    Assign,
    BasicBlock,
    BinOp,
    Call,
    Cast,
    ClassDecl,
    Evaluate,
    FieldRead,
    IntLit,
    Parameter,
    Procedure,
    Program,
    Return,
    SourceLocation,
    StrLit,
    StructDecl,
    This,
    Var,
    Visibility,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — LISTING GRAMMAR (Parsimonious PEG)
# ═══════════════════════════════════════════════════════════════════

LISTING_GRAMMAR = Grammar(r'''
    # ─────────────────────────────────────────────────────────────
    # Top-Level Structure
    # ─────────────────────────────────────────────────────────────

    listing         = _ declaration*
    declaration     = (constant_decl / interface_decl / struct_decl
                       / class_decl / function_decl) _

    constant_decl   = kw_constant _ qname _ "=" _ integer _ ";"
    interface_decl  = kw_interface _ qname _ bases? _ tags? _ ";"
    struct_decl     = kw_struct _ qname _ "{" _ struct_field* "}" _ ";"?
    struct_field    = identifier _ ":" _ type_name _ ";" _

    class_decl      = kw_class _ qname _ bases? _ tags? _ "{" _ member* "}" _ ";"?
    bases           = ":" _ qname (_ "," _ qname)*
    tags            = kw_tagged _ qname (_ "," _ qname)*
    member          = (const_member / field_member / method_decl) _
    const_member    = kw_const _ identifier _ "=" _ integer _ ";"
    field_member    = kw_field _ identifier _ ":" _ type_name _ ";"

    # ─────────────────────────────────────────────────────────────
    # Procedures
    # ─────────────────────────────────────────────────────────────

    method_decl     = visibility? _ kw_virtual? _ kw_method _ identifier _
                      "(" _ params? _ ")" _ returns? _ body_or_semi
    function_decl   = kw_extern? _ kw_function _ qname _
                      "(" _ params? _ ")" _ returns? _ body_or_semi
    params          = param (_ "," _ param)*
    param           = by_ref? _ identifier _ ":" _ type_name
    by_ref          = "&"
    returns         = "->" _ type_name
    body_or_semi    = body / ";"

    body            = "{" _ local_decl* block_list "}"
    local_decl      = kw_local _ identifier _ ":" _ type_name _ ";" _
    block_list      = labeled_block+ / statement*
    labeled_block   = label _ statement* goto_stmt? _
    label           = identifier _ ":" !":"
    goto_stmt       = kw_goto _ identifier (_ "," _ identifier)* _ ";"

    # ─────────────────────────────────────────────────────────────
    # Statements
    # ─────────────────────────────────────────────────────────────

    statement       = (return_stmt / assign_stmt / expr_stmt) _
    return_stmt     = kw_return _ expr? _ ";"
    assign_stmt     = postfix _ "=" _ expr _ ";"
    expr_stmt       = expr _ ";"

    # ─────────────────────────────────────────────────────────────
    # Expressions
    # ─────────────────────────────────────────────────────────────

    expr            = term (_ "+" _ term)*
    term            = cast / postfix
    cast            = "(" _ type_name _ ")" _ term
    postfix         = primary postfix_op*
    postfix_op      = method_call / field_access
    method_call     = _ member_op _ identifier _ "(" _ args? _ ")"
    field_access    = _ member_op _ identifier
    member_op       = "." / "->"
    primary         = new_expr / this_expr / integer / string / call / qname / paren
    new_expr        = kw_new _ qname _ "(" _ args? _ ")"
    call            = qname _ "(" _ args? _ ")"
    paren           = "(" _ expr _ ")"
    args            = expr (_ "," _ expr)*

    # ─────────────────────────────────────────────────────────────
    # Lexical
    # ─────────────────────────────────────────────────────────────

    visibility      = ~r"(public|protected|private)\b"
    kw_constant     = ~r"constant\b"
    kw_interface    = ~r"interface\b"
    kw_struct       = ~r"struct\b"
    kw_class        = ~r"class\b"
    kw_tagged       = ~r"tagged\b"
    kw_const        = ~r"const\b"
    kw_field        = ~r"field\b"
    kw_virtual      = ~r"virtual\b"
    kw_method       = ~r"method\b"
    kw_extern       = ~r"extern\b"
    kw_function     = ~r"function\b"
    kw_local        = ~r"local\b"
    kw_goto         = ~r"goto\b"
    kw_return       = ~r"return\b"
    kw_new          = ~r"new\b"
    this_expr       = ~r"this\b"

    type_name       = ~r"(const\s+)?[A-Za-z_][A-Za-z0-9_]*(::[A-Za-z_][A-Za-z0-9_]*)*(<[^<>;{}]*>)?(\s+(int|long|char|short|double)\b)*\s*[*&]*"
    qname           = ~r"(::)?[A-Za-z_][A-Za-z0-9_]*(::[A-Za-z_][A-Za-z0-9_]*)*"
    identifier      = ~r"[A-Za-z_][A-Za-z0-9_]*"
    integer         = ~r"-?[0-9]+"
    string          = ~r'"(?:[^"\\]|\\.)*"'
    _               = ~r"(?:\s+|//[^\n]*)*"
''')


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — INTERMEDIATE RESULTS
# ═══════════════════════════════════════════════════════════════════

_EXPR_TYPES = (IntLit, StrLit, Var, This, FieldRead, BinOp, Cast, Call)
_STMT_TYPES = (Assign, Evaluate, Return)


@dataclass
class _Const:
    name: str
    value: int


@dataclass
class _Field:
    name: str
    type_name: str


@dataclass
class _Local:
    name: str
    type_name: str


@dataclass
class _Member:
    """``.name`` or ``.name(args)`` applied to the expression on its left."""
    name: str
    args: Tuple[Any, ...] = ()
    is_call: bool = False
    location: Optional[SourceLocation] = None


@dataclass
class _Goto:
    targets: Tuple[str, ...]


@dataclass
class _Block:
    label: str
    statements: List[Any] = field(default_factory=list)
    goto: Optional[_Goto] = None


@dataclass
class _Body:
    locals: List[_Local]
    blocks: List[_Block]


@dataclass
class _MethodSpec:
    name: str
    params: List[Parameter]
    return_type: str
    body: Optional[_Body]
    visibility: Visibility
    is_virtual: bool
    location: SourceLocation


class _Bases(tuple):
    pass


class _Tags(tuple):
    pass


def _flatten(value: Any, types: Union[type, Tuple[type, ...]]) -> List[Any]:
    """Collect every instance of *types* in a nest of visitor lists."""
    if isinstance(value, types):
        return [value]
    if isinstance(value, list):
        out: List[Any] = []
        for item in value:
            out.extend(_flatten(item, types))
        return out
    return []


def _names_after(text: str, keyword: str) -> Tuple[str, ...]:
    body = text.strip()[len(keyword):]
    return tuple(n.strip() for n in body.split(",") if n.strip())


def _normalize_type(text: str) -> str:
    text = " ".join(text.split())
    return re.sub(r"\s+([*&])", r"\1", text)


def _unescape(literal: str) -> str:
    return re.sub(r"\\(.)", r"\1", literal[1:-1])


# ═══════════════════════════════════════════════════════════════════
#  PART 3 — PROGRAM BUILDER (NodeVisitor)
# ═══════════════════════════════════════════════════════════════════

class ListingBuilder(NodeVisitor):
    """Builds a :class:`Program` from a listing parse tree."""

    grammar = LISTING_GRAMMAR
    unwrapped_exceptions = (ListingSyntaxError,)

    def __init__(self, text: str, filename: str = "<listing>"):
        self.text = text
        self.filename = filename
        self._line_starts = [0] + [m.end() for m in re.finditer(r"\n", text)]

    def _location(self, pos: int) -> SourceLocation:
        line = bisect.bisect_right(self._line_starts, pos)
        column = pos - self._line_starts[line - 1] + 1
        return SourceLocation(self.filename, line, column)

    def _error(self, message: str, pos: int) -> ListingSyntaxError:
        loc = self._location(pos)
        return ListingSyntaxError(message, loc.line, loc.column, self.filename)

    def generic_visit(self, node, visited_children):
        """Default: return children or node text."""
        if visited_children:
            if len(visited_children) == 1:
                return visited_children[0]
            return visited_children
        return node.text.strip()

    # ─────────────────────────────────────────────────────────────
    # Top level
    # ─────────────────────────────────────────────────────────────

    def visit_listing(self, node, visited_children):
        _, declarations = visited_children
        program = Program(self.filename)
        for decl in _flatten(declarations, (_Const, StructDecl, ClassDecl,
                                            Procedure)):
            if isinstance(decl, _Const):
                program.add_constant(decl.name, decl.value)
            elif isinstance(decl, StructDecl):
                program.add_struct(decl)
            elif isinstance(decl, ClassDecl):
                program.add_class(decl)
            else:
                program.add_procedure(decl)
        return program

    def visit_declaration(self, node, visited_children):
        return visited_children[0]

    def visit_constant_decl(self, node, visited_children):
        _, _, name, _, _, _, value, _, _ = visited_children
        return _Const(name, value.value)

    def visit_interface_decl(self, node, visited_children):
        _, _, name, _, bases, _, tags, _, _ = visited_children
        return ClassDecl(
            name,
            bases=tuple(bases) if isinstance(bases, _Bases) else (),
            capabilities=frozenset(tags) if isinstance(tags, _Tags)
            else frozenset(),
        )

    def visit_struct_decl(self, node, visited_children):
        name = visited_children[2]
        fields = _flatten(visited_children[6], _Field)
        return StructDecl(name, {f.name: f.type_name for f in fields})

    def visit_struct_field(self, node, visited_children):
        name, _, _, _, type_name, _, _, _ = visited_children
        return _Field(name, type_name)

    def visit_class_decl(self, node, visited_children):
        name = visited_children[2]
        bases = visited_children[4]
        tags = visited_children[6]
        members = _flatten(visited_children[10], (_Const, _Field, _MethodSpec))
        cls = ClassDecl(
            name,
            bases=tuple(bases) if isinstance(bases, _Bases) else (),
            capabilities=frozenset(tags) if isinstance(tags, _Tags)
            else frozenset(),
        )
        for member in members:
            if isinstance(member, _Const):
                cls.constants[member.name] = member.value
            elif isinstance(member, _Field):
                cls.fields[member.name] = member.type_name
            else:
                if member.name in cls.methods:
                    raise self._error(
                        f"duplicate method '{member.name}' in class {name}",
                        node.start)
                cls.methods[member.name] = self._procedure(
                    f"{name}::{member.name}", member, declaring_class=name)
        return cls

    def visit_bases(self, node, visited_children):
        return _Bases(_names_after(node.text, ":"))

    def visit_tags(self, node, visited_children):
        return _Tags(_names_after(node.text, "tagged"))

    def visit_member(self, node, visited_children):
        return visited_children[0]

    def visit_const_member(self, node, visited_children):
        _, _, name, _, _, _, value, _, _ = visited_children
        return _Const(name, value.value)

    def visit_field_member(self, node, visited_children):
        _, _, name, _, _, _, type_name, _, _ = visited_children
        return _Field(name, type_name)

    # ─────────────────────────────────────────────────────────────
    # Procedures
    # ─────────────────────────────────────────────────────────────

    def visit_method_decl(self, node, visited_children):
        (visibility, _, virtual, _, _, _, name, _, _, _, params, _, _, _,
         returns, _, body) = visited_children
        return _MethodSpec(
            name=name,
            params=params if isinstance(params, list) else [],
            return_type=returns or "void",
            body=body if isinstance(body, _Body) else None,
            visibility=Visibility(visibility) if visibility
            else Visibility.PUBLIC,
            is_virtual=bool(virtual),
            location=self._location(node.start),
        )

    def visit_function_decl(self, node, visited_children):
        (_, _, _, _, name, _, _, _, params, _, _, _, returns, _,
         body) = visited_children
        spec = _MethodSpec(
            name=name,
            params=params if isinstance(params, list) else [],
            return_type=returns or "void",
            body=body if isinstance(body, _Body) else None,
            visibility=Visibility.PUBLIC,
            is_virtual=False,
            location=self._location(node.start),
        )
        return self._procedure(name, spec)

    def _procedure(self, name: str, spec: _MethodSpec,
                   declaring_class: Optional[str] = None) -> Procedure:
        blocks: Tuple[BasicBlock, ...] = ()
        local_types = {}
        if spec.body is not None:
            local_types = {l.name: l.type_name for l in spec.body.locals}
            blocks = self._blocks(spec.body.blocks)
        seen = set()
        for param in spec.params:
            if param.name in seen:
                raise ListingSyntaxError(
                    f"duplicate parameter '{param.name}' in {name}",
                    spec.location.line, spec.location.column, self.filename)
            seen.add(param.name)
        logger.debug("listing: %s (%d block(s))", name, len(blocks))
        return Procedure(
            name=name,
            params=tuple(spec.params),
            return_type=spec.return_type,
            blocks=blocks,
            declaring_class=declaring_class,
            visibility=spec.visibility,
            is_virtual=spec.is_virtual,
            locals=local_types,
            location=spec.location,
        )

    @staticmethod
    def _blocks(specs: List[_Block]) -> Tuple[BasicBlock, ...]:
        blocks = []
        for i, spec in enumerate(specs):
            if spec.goto is not None:
                successors = spec.goto.targets
            elif spec.statements and isinstance(spec.statements[-1], Return):
                successors = ()
            elif i + 1 < len(specs):
                successors = (specs[i + 1].label,)
            else:
                successors = ()
            blocks.append(BasicBlock(spec.label, tuple(spec.statements),
                                     tuple(successors)))
        return tuple(blocks)

    def visit_params(self, node, visited_children):
        first, rest = visited_children
        return [first] + _flatten(rest, Parameter)

    def visit_param(self, node, visited_children):
        by_ref, _, name, _, _, _, type_name = visited_children
        return Parameter(name, type_name, by_ref=bool(by_ref))

    def visit_returns(self, node, visited_children):
        return visited_children[2]

    def visit_type_name(self, node, visited_children):
        return _normalize_type(node.text)

    def visit_body(self, node, visited_children):
        _, _, local_decls, block_list, _ = visited_children
        locals_ = _flatten(local_decls, _Local)
        blocks = _flatten(block_list, _Block)
        if not blocks:
            blocks = [_Block("b0", _flatten(block_list, _STMT_TYPES))]
        labels = set()
        for block in blocks:
            if block.label in labels:
                raise self._error(f"duplicate block label '{block.label}'",
                                  node.start)
            labels.add(block.label)
        return _Body(locals_, blocks)

    def visit_local_decl(self, node, visited_children):
        _, _, name, _, _, _, type_name, _, _, _ = visited_children
        return _Local(name, type_name)

    def visit_labeled_block(self, node, visited_children):
        label, _, statements, goto, _ = visited_children
        return _Block(label, _flatten(statements, _STMT_TYPES),
                      goto if isinstance(goto, _Goto) else None)

    def visit_label(self, node, visited_children):
        return visited_children[0]

    def visit_goto_stmt(self, node, visited_children):
        text = node.text.strip().rstrip(";")
        return _Goto(_names_after(text, "goto"))

    # ─────────────────────────────────────────────────────────────
    # Statements
    # ─────────────────────────────────────────────────────────────

    def visit_statement(self, node, visited_children):
        return visited_children[0]

    def visit_return_stmt(self, node, visited_children):
        value = visited_children[2]
        return Return(value if isinstance(value, _EXPR_TYPES) else None,
                      self._location(node.start))

    def visit_assign_stmt(self, node, visited_children):
        target, _, _, _, value, _, _ = visited_children
        if not isinstance(target, (Var, FieldRead, This)):
            raise self._error("assignment target must be a name or a field",
                              node.start)
        return Assign(target, value, self._location(node.start))

    def visit_expr_stmt(self, node, visited_children):
        return Evaluate(visited_children[0], self._location(node.start))

    # ─────────────────────────────────────────────────────────────
    # Expressions
    # ─────────────────────────────────────────────────────────────

    def visit_expr(self, node, visited_children):
        left, rest = visited_children
        for operand in _flatten(rest, _EXPR_TYPES):
            left = BinOp("+", left, operand)
        return left

    def visit_cast(self, node, visited_children):
        _, _, type_name, _, _, _, operand = visited_children
        return Cast(type_name, operand)

    def visit_postfix(self, node, visited_children):
        primary, ops = visited_children
        expr = Var(primary) if isinstance(primary, str) else primary
        for op in _flatten(ops, _Member):
            if op.is_call:
                expr = Call(op.name, op.args, receiver=expr,
                            location=op.location)
            else:
                expr = FieldRead(expr, op.name)
        return expr

    def visit_method_call(self, node, visited_children):
        name = visited_children[3]
        args = visited_children[7]
        return _Member(name, tuple(args) if isinstance(args, list) else (),
                       True, self._location(node.children[3].start))

    def visit_field_access(self, node, visited_children):
        return _Member(visited_children[3])

    def visit_new_expr(self, node, visited_children):
        type_name = visited_children[2]
        args = visited_children[6]
        ctor = type_name.rsplit("::", 1)[-1]
        return Call(f"{type_name}::{ctor}",
                    tuple(args) if isinstance(args, list) else (),
                    constructor=True, location=self._location(node.start))

    def visit_call(self, node, visited_children):
        name = visited_children[0]
        args = visited_children[4]
        return Call(name, tuple(args) if isinstance(args, list) else (),
                    location=self._location(node.start))

    def visit_paren(self, node, visited_children):
        return visited_children[2]

    def visit_args(self, node, visited_children):
        first, rest = visited_children
        return [first] + _flatten(rest, _EXPR_TYPES)

    def visit_this_expr(self, node, visited_children):
        return This()

    def visit_integer(self, node, visited_children):
        return IntLit(int(node.text))

    def visit_string(self, node, visited_children):
        return StrLit(_unescape(node.text))


# ═══════════════════════════════════════════════════════════════════
#  PART 4 — PUBLIC API
# ═══════════════════════════════════════════════════════════════════

def parse_listing(text: str, filename: str = "<listing>") -> Program:
    """
    Parse a listing into a validated :class:`Program`.

    Raises:
        ListingSyntaxError: The text does not follow the listing grammar
        MalformedProgramError: A body names an unknown block
    """
    try:
        tree: Node = LISTING_GRAMMAR.parse(text)
    except IncompleteParseError as exc:
        raise ListingSyntaxError(
            f"unexpected input {text[exc.pos:exc.pos + 20]!r}",
            exc.line(), exc.column(), filename) from exc
    except ParseError as exc:
        raise ListingSyntaxError(
            f"cannot parse {text[exc.pos:exc.pos + 20]!r}",
            exc.line(), exc.column(), filename) from exc
    program = ListingBuilder(text, filename).visit(tree)
    logger.info("%s: %d procedure(s), %d class(es), %d struct(s)", filename,
                len(program.procedures), len(program.classes),
                len(program.structs))
    return program.validate()


def load_listing(path: Union[str, Path]) -> Program:
    """Read and parse a listing file."""
    path = Path(path)
    return parse_listing(path.read_text(encoding="utf-8"), str(path))


__all__ = [
    "LISTING_GRAMMAR",
    "ListingBuilder",
    "parse_listing",
    "load_listing",
]
