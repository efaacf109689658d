"""
svctaint/access_tree.py
═══════════════════════

Abstract locations and the field-sensitive taint state.

An *access path* names a storage slot: a base (a local, a formal parameter,
the receiver ``this`` or the return slot) followed by a finite list of field
names.  Paths are bounded: a path deeper than ``max_access_depth`` collapses
onto its root object and is marked *abstracted* (it then stands for the
root and everything below it).

Taint values live in *access trees*, one per base:

    formal ──┬── s   : {UserControlled@formal}   (★ leaf)
             ├── i   : Clean                     (★ leaf)
             └── req ──┬── url : {…}             (★ leaf)
                       └── id  : Clean           (★ leaf)

Every node holds a value and either explicit children or a *star* (★): a
starred node's value stands for every extension of its path.

    exact read       the node's value; a starred ancestor's value when one is
                     met first; nothing when the path is absent
    abstracted read  the join of the node's value and every value below it
    exact write      strong update: the subtree at the path is replaced
    abstracted write weak update: joined into a starred leaf

The analysis is field-sensitive but not alias-sensitive: two paths are never
assumed to denote the same storage.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import (
    Callable,
    Dict,
    Iterator,
    Mapping,
    Optional,
    Tuple,
)

from .taint_lattice import CLEAN, TaintValue


DEFAULT_MAX_ACCESS_DEPTH = 3


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — BASES AND ACCESS PATHS
# ═══════════════════════════════════════════════════════════════════════════

class BaseKind(enum.Enum):
    LOCAL = "local"
    PARAMETER = "parameter"
    RECEIVER = "receiver"
    RETURN = "return"


@dataclass(frozen=True)
class Base:
    """The root of an access path, identified by kind and name."""
    kind: BaseKind
    name: str = ""
    index: int = field(default=-1, compare=False)

    @classmethod
    def local(cls, name: str) -> 'Base':
        return cls(BaseKind.LOCAL, name)

    @classmethod
    def parameter(cls, name: str, index: int) -> 'Base':
        return cls(BaseKind.PARAMETER, name, index)

    @classmethod
    def receiver(cls) -> 'Base':
        return cls(BaseKind.RECEIVER, "this")

    @classmethod
    def return_slot(cls) -> 'Base':
        return cls(BaseKind.RETURN, "<return>")

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class AccessPath:
    """
    A base plus a bounded list of fields.

    Attributes:
        base: The root of the path
        fields: Field names from the root outwards
        abstracted: Whether the path stands for its whole subtree
    """
    base: Base
    fields: Tuple[str, ...] = ()
    abstracted: bool = False

    @classmethod
    def of(cls, base: Base, *fields: str) -> 'AccessPath':
        return cls(base, tuple(fields))

    def bounded(self, max_depth: int) -> 'AccessPath':
        """Collapse onto the root when deeper than *max_depth*."""
        if len(self.fields) <= max_depth:
            return self
        return AccessPath(self.base, (), True)

    def extend(self, *fields: str) -> 'AccessPath':
        return AccessPath(self.base, self.fields + tuple(fields),
                          self.abstracted)

    def abstract(self) -> 'AccessPath':
        if self.abstracted:
            return self
        return AccessPath(self.base, self.fields, True)

    @property
    def depth(self) -> int:
        return len(self.fields)

    def __str__(self) -> str:
        text = ".".join((str(self.base),) + self.fields)
        return text + ".*" if self.abstracted else text


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — ACCESS TREES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AccessTree:
    """
    An immutable tree of taint values indexed by field names.

    Trees are persistent: every update returns a new tree that shares the
    untouched subtrees with the old one.
    """
    value: TaintValue = CLEAN
    children: Mapping[str, 'AccessTree'] = field(default_factory=dict)
    star: bool = False

    __hash__ = None  # type: ignore[assignment]

    # ─────────────────────────────────────────────────────────────────
    #  Factory methods
    # ─────────────────────────────────────────────────────────────────

    @classmethod
    def empty(cls) -> 'AccessTree':
        return _EMPTY

    @classmethod
    def leaf(cls, value: TaintValue) -> 'AccessTree':
        """A starred node: *value* covers every extension of the path."""
        return cls(value, {}, True)

    @classmethod
    def node(cls, children: Mapping[str, 'AccessTree'],
             value: TaintValue = CLEAN) -> 'AccessTree':
        return cls(value, dict(children), False)

    # ─────────────────────────────────────────────────────────────────
    #  Queries
    # ─────────────────────────────────────────────────────────────────

    def collapse(self) -> TaintValue:
        """Join of this node's value with every value below it."""
        result = self.value
        for child in self.children.values():
            result = result.join(child.collapse())
        return result

    def get(self, fields: Tuple[str, ...]) -> Optional[TaintValue]:
        """Exact read: ``None`` when the path is absent."""
        current = self
        for name in fields:
            if current.star:
                return current.value
            nxt = current.children.get(name)
            if nxt is None:
                return None
            current = nxt
        return current.value

    def get_deep(self, fields: Tuple[str, ...]) -> TaintValue:
        """Abstracted read: everything at or below the path."""
        sub = self.subtree(fields)
        return CLEAN if sub is None else sub.collapse()

    def subtree(self, fields: Tuple[str, ...]) -> Optional['AccessTree']:
        """The tree rooted at the path (a leaf when a star covers it)."""
        current = self
        for name in fields:
            if current.star:
                return AccessTree.leaf(current.value)
            nxt = current.children.get(name)
            if nxt is None:
                return None
            current = nxt
        return current

    def depth(self) -> int:
        if not self.children:
            return 0
        return 1 + max(c.depth() for c in self.children.values())

    def iter_nodes(self, prefix: Tuple[str, ...] = ()
                   ) -> Iterator[Tuple[Tuple[str, ...], 'AccessTree']]:
        """Pre-order walk yielding ``(fields, node)`` pairs."""
        yield prefix, self
        for name in sorted(self.children):
            yield from self.children[name].iter_nodes(prefix + (name,))

    # ─────────────────────────────────────────────────────────────────
    #  Updates
    # ─────────────────────────────────────────────────────────────────

    def set(self, fields: Tuple[str, ...], subtree: 'AccessTree') -> 'AccessTree':
        """
        Exact write (strong update) of *subtree* at the path.

        A starred node met on the way cannot be refined without losing the
        fields it summarizes, so the write degrades to a weak join there.
        """
        if not fields:
            return subtree
        if self.star:
            return AccessTree.leaf(self.value.join(subtree.collapse()))
        head, rest = fields[0], fields[1:]
        child = self.children.get(head, _EMPTY)
        children = dict(self.children)
        children[head] = child.set(rest, subtree)
        return AccessTree(self.value, children, False)

    def weak_set(self, fields: Tuple[str, ...],
                 value: TaintValue) -> 'AccessTree':
        """Abstracted write: join *value* into a starred leaf at the path."""
        if not fields or self.star:
            return AccessTree.leaf(self.collapse().join(value))
        head, rest = fields[0], fields[1:]
        child = self.children.get(head, _EMPTY)
        children = dict(self.children)
        children[head] = child.weak_set(rest, value)
        return AccessTree(self.value, children, False)

    def join(self, other: 'AccessTree') -> 'AccessTree':
        """Pointwise join; a star on either side absorbs the other subtree."""
        if self is other:
            return self
        if self.star or other.star:
            return AccessTree.leaf(self.collapse().join(other.collapse()))
        children = dict(self.children)
        for name, sub in other.children.items():
            mine = children.get(name)
            children[name] = sub if mine is None else mine.join(sub)
        return AccessTree(self.value.join(other.value), children, False)

    def leq(self, other: 'AccessTree') -> bool:
        if other.star:
            return self.collapse().leq(other.value)
        if self.star:
            return False
        if not self.value.leq(other.value):
            return False
        for name, sub in self.children.items():
            theirs = other.children.get(name)
            if theirs is None:
                if not sub.collapse().is_clean():
                    return False
            elif not sub.leq(theirs):
                return False
        return True

    def map_values(self, fn: Callable[[TaintValue], TaintValue]) -> 'AccessTree':
        return AccessTree(
            fn(self.value),
            {name: sub.map_values(fn) for name, sub in self.children.items()},
            self.star,
        )

    def truncate(self, max_depth: int) -> 'AccessTree':
        """Collapse everything deeper than *max_depth* into starred leaves."""
        if self.star or not self.children:
            return self
        if max_depth <= 0:
            return AccessTree.leaf(self.collapse())
        return AccessTree(
            self.value,
            {n: c.truncate(max_depth - 1) for n, c in self.children.items()},
            False,
        )

    def __repr__(self) -> str:
        if self.star:
            return f"★{self.value!r}"
        if not self.children:
            return repr(self.value)
        inner = ", ".join(f"{n}: {self.children[n]!r}"
                          for n in sorted(self.children))
        if self.value.is_clean():
            return "{" + inner + "}"
        return f"{self.value!r}{{{inner}}}"


_EMPTY = AccessTree()


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — TAINT STATE
# ═══════════════════════════════════════════════════════════════════════════

class TaintState:
    """
    Abstract state at one program point: an access tree per base.

    States are immutable; :meth:`write` and friends return new states.
    """

    __slots__ = ("_trees", "max_depth")

    def __init__(self, trees: Optional[Dict[Base, AccessTree]] = None,
                 max_depth: int = DEFAULT_MAX_ACCESS_DEPTH) -> None:
        self._trees: Dict[Base, AccessTree] = dict(trees or {})
        self.max_depth = max_depth

    # ---- reads ------------------------------------------------------------

    def tree(self, base: Base) -> Optional[AccessTree]:
        return self._trees.get(base)

    def bases(self) -> Iterator[Base]:
        return iter(self._trees)

    def read(self, path: AccessPath) -> TaintValue:
        """Value of the path; abstracted paths read their whole subtree."""
        path = path.bounded(self.max_depth)
        tree = self._trees.get(path.base)
        if tree is None:
            return CLEAN
        if path.abstracted:
            return tree.get_deep(path.fields)
        value = tree.get(path.fields)
        return CLEAN if value is None else value

    def read_exact(self, path: AccessPath) -> Optional[TaintValue]:
        path = path.bounded(self.max_depth)
        tree = self._trees.get(path.base)
        if tree is None:
            return None
        if path.abstracted:
            sub = tree.subtree(path.fields)
            return None if sub is None else sub.collapse()
        return tree.get(path.fields)

    def subtree(self, path: AccessPath) -> AccessTree:
        path = path.bounded(self.max_depth)
        tree = self._trees.get(path.base)
        if tree is None:
            return AccessTree.empty()
        if path.abstracted:
            return AccessTree.leaf(tree.get_deep(path.fields))
        sub = tree.subtree(path.fields)
        return AccessTree.empty() if sub is None else sub

    # ---- writes -----------------------------------------------------------

    def write(self, path: AccessPath, subtree: AccessTree) -> 'TaintState':
        """Strong update for exact paths, weak update for abstracted ones."""
        path = path.bounded(self.max_depth)
        current = self._trees.get(path.base, AccessTree.empty())
        if path.abstracted:
            updated = current.weak_set(path.fields, subtree.collapse())
        else:
            room = self.max_depth - len(path.fields)
            updated = current.set(path.fields, subtree.truncate(room))
        trees = dict(self._trees)
        trees[path.base] = updated
        return TaintState(trees, self.max_depth)

    def write_value(self, path: AccessPath, value: TaintValue) -> 'TaintState':
        return self.write(path, AccessTree.leaf(value))

    def forget(self, base: Base) -> 'TaintState':
        trees = dict(self._trees)
        trees.pop(base, None)
        return TaintState(trees, self.max_depth)

    # ---- lattice ----------------------------------------------------------

    def join(self, other: 'TaintState') -> 'TaintState':
        trees = dict(self._trees)
        for base, tree in other._trees.items():
            mine = trees.get(base)
            trees[base] = tree if mine is None else mine.join(tree)
        return TaintState(trees, self.max_depth)

    def leq(self, other: 'TaintState') -> bool:
        for base, tree in self._trees.items():
            theirs = other._trees.get(base)
            if theirs is None:
                if not tree.collapse().is_clean():
                    return False
            elif not tree.leq(theirs):
                return False
        return True

    def __eq__(self, other) -> bool:
        if not isinstance(other, TaintState):
            return NotImplemented
        return self._trees == other._trees

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        inner = ", ".join(f"{b}: {t!r}" for b, t in
                          sorted(self._trees.items(),
                                 key=lambda kv: (kv[0].kind.value, kv[0].name)))
        return f"TaintState({inner})"


__all__ = [
    "DEFAULT_MAX_ACCESS_DEPTH",
    "BaseKind",
    "Base",
    "AccessPath",
    "AccessTree",
    "TaintState",
]
