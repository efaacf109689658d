# tests/test_access_tree.py
"""
Tests for access paths, access trees and the taint state.

The read tests use the tree

    x ↦ ("x", f ↦ ("xF", g ↦ ("xFG", {})))
    y ↦ ("y", f ↦ ("yF", ★))
    z ↦ ("z", ★)

and check exact paths, abstracted paths and paths covered by a star.
"""

import pytest

from svctaint.access_tree import AccessPath, AccessTree, Base, TaintState
from svctaint.taint_lattice import CLEAN, USER_CONTROLLED, Origin, TaintValue


def _v(name):
    return TaintValue.tainted(USER_CONTROLLED,
                              Origin.endpoint_parameter("t", name, 0))


def _names(value):
    if value is None:
        return None
    return sorted(t.origin.parameter for t in value)


X, Y, Z, A = (Base.local(n) for n in "xyza")


def exact(base, *fields):
    return AccessPath(base, tuple(fields))


def star(base, *fields):
    return AccessPath(base, tuple(fields), abstracted=True)


@pytest.fixture
def state():
    x_tree = AccessTree.node(
        {"f": AccessTree.node({"g": AccessTree(_v("xFG"))}, _v("xF"))},
        _v("x"))
    y_tree = AccessTree.node({"f": AccessTree.leaf(_v("yF"))}, _v("y"))
    z_tree = AccessTree.leaf(_v("z"))
    return TaintState({X: x_tree, Y: y_tree, Z: z_tree})


class TestExactReads:

    @pytest.mark.parametrize("path, expected", [
        (exact(Z), ["z"]),
        (exact(X, "f"), ["xF"]),
        (exact(Y, "f"), ["yF"]),
        (exact(X, "f", "g"), ["xFG"]),
    ])
    def test_present(self, state, path, expected):
        assert _names(state.read_exact(path)) == expected

    def test_absent_field(self, state):
        assert state.read_exact(exact(X, "g")) is None
        assert state.read(exact(X, "g")).is_clean()


class TestAbstractedReads:

    @pytest.mark.parametrize("path, expected", [
        (star(X), ["x", "xF", "xFG"]),
        (star(X, "f"), ["xF", "xFG"]),
    ])
    def test_collects_subtree(self, state, path, expected):
        assert _names(state.read_exact(path)) == expected

    def test_absent(self, state):
        assert state.read_exact(star(X, "g")) is None
        assert state.read_exact(star(A)) is None


class TestStarredTrees:

    @pytest.mark.parametrize("path, expected", [
        (exact(Z, "f"), ["z"]),
        (exact(Z, "f", "g"), ["z"]),
        (star(Z), ["z"]),
        (star(Y), ["y", "yF"]),
        (star(Y, "f"), ["yF"]),
        (exact(Y, "f", "g"), ["yF"]),
    ])
    def test_star_covers_extensions(self, state, path, expected):
        assert _names(state.read_exact(path)) == expected

    def test_sibling_of_star_is_absent(self, state):
        assert state.read_exact(exact(Y, "g")) is None


class TestWrites:

    def test_strong_update_replaces_subtree(self, state):
        updated = state.write_value(exact(X, "f"), _v("new"))
        assert _names(updated.read(exact(X, "f"))) == ["new"]
        assert _names(updated.read(exact(X, "f", "g"))) == ["new"]
        assert _names(updated.read(exact(X))) == ["x"]

    def test_states_are_immutable(self, state):
        state.write_value(exact(X, "f"), CLEAN)
        assert _names(state.read(exact(X, "f"))) == ["xF"]

    def test_write_into_star_is_weak(self, state):
        updated = state.write_value(exact(Z, "f"), _v("w"))
        assert _names(updated.read(exact(Z))) == ["w", "z"]

    def test_abstracted_write_is_weak(self, state):
        updated = state.write_value(star(X, "f"), _v("w"))
        assert _names(updated.read(exact(X, "f", "anything"))) == \
            ["w", "xF", "xFG"]

    def test_deep_path_collapses_onto_root(self):
        s = TaintState(max_depth=2)
        s = s.write_value(exact(X, "a", "b", "c"), _v("deep"))
        assert _names(s.read(exact(X))) == ["deep"]
        assert _names(s.read(exact(X, "other"))) == ["deep"]

    def test_bounded_path(self):
        path = exact(X, "a", "b", "c")
        assert path.bounded(3) is path
        collapsed = path.bounded(2)
        assert collapsed.fields == ()
        assert collapsed.abstracted
        assert str(collapsed) == "x.*"

    def test_subtree_write_is_truncated(self):
        deep = AccessTree.node({"a": AccessTree.node(
            {"b": AccessTree.leaf(_v("ab"))})})
        s = TaintState(max_depth=1).write(exact(X), deep)
        assert s.tree(X).depth() <= 1
        assert _names(s.read(exact(X, "a", "b"))) == ["ab"]


class TestLattice:

    def test_join_is_pointwise(self, state):
        other = TaintState({X: AccessTree.node(
            {"g": AccessTree.leaf(_v("xG"))})})
        joined = state.join(other)
        assert _names(joined.read(exact(X, "g"))) == ["xG"]
        assert _names(joined.read(exact(X, "f"))) == ["xF"]

    def test_join_with_star_absorbs(self, state):
        other = TaintState({Y: AccessTree.leaf(_v("w"))})
        joined = state.join(other)
        assert _names(joined.read(exact(Y, "anything"))) == ["w", "y", "yF"]

    def test_leq(self, state):
        assert TaintState().leq(state)
        assert state.leq(state)
        bigger = state.write_value(exact(A), _v("a"))
        assert state.leq(bigger)
        assert not bigger.leq(state)

    def test_equality(self, state):
        same = TaintState(dict((b, state.tree(b)) for b in state.bases()))
        assert same == state
