"""
svctaint.callgraph
==================

Call resolution and the whole-program call graph.

Every call expression is resolved against the program model:

``DIRECT``
    The callee is statically known: a free function, a non-virtual method,
    or a constructor.
``VIRTUAL``
    A call to a virtual method; the targets are the statically resolved
    method plus every override declared in a subclass of the receiver's
    static type.
``UNRESOLVED``
    The receiver's static type is unknown, so no analysed procedure can be
    selected.  The call is treated as an external one.

Calls whose name matches no analysed procedure are *external*: they are
looked up in the catalog and otherwise propagate taint from their receiver
and arguments to their result.

Public API
----------
    ResolvedCall        - outcome of resolving one call expression
    resolve_call        - resolve a call inside a procedure
    CallGraphNode       - a node in the call graph
    CallGraphEdge       - a directed edge (call site)
    CallGraph           - the whole-program call graph
    build_callgraph     - build from a Program
    CallResolutionKind  - enum of resolution methods

Typical usage::

    from svctaint.listing import parse_listing
    from svctaint.callgraph import build_callgraph

    cg = build_callgraph(parse_listing(text))
    for scc in cg.strongly_connected_components():
        if len(scc) > 1:
            print("mutual recursion:", [n.name for n in scc])
    print(cg.to_dot())
"""

from __future__ import annotations

import enum
from collections import OrderedDict, defaultdict, deque
from dataclasses import dataclass
from typing import (
    Any,
    Deque,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
)

from .program import Call, Procedure, Program, SourceLocation, base_type_name


# ---------------------------------------------------------------------------
# Resolution kinds
# ---------------------------------------------------------------------------

class CallResolutionKind(enum.Enum):
    """How a call edge was resolved."""

    DIRECT     = "direct"
    VIRTUAL    = "virtual"
    UNRESOLVED = "unresolved"


# ---------------------------------------------------------------------------
# Node kinds
# ---------------------------------------------------------------------------

class NodeKind(enum.Enum):
    """Classification of a call-graph node."""

    PROCEDURE = "procedure"     # A procedure with a body
    EXTERNAL  = "external"      # Declaration only, or unknown library call
    UNKNOWN   = "unknown"       # Synthetic sink for unresolved calls


# ---------------------------------------------------------------------------
# Call resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedCall:
    """
    Outcome of resolving a call.

    Attributes
    ----------
    name : str
        Qualified name used for catalog lookup (``std::ofstream::open``,
        ``ns::Service::helper``, ``system``).
    targets : tuple of Procedure
        Analysed procedures the call may reach (empty for external calls).
    resolution : CallResolutionKind
        How the targets were selected.
    implicit_receiver : bool
        Whether an unqualified call inside a method is a call on ``this``.
    """
    name: str
    targets: Tuple[Procedure, ...] = ()
    resolution: CallResolutionKind = CallResolutionKind.DIRECT
    implicit_receiver: bool = False

    @property
    def is_external(self) -> bool:
        return not any(t.has_body for t in self.targets)


def resolve_call(program: Program, proc: Procedure, call: Call) -> ResolvedCall:
    """Resolve *call*, which appears in the body of *proc*."""
    if call.constructor:
        target = program.procedures.get(call.callee)
        return ResolvedCall(call.callee, (target,) if target else ())

    if call.receiver is not None:
        static = program.static_type(call.receiver, proc)
        if static is None:
            return ResolvedCall(call.callee, (),
                                CallResolutionKind.UNRESOLVED)
        owner = base_type_name(static)
        targets = tuple(program.dispatch_targets(owner, call.callee))
        if not targets:
            return ResolvedCall(f"{owner}::{call.callee}")
        kind = (CallResolutionKind.VIRTUAL
                if program.is_virtual(owner, call.callee)
                else CallResolutionKind.DIRECT)
        return ResolvedCall(targets[0].name, targets, kind)

    if call.callee in program.procedures:
        return ResolvedCall(call.callee, (program.procedures[call.callee],))

    if proc.declaring_class is not None and "::" not in call.callee:
        owner = proc.declaring_class
        targets = tuple(program.dispatch_targets(owner, call.callee))
        if targets:
            kind = (CallResolutionKind.VIRTUAL
                    if program.is_virtual(owner, call.callee)
                    else CallResolutionKind.DIRECT)
            return ResolvedCall(targets[0].name, targets, kind,
                                implicit_receiver=True)

    return ResolvedCall(call.callee)


# ---------------------------------------------------------------------------
# CallGraphNode
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A node in the call graph.

    Attributes
    ----------
    id : str
        Unique identifier; the qualified procedure name.
    name : str
        Human-readable name.
    kind : NodeKind
        What this node represents.
    procedure : Procedure or None
        The underlying procedure (``None`` for external and synthetic
        nodes).
    out_edges : list[CallGraphEdge]
        Outgoing call edges (this procedure calls …).
    in_edges : list[CallGraphEdge]
        Incoming call edges (… calls this procedure).
    """

    __slots__ = ("id", "name", "kind", "procedure", "out_edges", "in_edges")

    def __init__(
        self,
        node_id: str,
        name: str,
        kind: NodeKind = NodeKind.PROCEDURE,
        procedure: Optional[Procedure] = None,
    ) -> None:
        self.id: str = node_id
        self.name: str = name
        self.kind: NodeKind = kind
        self.procedure = procedure
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []

    # ----- queries ----------------------------------------------------------

    @property
    def callees(self) -> List["CallGraphNode"]:
        return [e.callee for e in self.out_edges]

    @property
    def callers(self) -> List["CallGraphNode"]:
        return [e.caller for e in self.in_edges]

    @property
    def is_leaf(self) -> bool:
        return len(self.out_edges) == 0

    @property
    def is_root(self) -> bool:
        return len(self.in_edges) == 0

    @property
    def is_recursive(self) -> bool:
        """Does this procedure call itself (directly)?"""
        return any(e.callee is self for e in self.out_edges)

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphNode):
            return self.id == other.id
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphEdge:
    """A directed edge in the call graph representing a call site."""

    __slots__ = ("caller", "callee", "call", "resolution", "location")

    def __init__(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        call: Optional[Call] = None,
        resolution: CallResolutionKind = CallResolutionKind.DIRECT,
    ) -> None:
        self.caller = caller
        self.callee = callee
        self.call = call
        self.resolution = resolution
        self.location: Optional[SourceLocation] = (
            call.location if call is not None else None)

    def __repr__(self) -> str:
        loc = f" @ {self.location}" if self.location else ""
        return (
            f"CallGraphEdge({self.caller.name} -> {self.callee.name}, "
            f"{self.resolution.value}{loc})"
        )


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Whole-program call graph.

    Attributes
    ----------
    nodes : OrderedDict[str, CallGraphNode]
        All nodes, keyed by node id.
    edges : list[CallGraphEdge]
        All edges.
    unknown : CallGraphNode
        The synthetic UNKNOWN sink node.
    program : Program
        The program this call graph was built from.
    """

    def __init__(self, program: Program) -> None:
        self.program = program
        self.nodes: "OrderedDict[str, CallGraphNode]" = OrderedDict()
        self.edges: List[CallGraphEdge] = []
        self.unknown = CallGraphNode("__UNKNOWN__", "<unknown>",
                                     NodeKind.UNKNOWN)
        self.nodes[self.unknown.id] = self.unknown

    # ----- construction -----------------------------------------------------

    def get_or_create_node(self, name: str,
                           procedure: Optional[Procedure] = None
                           ) -> CallGraphNode:
        node = self.nodes.get(name)
        if node is None:
            kind = (NodeKind.PROCEDURE if procedure is not None
                    and procedure.has_body else NodeKind.EXTERNAL)
            node = CallGraphNode(name, name, kind, procedure)
            self.nodes[name] = node
        return node

    def add_edge(self, caller: CallGraphNode, callee: CallGraphNode,
                 call: Optional[Call] = None,
                 resolution: CallResolutionKind = CallResolutionKind.DIRECT
                 ) -> CallGraphEdge:
        edge = CallGraphEdge(caller, callee, call, resolution)
        self.edges.append(edge)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        return edge

    # ----- lookups ----------------------------------------------------------

    def node(self, name: str) -> Optional[CallGraphNode]:
        return self.nodes.get(name)

    @property
    def roots(self) -> List[CallGraphNode]:
        """Nodes with no callers (excluding UNKNOWN)."""
        return [n for n in self.nodes.values()
                if n.is_root and n.kind != NodeKind.UNKNOWN]

    @property
    def leaves(self) -> List[CallGraphNode]:
        return [n for n in self.nodes.values()
                if n.is_leaf and n.kind != NodeKind.UNKNOWN]

    # ----- whole-graph queries ----------------------------------------------

    def transitive_callees(self, node: CallGraphNode) -> Set[CallGraphNode]:
        """Return all procedures transitively reachable from *node*."""
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque([node])
        while worklist:
            n = worklist.popleft()
            if n in visited:
                continue
            visited.add(n)
            for e in n.out_edges:
                worklist.append(e.callee)
        visited.discard(node)
        return visited

    def is_recursive(self, node: CallGraphNode) -> bool:
        """Is *node* part of a (possibly indirect) recursive cycle?"""
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque(e.callee for e in node.out_edges)
        while worklist:
            n = worklist.popleft()
            if n == node:
                return True
            if n in visited:
                continue
            visited.add(n)
            for e in n.out_edges:
                worklist.append(e.callee)
        return False

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Compute SCCs using Tarjan's algorithm.

        Returns a list of SCCs in reverse topological order (callees before
        callers).  Each SCC with more than one node represents mutual
        recursion.
        """
        index_counter = [0]
        stack: List[CallGraphNode] = []
        lowlink: Dict[str, int] = {}
        index: Dict[str, int] = {}
        on_stack: Set[str] = set()
        result: List[List[CallGraphNode]] = []

        def strongconnect(v: CallGraphNode):
            index[v.id] = index_counter[0]
            lowlink[v.id] = index_counter[0]
            index_counter[0] += 1
            stack.append(v)
            on_stack.add(v.id)

            for e in v.out_edges:
                w = e.callee
                if w.id not in index:
                    strongconnect(w)
                    lowlink[v.id] = min(lowlink[v.id], lowlink[w.id])
                elif w.id in on_stack:
                    lowlink[v.id] = min(lowlink[v.id], index[w.id])

            if lowlink[v.id] == index[v.id]:
                scc: List[CallGraphNode] = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w.id)
                    scc.append(w)
                    if w.id == v.id:
                        break
                result.append(scc)

        for v in self.nodes.values():
            if v.id not in index:
                strongconnect(v)

        return result

    def topological_order(self) -> List[CallGraphNode]:
        """Callees before callers; nodes within an SCC in arbitrary order."""
        return [n for scc in self.strongly_connected_components() for n in scc]

    def recursive_procedures(self) -> List[str]:
        """Names of procedures taking part in direct or mutual recursion."""
        names = set()
        for scc in self.strongly_connected_components():
            if len(scc) > 1:
                names.update(n.name for n in scc)
            elif scc[0].is_recursive:
                names.add(scc[0].name)
        return sorted(names)

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        by_resolution: Dict[CallResolutionKind, int] = defaultdict(int)
        for e in self.edges:
            by_resolution[e.resolution] += 1
        sccs = self.strongly_connected_components()
        return {
            "procedures": sum(1 for n in self.nodes.values()
                              if n.kind == NodeKind.PROCEDURE),
            "external_functions": sum(1 for n in self.nodes.values()
                                      if n.kind == NodeKind.EXTERNAL),
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            "direct_calls": by_resolution[CallResolutionKind.DIRECT],
            "virtual_calls": by_resolution[CallResolutionKind.VIRTUAL],
            "unresolved_calls": by_resolution[CallResolutionKind.UNRESOLVED],
            "sccs": len(sccs),
            "recursive_sccs": sum(1 for scc in sccs if len(scc) > 1),
            "self_recursive_procedures": sum(1 for n in self.nodes.values()
                                             if n.is_recursive),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation."""
        lines = ["digraph CallGraph {"]
        lines.append("  rankdir=TB;")
        if title:
            lines.append(f'  label="{title}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')

        kind_attrs = {
            NodeKind.PROCEDURE: 'style=filled, fillcolor="#ddeeff"',
            NodeKind.EXTERNAL: 'style=filled, fillcolor="#fff3cd", shape=ellipse',
            NodeKind.UNKNOWN:  'style=filled, fillcolor="#ffcccc", shape=diamond',
        }
        for n in self.nodes.values():
            attrs = kind_attrs.get(n.kind, "")
            escaped = n.name.replace('"', '\\"')
            lines.append(f'  "{escaped}" [label="{escaped}", {attrs}];')

        res_attrs = {
            CallResolutionKind.DIRECT: "",
            CallResolutionKind.VIRTUAL: ", style=dashed, color=blue",
            CallResolutionKind.UNRESOLVED: ", style=dotted, color=red",
        }
        for e in self.edges:
            attrs = res_attrs.get(e.resolution, "")
            elabel = e.resolution.value
            if e.location is not None and e.location.line:
                elabel += f":{e.location.line}"
            caller = e.caller.id.replace('"', '\\"')
            callee = e.callee.id.replace('"', '\\"')
            lines.append(f'  "{caller}" -> "{callee}" [label="{elabel}"{attrs}];')
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


def build_callgraph(program: Program) -> CallGraph:
    """Build the call graph of every procedure with a body."""
    cg = CallGraph(program)
    for proc in program.procedures.values():
        cg.get_or_create_node(proc.name, proc)
    for proc in program.bodied_procedures():
        caller = cg.get_or_create_node(proc.name, proc)
        for call in proc.calls():
            resolved = resolve_call(program, proc, call)
            if resolved.resolution is CallResolutionKind.UNRESOLVED:
                cg.add_edge(caller, cg.unknown, call, resolved.resolution)
            elif resolved.targets:
                for target in resolved.targets:
                    cg.add_edge(caller, cg.get_or_create_node(target.name, target),
                                call, resolved.resolution)
            else:
                cg.add_edge(caller, cg.get_or_create_node(resolved.name), call,
                            resolved.resolution)
    return cg


__all__ = [
    "CallResolutionKind",
    "NodeKind",
    "ResolvedCall",
    "resolve_call",
    "CallGraphNode",
    "CallGraphEdge",
    "CallGraph",
    "build_callgraph",
]
