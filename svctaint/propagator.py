#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
svctaint/propagator.py
══════════════════════

Forward taint propagation over one procedure's basic blocks.

The propagator runs a worklist over the block graph.  Each block has an
entry state; the state leaving a block is joined into the entry state of
every successor, and a successor is re-queued only when its entry state
grows.  Loops therefore stabilize; a per-block visit cap
(``max_fixpoint_iterations``) stops pathological cases, after which the
procedure is summarized from the states reached so far.

    ┌──────────┐  join   ┌──────────┐         ┌──────────┐
    │  entry   │────────▶│  b1      │────────▶│  exit    │──▶ summary /
    │ (seeded) │         │ x = f(p) │◀──┐     │ return x │    findings
    └──────────┘         └──────────┘   │     └──────────┘
                              │  loop   │
                              └─────────┘

Transfer functions
──────────────────
    x = e           strong update of x's access path with e's subtree
    a.f = e         same, on the bounded path a.f
    sanitizer(e)    e's value, sanitized for the sanitizer's kind
    source()        a fresh trace at the call site (result or out-argument)
    sink(.., e, ..) every relevant trace of e is classified by the issue
                    table; footprints become obligations of the summary
    analysed call   the callee summaries (all virtual targets, joined) are
                    instantiated with the actual arguments
    unknown call    result = join of receiver and arguments

License: MIT
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Deque,
    Dict,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
)

from .access_tree import AccessPath, AccessTree, Base, TaintState
from .callgraph import ResolvedCall, resolve_call
from .catalog import (
    RECEIVER,
    RETURN,
    Catalog,
    ConstantArgument,
    Sink,
    merge_roles,
)
from .const_eval import ConstantEvaluator
from .findings import Finding, FindingCollector, classify
from .program import (
    Assign,
    BasicBlock,
    BinOp,
    Call,
    Cast,
    Evaluate,
    Expr,
    FieldRead,
    IntLit,
    Procedure,
    Program,
    Return,
    SourceLocation,
    StrLit,
    This,
    Var,
    is_scalar_type,
)
from .summaries import ProcedureSummary, SinkObligation, typed_tree
from .taint_lattice import (
    CLEAN,
    RECEIVER_INDEX,
    Origin,
    TaintKind,
    TaintTrace,
    TaintValue,
    join_all,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — CONTEXT AND RESULTS
# ═══════════════════════════════════════════════════════════════════════════

class AnalysisContext(Protocol):
    """What the propagator needs from the run it belongs to."""

    program: Program
    catalog: Catalog
    evaluator: ConstantEvaluator
    max_access_depth: int
    max_fixpoint_iterations: int

    def summary_for(self, procedure: Procedure) -> Optional[ProcedureSummary]:
        ...


@dataclass
class PropagationResult:
    """
    Outcome of propagating through one procedure.

    Attributes:
        procedure: The analysed procedure
        exit_state: Join of the states at every exit point
        findings: Findings with concrete origins
        obligations: Footprints reaching sinks
        visits: Number of block visits performed
        converged: Whether a fixed point was reached within the cap
    """
    procedure: Procedure
    exit_state: TaintState
    findings: List[Finding] = field(default_factory=list)
    obligations: Set[SinkObligation] = field(default_factory=set)
    visits: int = 0
    converged: bool = True


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — ENTRY-POINT SEEDING
# ═══════════════════════════════════════════════════════════════════════════

def entry_state(program: Program, procedure: Procedure, seeds,
                max_depth: int) -> TaintState:
    """
    Initial state of an entry point.

    Each seeded formal is tainted with its seed's kind and origin.  Struct
    formals are tainted field by field: fields that can carry data
    (strings, pointers, nested records) are tainted, integer and bool fields
    stay clean.  Unseeded formals, the receiver and the return-output
    parameter start out ``Clean``.
    """
    trees: Dict[Base, AccessTree] = {}
    for seed in seeds:
        if seed.index == RECEIVER_INDEX:
            continue
        value = TaintValue.tainted(seed.kind, seed.origin)

        def leaf_for(path, type_name, _abstracted, value=value):
            if path and is_scalar_type(type_name):
                return CLEAN
            return value

        param = procedure.params[seed.index]
        base = Base.parameter(param.name, seed.index)
        type_name = param.type_name
        tree = typed_tree(program, type_name, leaf_for, max_depth)
        existing = trees.get(base)
        trees[base] = tree if existing is None else existing.join(tree)
    return TaintState(trees, max_depth)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — THE PROPAGATOR
# ═══════════════════════════════════════════════════════════════════════════

class Propagator:
    """
    Intraprocedural forward propagation for one procedure.

    Args:
        context: The analysis run (program, catalog, summaries, limits)
        procedure: Procedure to analyse; it must have a body
        initial_state: State at the entry block
        entry_point: Name of the entry point being analysed, if any
    """

    def __init__(self, context: AnalysisContext, procedure: Procedure,
                 initial_state: TaintState,
                 entry_point: Optional[str] = None) -> None:
        self.context = context
        self.program = context.program
        self.procedure = procedure
        self.initial_state = initial_state
        self.entry_point = entry_point or ""
        self.max_depth = context.max_access_depth
        self._findings = FindingCollector()
        self._obligations: Set[SinkObligation] = set()
        self._state = initial_state
        self._block_id = ""
        self._stmt_index = 0
        self._call_ordinal = 0

    # ─────────────────────────────────────────────────────────────────
    #  Worklist
    # ─────────────────────────────────────────────────────────────────

    def run(self) -> PropagationResult:
        proc = self.procedure
        entry = proc.entry_block
        if entry is None:
            return PropagationResult(proc, self.initial_state)

        cap = self.context.max_fixpoint_iterations
        entry_states: Dict[str, TaintState] = {entry.id: self.initial_state}
        visits: Dict[str, int] = {}
        worklist: Deque[str] = deque([entry.id])
        queued = {entry.id}
        exit_states: List[TaintState] = []
        converged = True
        total = 0

        while worklist:
            block_id = worklist.popleft()
            queued.discard(block_id)
            count = visits.get(block_id, 0) + 1
            if count > cap:
                if converged:
                    logger.warning(
                        "%s: no fixed point after %d visits of block %s; "
                        "summarizing from the states reached so far",
                        proc.name, cap, block_id)
                converged = False
                continue
            visits[block_id] = count
            total += 1

            block = proc.block(block_id)
            out_state, returned = self._transfer_block(block,
                                                       entry_states[block_id])
            if returned or block.is_exit:
                exit_states.append(out_state)
                if returned:
                    continue
            for succ in block.successors:
                old = entry_states.get(succ)
                new = out_state if old is None else old.join(out_state)
                if old is None or not new.leq(old):
                    entry_states[succ] = new
                    if succ not in queued:
                        worklist.append(succ)
                        queued.add(succ)

        if exit_states:
            exit_state = exit_states[0]
            for s in exit_states[1:]:
                exit_state = exit_state.join(s)
        else:
            exit_state = TaintState(max_depth=self.max_depth)

        logger.debug("%s: %d block visit(s), converged=%s", proc.name,
                     total, converged)
        return PropagationResult(proc, exit_state, self._findings.findings,
                                 set(self._obligations), total, converged)

    def _transfer_block(self, block: BasicBlock,
                        state: TaintState) -> Tuple[TaintState, bool]:
        """Run a block's statements; report whether it ended in a return."""
        self._state = state
        self._block_id = block.id
        for index, stmt in enumerate(block.statements):
            self._stmt_index = index
            self._call_ordinal = 0
            if isinstance(stmt, Assign):
                tree = self._eval(stmt.value)
                path = self._path_of(stmt.target)
                if path is not None:
                    self._state = self._state.write(path, tree)
            elif isinstance(stmt, Evaluate):
                self._eval(stmt.expr)
            elif isinstance(stmt, Return):
                if stmt.value is not None:
                    tree = self._eval(stmt.value)
                    self._state = self._state.write(
                        AccessPath(Base.return_slot()), tree)
                return self._state, True
        return self._state, False

    # ─────────────────────────────────────────────────────────────────
    #  Paths and expressions
    # ─────────────────────────────────────────────────────────────────

    def _base_of(self, name: str) -> Base:
        index = self.procedure.param_index(name)
        if index is not None:
            return Base.parameter(name, index)
        return Base.local(name)

    def _path_of(self, expr: Expr) -> Optional[AccessPath]:
        if isinstance(expr, Var):
            return AccessPath(self._base_of(expr.name))
        if isinstance(expr, This):
            return AccessPath(Base.receiver())
        if isinstance(expr, FieldRead):
            base = self._path_of(expr.base)
            if base is None:
                return None
            return base.extend(expr.name).bounded(self.max_depth)
        if isinstance(expr, Cast):
            return self._path_of(expr.operand)
        return None

    def _eval(self, expr: Expr) -> AccessTree:
        """Evaluate *expr* to the subtree of taint it denotes."""
        if isinstance(expr, (IntLit, StrLit)):
            return AccessTree.empty()
        if isinstance(expr, (Var, This)):
            return self._state.subtree(self._path_of(expr))
        if isinstance(expr, FieldRead):
            path = self._path_of(expr)
            if path is not None:
                return self._state.subtree(path)
            inner = self._eval(expr.base)
            sub = inner.subtree((expr.name,))
            return AccessTree.leaf(inner.collapse()) if sub is None else sub
        if isinstance(expr, Cast):
            return self._eval(expr.operand)
        if isinstance(expr, BinOp):
            left = self._eval(expr.left).collapse()
            right = self._eval(expr.right).collapse()
            return AccessTree.leaf(left.join(right))
        if isinstance(expr, Call):
            return self._call(expr)
        raise TypeError(f"unsupported expression {expr!r}")

    def _site(self, call: Call) -> SourceLocation:
        if call.location is not None:
            return call.location
        return SourceLocation(f"{self.procedure.name}#{self._block_id}",
                              self._stmt_index + 1, self._call_ordinal)

    # ─────────────────────────────────────────────────────────────────
    #  Calls
    # ─────────────────────────────────────────────────────────────────

    def _call(self, call: Call) -> AccessTree:
        resolved = resolve_call(self.program, self.procedure, call)

        receiver_path: Optional[AccessPath] = None
        receiver_tree: Optional[AccessTree] = None
        if call.receiver is not None:
            receiver_tree = self._eval(call.receiver)
            receiver_path = self._path_of(call.receiver)
        elif resolved.implicit_receiver:
            receiver_path = AccessPath(Base.receiver())
            receiver_tree = self._state.subtree(receiver_path)

        arg_trees = [self._eval(arg) for arg in call.args]
        arg_paths = [self._path_of(arg) for arg in call.args]

        self._call_ordinal += 1
        site = self._site(call)
        sources, sinks, sanitizers = merge_roles(
            self.context.catalog.lookup(resolved.name))

        for sink in sinks:
            self._apply_sink(sink, call, resolved.name, arg_trees, site)

        if sanitizers:
            result = self._apply_sanitizers(sanitizers, arg_trees)
        elif not resolved.is_external:
            result = self._apply_summaries(resolved, receiver_path,
                                           receiver_tree, arg_paths, arg_trees)
        else:
            values = [t.collapse() for t in arg_trees]
            if receiver_tree is not None:
                values.append(receiver_tree.collapse())
            result = AccessTree.leaf(join_all(values))

        for source in sources:
            value = TaintValue.tainted(source.kind, Origin.source_call(
                self.procedure.name, resolved.name, str(site)))
            if source.position == RETURN:
                result = result.join(AccessTree.leaf(value))
            elif source.position == RECEIVER:
                if receiver_path is not None:
                    self._state = self._state.write_value(
                        receiver_path, self._state.read(
                            receiver_path.abstract()).join(value))
            elif isinstance(source.position, int) \
                    and source.position < len(arg_paths) \
                    and arg_paths[source.position] is not None:
                self._state = self._state.write_value(
                    arg_paths[source.position], value)
        return result

    def _apply_sink(self, sink: Sink, call: Call, name: str,
                    arg_trees: List[AccessTree], site: SourceLocation) -> None:
        matcher = sink.matcher
        if isinstance(matcher, ConstantArgument):
            if matcher.key_position >= len(call.args):
                return
            key = call.args[matcher.key_position]
            if not self.context.evaluator.matches(key, matcher.accepted,
                                                  self.procedure):
                return
        for position in sink.argument_positions:
            if position < len(arg_trees):
                self._check_sink(arg_trees[position].collapse(), sink.kind,
                                 name, site, self.procedure.name)

    def _check_sink(self, value: TaintValue, sink_kind: TaintKind, sink: str,
                    site: SourceLocation, procedure: str) -> None:
        """Classify every trace reaching a sink, or defer it to the caller."""
        for trace in value:
            if not trace.relevant_to(sink_kind):
                continue
            if trace.origin.is_footprint:
                self._obligations.add(
                    SinkObligation(trace, sink_kind, sink, site, procedure))
                continue
            issue = classify(trace, sink_kind)
            if issue is None:
                continue
            self._findings.report(Finding(
                issue, sink_kind, sink, site, procedure,
                frozenset({trace.origin}), trace.sanitized_for(sink_kind),
                self.entry_point))

    def _apply_sanitizers(self, sanitizers, arg_trees) -> AccessTree:
        position = sanitizers[0].position
        if position >= len(arg_trees):
            return AccessTree.empty()
        value = arg_trees[position].collapse()
        for sanitizer in sanitizers:
            value = value.sanitize(sanitizer.kind)
        return AccessTree.leaf(value)

    # ─────────────────────────────────────────────────────────────────
    #  Summary instantiation
    # ─────────────────────────────────────────────────────────────────

    def _apply_summaries(
        self,
        resolved: ResolvedCall,
        receiver_path: Optional[AccessPath],
        receiver_tree: Optional[AccessTree],
        arg_paths: List[Optional[AccessPath]],
        arg_trees: List[AccessTree],
    ) -> AccessTree:
        result: Optional[AccessTree] = None
        writes: Dict[AccessPath, AccessTree] = {}

        for target in resolved.targets:
            summary = self.context.summary_for(target)
            if summary is None:
                continue

            def own_footprint(trace: TaintTrace, target=target) -> bool:
                origin = trace.origin
                return origin.is_footprint and origin.procedure == target.name

            def caller_tree(origin: Origin) -> Optional[AccessTree]:
                if origin.index == RECEIVER_INDEX:
                    return receiver_tree
                if origin.index < len(arg_trees):
                    return arg_trees[origin.index]
                return None

            def actual(trace: TaintTrace) -> Optional[TaintValue]:
                if not own_footprint(trace):
                    return None
                tree = caller_tree(trace.origin)
                if tree is None:
                    return CLEAN
                return tree.get_deep(trace.origin.path).with_sanitizers(
                    trace.sanitizers)

            def instantiate(value: TaintValue, actual=actual) -> TaintValue:
                return value.expand(actual)

            def instantiate_tree(tree: AccessTree) -> AccessTree:
                """
                Instantiate an output tree of the callee.

                A starred leaf holding nothing but the callee's own
                footprints is replaced by the caller's subtrees at the
                footprint paths, so fields the callee did not touch keep
                their own taint.
                """
                if tree.star:
                    if tree.value.traces and all(own_footprint(t)
                                                 for t in tree.value):
                        grafted = AccessTree.empty()
                        for trace in tree.value:
                            actual_tree = caller_tree(trace.origin)
                            sub = None if actual_tree is None \
                                else actual_tree.subtree(trace.origin.path)
                            if sub is None:
                                continue
                            sanitizers = trace.sanitizers
                            grafted = grafted.join(sub.map_values(
                                lambda v, s=sanitizers: v.with_sanitizers(s)))
                        return grafted
                    return tree.map_values(instantiate)
                return AccessTree(
                    instantiate(tree.value),
                    {name: instantiate_tree(child)
                     for name, child in tree.children.items()},
                    False,
                )

            ret = summary.return_tree
            ret = AccessTree.empty() if ret is None else instantiate_tree(ret)
            result = ret if result is None else result.join(ret)

            for index, param in enumerate(target.params):
                if not param.by_ref or index >= len(arg_paths):
                    continue
                path = arg_paths[index]
                tree = summary.output(Base.parameter(param.name, index))
                if path is None or tree is None:
                    continue
                tree = instantiate_tree(tree)
                writes[path] = tree if path not in writes \
                    else writes[path].join(tree)

            receiver_out = summary.output(Base.receiver())
            if receiver_path is not None and receiver_out is not None:
                tree = instantiate_tree(receiver_out)
                writes[receiver_path] = tree if receiver_path not in writes \
                    else writes[receiver_path].join(tree)

            for obligation in summary.obligations:
                value = instantiate(TaintValue.of([obligation.trace]))
                self._check_sink(value, obligation.sink_kind, obligation.sink,
                                 obligation.location, obligation.procedure)

            self._findings.report_all(summary.findings)

        for path, tree in writes.items():
            self._state = self._state.write(path, tree)
        return AccessTree.empty() if result is None else result


def propagate(context: AnalysisContext, procedure: Procedure,
              initial_state: TaintState,
              entry_point: Optional[str] = None) -> PropagationResult:
    """Convenience wrapper around :class:`Propagator`."""
    return Propagator(context, procedure, initial_state, entry_point).run()


__all__ = [
    "AnalysisContext",
    "PropagationResult",
    "entry_state",
    "Propagator",
    "propagate",
]
