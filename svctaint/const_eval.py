"""
svctaint.const_eval
===================

Static folding of integer-valued argument expressions.

Some native calls are only dangerous for particular option codes: the
option-setting call ``curl_easy_setopt(handle, key, value)`` is a URL sink
only when ``key`` is ``CURLOPT_URL`` (10002).  Call sites spell the key as a
literal, a named constant, a cast or an arithmetic expression, so the key is
folded before matching:

    10002                  → 10002
    CURLOPT_URL            → 10002   (constant table)
    (int) CURLOPT_URL      → 10002
    10000 + 2              → 10002
    i + 17                 → None    (not a compile-time constant)

Unfoldable keys are resolved by an explicit policy,
:class:`UnknownConstantPolicy`.  ``MATCH`` (the default) treats an unknown
key as matching the sink, favouring recall; ``IGNORE`` treats it as not
matching.
"""

from __future__ import annotations

import enum
import logging
from typing import FrozenSet, Optional

from .program import BinOp, Cast, Expr, IntLit, Procedure, Program, Var

logger = logging.getLogger(__name__)


class UnknownConstantPolicy(enum.Enum):
    """How an unfoldable key argument is matched against a constant set."""

    MATCH = "match"
    IGNORE = "ignore"

    @classmethod
    def from_string(cls, text: str) -> "UnknownConstantPolicy":
        try:
            return cls(text.strip().lower())
        except ValueError:
            raise ValueError(
                f"unknown constant policy {text!r} "
                f"(expected one of: {', '.join(p.value for p in cls)})"
            ) from None


class ConstantEvaluator:
    """Folds expressions against a program's constant table."""

    def __init__(self, program: Program,
                 policy: UnknownConstantPolicy = UnknownConstantPolicy.MATCH
                 ) -> None:
        self.program = program
        self.policy = policy

    def fold(self, expr: Expr,
             procedure: Optional[Procedure] = None) -> Optional[int]:
        """
        Fold *expr* to an integer, or return ``None``.

        Names are resolved as constants unless *procedure* declares a
        parameter or local of that name, in which case they are variables.
        """
        if isinstance(expr, IntLit):
            return expr.value
        if isinstance(expr, Cast):
            return self.fold(expr.operand, procedure)
        if isinstance(expr, BinOp):
            if expr.op != "+":
                return None
            left = self.fold(expr.left, procedure)
            if left is None:
                return None
            right = self.fold(expr.right, procedure)
            if right is None:
                return None
            return left + right
        if isinstance(expr, Var):
            enclosing = None
            if procedure is not None:
                if procedure.parameter(expr.name) is not None \
                        or expr.name in procedure.locals:
                    return None
                enclosing = procedure.declaring_class
            return self.program.resolve_constant(expr.name, enclosing)
        return None

    def matches(self, expr: Expr, accepted: FrozenSet[int],
                procedure: Optional[Procedure] = None) -> bool:
        """Decide whether a key argument selects an accepted constant."""
        value = self.fold(expr, procedure)
        if value is None:
            logger.debug("key argument %r is not foldable; policy %s",
                         expr, self.policy.value)
            return self.policy is UnknownConstantPolicy.MATCH
        return value in accepted


__all__ = [
    "UnknownConstantPolicy",
    "ConstantEvaluator",
]
