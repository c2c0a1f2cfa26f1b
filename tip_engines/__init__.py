"""
Module: tip_engines
Responsibility:
    Pure calculation engines for tip distribution: splitting a payment
    across a segment's split map, and evaluating tip-out rules against a
    shift's sales snapshot.

Architecture position:
    Engines -- zero I/O. May import tip_kernel.domain only. Never touches
    a session and never reads the clock; callers pass instants in.

Invariants enforced:
    - Integer minor units for every amount that must conserve value.
    - Deterministic output for identical input; every entry point is
      wrapped in @traced_engine.

Usage:
    from tip_engines.allocation import ShareAllocator
    from tip_engines.tip_out import TipOutEvaluator, TipOutRuleSpec
"""

from tip_engines.allocation import ShareAllocation, ShareAllocator, ShareLine, prorate
from tip_engines.tip_out import (
    SkippedRule,
    BASIS_EXTRACTORS,
    TipOutComputation,
    TipOutEvaluation,
    TipOutEvaluator,
    TipOutRuleSpec,
)

__all__ = [
    "BASIS_EXTRACTORS",
    "ShareAllocation",
    "ShareAllocator",
    "ShareLine",
    "SkippedRule",
    "TipOutComputation",
    "TipOutEvaluation",
    "TipOutEvaluator",
    "TipOutRuleSpec",
    "prorate",
]
