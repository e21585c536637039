"""Flag dependency resolution.

Provides:
- Prerequisite checks (every prerequisite must itself evaluate enabled,
  optionally with a required variant)
- Prerequisite cycle detection
- Mutex groups (at most one member active per subject)
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from flagkit.core.errors import CycleDetectedError
from flagkit.core.feature_flags.hashing import bucket
from flagkit.core.feature_flags.models import (
    ConfigSnapshot,
    EvaluationContext,
    EvaluationResult,
    FlagDefinition,
    Reason,
)
from flagkit.core.feature_flags.rules import RuleEvaluator

logger = logging.getLogger(__name__)

# Evaluates another flag inside the current traversal. Raises
# CycleDetectedError when the flag is already being evaluated.
FlagEvaluator = Callable[[str], EvaluationResult]


@dataclass(frozen=True)
class Resolution:
    """Outcome of a dependency check."""

    eligible: bool
    reason: Optional[Reason] = None
    detail: str = ""


ELIGIBLE = Resolution(eligible=True)


class DependencyResolver:
    """Validates prerequisite chains and mutex groups among flags."""

    def __init__(self, rule_evaluator: Optional[RuleEvaluator] = None):
        self.rule_evaluator = rule_evaluator or RuleEvaluator()

    def resolve(
        self,
        flag_key: str,
        snapshot: ConfigSnapshot,
        context: EvaluationContext,
        evaluate_flag: FlagEvaluator,
    ) -> Resolution:
        """Run the prerequisite check, then the mutex check."""
        flag = snapshot.get_flag(flag_key)
        if flag is None:
            return Resolution(eligible=False, reason=Reason.DEFAULT, detail="unknown flag")

        resolution = self.check_prerequisites(flag, evaluate_flag)
        if not resolution.eligible:
            return resolution
        return self.check_mutex(flag, snapshot, context)

    def check_prerequisites(
        self, flag: FlagDefinition, evaluate_flag: FlagEvaluator
    ) -> Resolution:
        """Require every prerequisite to evaluate ``enabled=True``.

        A prerequisite listed in ``flag.required_variants`` must also be
        serving that variant.
        """
        for key in flag.prerequisites:
            try:
                result = evaluate_flag(key)
            except CycleDetectedError as e:
                logger.warning(
                    f"Flag '{flag.key}' is part of a prerequisite cycle: {e}",
                    extra={"flag_key": flag.key, "error_code": e.code.value},
                )
                return Resolution(
                    eligible=False, reason=Reason.PREREQUISITE_FAILED, detail=str(e)
                )
            if not result.enabled:
                return Resolution(
                    eligible=False,
                    reason=Reason.PREREQUISITE_FAILED,
                    detail=f"prerequisite '{key}' evaluated {result.reason.value}",
                )
            required = flag.required_variants.get(key)
            if required is not None and result.variant != required:
                return Resolution(
                    eligible=False,
                    reason=Reason.PREREQUISITE_FAILED,
                    detail=f"prerequisite '{key}' serves variant {result.variant!r}, not {required!r}",
                )
        return ELIGIBLE

    def check_mutex(
        self,
        flag: FlagDefinition,
        snapshot: ConfigSnapshot,
        context: EvaluationContext,
    ) -> Resolution:
        """Decide whether ``flag`` wins its mutex group for this subject.

        Candidates are group members that are enabled and whose targeting
        matches. The winner is the candidate with the lowest bucket for its own
        key, ties broken by key. Only member definitions and the subject id
        feed this decision, so every member computes the same winner.
        """
        group = self.mutex_group(flag.key, snapshot)
        if len(group) < 2:
            return ELIGIBLE

        if not context.has_subject:
            return Resolution(
                eligible=False, reason=Reason.MUTEX_LOST, detail="no subject id"
            )

        winner = self.mutex_winner(group, snapshot, context)
        if winner is None or winner == flag.key:
            return ELIGIBLE
        return Resolution(
            eligible=False, reason=Reason.MUTEX_LOST, detail=f"group won by '{winner}'"
        )

    def mutex_winner(
        self,
        group: Tuple[str, ...],
        snapshot: ConfigSnapshot,
        context: EvaluationContext,
    ) -> Optional[str]:
        """Return the winning member key, or None when no member is a candidate."""
        ranked: List[Tuple[int, str]] = []
        for key in group:
            member = snapshot.get_flag(key)
            if member is None or not self._is_mutex_candidate(member, snapshot, context):
                continue
            ranked.append((bucket(context.subject_id, key, salt=member.hash_salt), key))
        if not ranked:
            return None
        return min(ranked)[1]

    def _is_mutex_candidate(
        self,
        member: FlagDefinition,
        snapshot: ConfigSnapshot,
        context: EvaluationContext,
    ) -> bool:
        if not member.enabled:
            return False
        if member.has_targeting:
            return self.rule_evaluator.evaluate_targeting(member, context, snapshot.segments)
        return True

    @staticmethod
    def mutex_group(flag_key: str, snapshot: ConfigSnapshot) -> Tuple[str, ...]:
        """All flags connected to ``flag_key`` through mutex links, sorted.

        Links are undirected: a flag joins the group whether it lists the
        other member or is listed by it. Keys missing from the snapshot are
        not members.
        """
        if flag_key not in snapshot:
            return ()

        neighbours: Dict[str, Set[str]] = {}
        for key, flag in snapshot.flags.items():
            for other in flag.mutex:
                if other == key or other not in snapshot:
                    continue
                neighbours.setdefault(key, set()).add(other)
                neighbours.setdefault(other, set()).add(key)

        seen = {flag_key}
        queue = deque([flag_key])
        while queue:
            current = queue.popleft()
            for other in neighbours.get(current, ()):
                if other not in seen:
                    seen.add(other)
                    queue.append(other)
        return tuple(sorted(seen))

    @staticmethod
    def prerequisite_chain(flag_key: str, snapshot: ConfigSnapshot) -> Tuple[str, ...]:
        """Transitive prerequisites of ``flag_key`` in evaluation order.

        Deepest prerequisites come first. Cycles are cut at the first
        revisit; use :meth:`find_cycles` to report them.
        """
        order: List[str] = []
        visited: Set[str] = {flag_key}
        stack: List[Tuple[str, Iterator[str]]] = [(flag_key, _prerequisites_of(flag_key, snapshot))]
        while stack:
            key, pending = stack[-1]
            for prerequisite in pending:
                if prerequisite not in visited:
                    visited.add(prerequisite)
                    stack.append((prerequisite, _prerequisites_of(prerequisite, snapshot)))
                    break
            else:
                stack.pop()
                order.append(key)
        return tuple(order[:-1])

    @staticmethod
    def find_cycles(snapshot: ConfigSnapshot) -> List[Tuple[str, ...]]:
        """Find prerequisite cycles with a depth-first search.

        Each cycle is reported once, as the path from its first visited node
        back to that node.
        """
        cycles: List[Tuple[str, ...]] = []
        done: Set[str] = set()

        for root in sorted(snapshot.flags):
            if root in done:
                continue
            path: List[str] = [root]
            on_path: Set[str] = {root}
            stack: List[Iterator[str]] = [_prerequisites_of(root, snapshot)]
            while stack:
                for prerequisite in stack[-1]:
                    if prerequisite in on_path:
                        start = path.index(prerequisite)
                        cycles.append(tuple(path[start:]) + (prerequisite,))
                    elif prerequisite not in done and prerequisite in snapshot:
                        path.append(prerequisite)
                        on_path.add(prerequisite)
                        stack.append(_prerequisites_of(prerequisite, snapshot))
                        break
                else:
                    stack.pop()
                    key = path.pop()
                    on_path.discard(key)
                    done.add(key)
        return cycles


def _prerequisites_of(flag_key: str, snapshot: ConfigSnapshot) -> Iterator[str]:
    flag = snapshot.get_flag(flag_key)
    return iter(flag.prerequisites if flag is not None else ())


__all__ = ["ELIGIBLE", "DependencyResolver", "FlagEvaluator", "Resolution"]
