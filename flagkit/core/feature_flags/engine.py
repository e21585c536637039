"""Flag evaluation engine.

``FlagEngine.evaluate`` is a pure function of (snapshot, flag key, context).
The engine keeps no state between calls, so one instance can serve any number
of threads against the same snapshot without locking.

Evaluation order (first failing step decides the result):

1. unknown key          -> disabled, reason ``default``
2. definition disabled  -> ``disabled``
3. prerequisites        -> ``prerequisite-failed``
4. mutex group          -> ``mutex-lost``
5. targeting/segments   -> ``targeting-mismatch``
6. variants             -> ``variant-assigned``
7. percentage           -> ``bucketed-in`` / ``bucketed-out``
8. otherwise            -> enabled, reason ``default``
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Set, Tuple

from flagkit.core.errors import ConfigurationError, CycleDetectedError
from flagkit.core.feature_flags.dependencies import DependencyResolver
from flagkit.core.feature_flags.hashing import bucket, percentage_threshold
from flagkit.core.feature_flags.models import (
    ConfigSnapshot,
    EvaluationContext,
    EvaluationResult,
    FlagDefinition,
    Reason,
)
from flagkit.core.feature_flags.rules import RuleEvaluator
from flagkit.core.feature_flags.variants import VariantSelector, control_variant
from flagkit.utils.metrics import flag_configuration_errors_total, flag_evaluations_total

logger = logging.getLogger(__name__)


class _Evaluation:
    """State of one top-level ``evaluate`` call.

    Prerequisites are resolved without recursion: the prerequisite graph
    below a flag is walked with an explicit stack and evaluated bottom-up,
    so chain depth is not limited by the interpreter stack. A prerequisite
    that is still pending when its dependent runs closes a cycle and is
    reported as ``CycleDetectedError``. Results are memoized for the
    lifetime of the call.
    """

    def __init__(self, engine: "FlagEngine", snapshot: ConfigSnapshot, context: EvaluationContext):
        self.engine = engine
        self.snapshot = snapshot
        self.context = context
        self._results: Dict[str, EvaluationResult] = {}
        self._pending: Set[str] = set()
        self._cycles: Dict[Tuple[str, str], List[str]] = {}
        self._current: Optional[str] = None

    def evaluate(self, flag_key: str) -> EvaluationResult:
        if flag_key in self._results:
            return self._results[flag_key]
        if flag_key in self._pending:
            edge = (self._current, flag_key)
            raise CycleDetectedError(self._cycles.get(edge, [self._current, flag_key]))

        order = self._plan(flag_key)
        caller = self._current
        self._pending.update(order)
        try:
            for key in order:
                self._current = key
                self._results[key] = self.engine._evaluate_flag(key, self)
        finally:
            self._pending.difference_update(order)
            self._current = caller
        return self._results[flag_key]

    def _plan(self, root: str) -> List[str]:
        """Post-order of ``root`` and its unevaluated prerequisites."""
        order: List[str] = []
        path: List[str] = [root]
        on_path: Set[str] = {root}
        seen: Set[str] = {root}
        stack: List[Iterator[str]] = [self._prerequisites(root)]
        while stack:
            for key in stack[-1]:
                if key in on_path:
                    start = path.index(key)
                    self._cycles.setdefault((path[-1], key), path[start:] + [key])
                elif key not in seen and key not in self._results and key not in self._pending:
                    seen.add(key)
                    path.append(key)
                    on_path.add(key)
                    stack.append(self._prerequisites(key))
                    break
            else:
                stack.pop()
                on_path.discard(path[-1])
                order.append(path.pop())
        return order

    def _prerequisites(self, flag_key: str) -> Iterator[str]:
        flag = self.snapshot.get_flag(flag_key)
        # disabled flags never consult their prerequisites
        if flag is None or not flag.enabled:
            return iter(())
        return iter(flag.prerequisites)


class FlagEngine:
    """Evaluates flags against an immutable configuration snapshot."""

    def __init__(
        self,
        rule_evaluator: Optional[RuleEvaluator] = None,
        variant_selector: Optional[VariantSelector] = None,
        dependency_resolver: Optional[DependencyResolver] = None,
    ):
        self.rule_evaluator = rule_evaluator or RuleEvaluator()
        self.variant_selector = variant_selector or VariantSelector()
        self.dependency_resolver = dependency_resolver or DependencyResolver(self.rule_evaluator)

    def evaluate(
        self,
        flag_key: str,
        context: EvaluationContext,
        snapshot: ConfigSnapshot,
    ) -> EvaluationResult:
        """Evaluate one flag for ``context``."""
        return self._evaluate_top(flag_key, _Evaluation(self, snapshot, context))

    def evaluate_all(
        self,
        context: EvaluationContext,
        snapshot: ConfigSnapshot,
    ) -> Dict[str, EvaluationResult]:
        """Evaluate every flag in the snapshot.

        Prerequisite results are shared across flags. A failure on one flag
        is logged and reported as disabled without affecting the others.
        """
        evaluation = _Evaluation(self, snapshot, context)
        results: Dict[str, EvaluationResult] = {}
        for flag_key in snapshot:
            try:
                results[flag_key] = self._evaluate_top(flag_key, evaluation)
            except Exception:
                logger.exception(
                    f"Evaluation of flag '{flag_key}' failed",
                    extra={"flag_key": flag_key},
                )
                results[flag_key] = EvaluationResult(
                    flag_key=flag_key, enabled=False, reason=Reason.DISABLED
                )
        return results

    @staticmethod
    def _evaluate_top(flag_key: str, evaluation: _Evaluation) -> EvaluationResult:
        result = evaluation.evaluate(flag_key)
        flag_evaluations_total.labels(reason=result.reason.value).inc()
        logger.debug(
            f"Evaluated flag '{flag_key}': enabled={result.enabled} "
            f"variant={result.variant} reason={result.reason.value}"
        )
        return result

    def is_enabled(
        self, flag_key: str, context: EvaluationContext, snapshot: ConfigSnapshot
    ) -> bool:
        return self.evaluate(flag_key, context, snapshot).enabled

    def get_variant(
        self, flag_key: str, context: EvaluationContext, snapshot: ConfigSnapshot
    ) -> Optional[str]:
        return self.evaluate(flag_key, context, snapshot).variant

    def _evaluate_flag(self, flag_key: str, evaluation: _Evaluation) -> EvaluationResult:
        snapshot = evaluation.snapshot
        context = evaluation.context

        flag = snapshot.get_flag(flag_key)
        if flag is None:
            return EvaluationResult(flag_key=flag_key, enabled=False, reason=Reason.DEFAULT)

        if not flag.enabled:
            return EvaluationResult(flag_key=flag_key, enabled=False, reason=Reason.DISABLED)

        resolution = self.dependency_resolver.check_prerequisites(flag, evaluation.evaluate)
        if not resolution.eligible:
            return EvaluationResult(flag_key=flag_key, enabled=False, reason=Reason.PREREQUISITE_FAILED)

        resolution = self.dependency_resolver.check_mutex(flag, snapshot, context)
        if not resolution.eligible:
            return EvaluationResult(flag_key=flag_key, enabled=False, reason=Reason.MUTEX_LOST)

        if flag.has_targeting and not self.rule_evaluator.evaluate_targeting(
            flag, context, snapshot.segments
        ):
            return EvaluationResult(flag_key=flag_key, enabled=False, reason=Reason.TARGETING_MISMATCH)

        if flag.variants:
            return self._assign_variant(flag, context)

        if flag.percentage is not None:
            return self._roll_out(flag, context)

        return EvaluationResult(flag_key=flag_key, enabled=True, reason=Reason.DEFAULT)

    def _assign_variant(self, flag: FlagDefinition, context: EvaluationContext) -> EvaluationResult:
        if not context.has_subject:
            control = control_variant(flag.variants)
            return EvaluationResult(
                flag_key=flag.key,
                enabled=False,
                reason=Reason.DEFAULT,
                variant=control.name,
                payload=control.payload,
            )

        subject_bucket = bucket(context.subject_id, flag.key, salt=flag.hash_salt)
        try:
            selected = self.variant_selector.select_variant(flag.variants, subject_bucket)
        except ConfigurationError as e:
            logger.error(
                f"Flag '{flag.key}' has unusable variants, serving disabled: {e}",
                extra={"flag_key": flag.key, "error_code": e.code.value},
            )
            flag_configuration_errors_total.labels(kind=e.code.value.lower()).inc()
            return EvaluationResult(flag_key=flag.key, enabled=False, reason=Reason.DISABLED)

        return EvaluationResult(
            flag_key=flag.key,
            enabled=True,
            reason=Reason.VARIANT_ASSIGNED,
            variant=selected.name,
            payload=selected.payload,
            bucket=subject_bucket,
        )

    @staticmethod
    def _roll_out(flag: FlagDefinition, context: EvaluationContext) -> EvaluationResult:
        if not context.has_subject:
            return EvaluationResult(flag_key=flag.key, enabled=False, reason=Reason.BUCKETED_OUT)

        subject_bucket = bucket(context.subject_id, flag.key, salt=flag.hash_salt)
        if subject_bucket < percentage_threshold(flag.percentage):
            return EvaluationResult(
                flag_key=flag.key, enabled=True, reason=Reason.BUCKETED_IN, bucket=subject_bucket
            )
        return EvaluationResult(
            flag_key=flag.key, enabled=False, reason=Reason.BUCKETED_OUT, bucket=subject_bucket
        )


_default_engine = FlagEngine()


def evaluate(
    flag_key: str, context: EvaluationContext, snapshot: ConfigSnapshot
) -> EvaluationResult:
    """Evaluate ``flag_key`` with the shared engine."""
    return _default_engine.evaluate(flag_key, context, snapshot)


def evaluate_all(context: EvaluationContext, snapshot: ConfigSnapshot) -> Dict[str, EvaluationResult]:
    """Evaluate every flag with the shared engine."""
    return _default_engine.evaluate_all(context, snapshot)


__all__ = ["FlagEngine", "evaluate", "evaluate_all"]
