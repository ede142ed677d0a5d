"""
DYNAFORM Derivation Controller

One controller per rule instance: a root rule has one, an array-scoped
rule has one per item token. The controller is the only component that
writes derived values. It orchestrates:

- the override gate (OverrideTracker), with re-engagement
- the condition gate
- the strategy (inline, or through the DebounceScheduler)
- last-request-wins for HTTP/async results, via a generation counter
- stale-value-on-error: a failed result never writes
"""

from __future__ import annotations
from typing import Any, Dict, Optional, TYPE_CHECKING
import asyncio
import logging

from dynaform.core.enums import EvaluationOutcome, SkipReason, WriteOrigin
from dynaform.core.form_model import values_equal
from dynaform.core.paths import UNDEFINED, Segments, format_path
from dynaform.dependencies.propagation import EvaluationRecord
from dynaform.dependencies.trigger_log import TriggerType
from dynaform.derivation.rules import RuleBinding
from dynaform.derivation.strategies import (
    AsyncComputationStrategy,
    ComputationResult,
    DerivationContext,
    dependency_values,
)
from dynaform.errors.exceptions import DerivationError, RuleConfigurationError
from dynaform.errors.taxonomy import ErrorCode
from dynaform.expressions.conditions import evaluate_condition
from dynaform.expressions.evaluator import EvaluationScope

if TYPE_CHECKING:
    from dynaform.derivation.engine import DerivationEngine

logger = logging.getLogger(__name__)


class DerivationController:
    """
    Runtime instance of a RuleBinding.

    Attributes:
        binding: Compiled rule
        strategy: Strategy built for the rule
        token: Item identity token for array-scoped rules, else None
    """

    def __init__(self, binding: RuleBinding, strategy: Any, engine: "DerivationEngine", token: Optional[str] = None):
        self.binding = binding
        self.strategy = strategy
        self.engine = engine
        self.token = token
        self.last_result: Optional[ComputationResult] = None
        self._generation = 0
        self._destroyed = False

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @property
    def field_key(self) -> str:
        """Token-bound key of the target field; override state lives here."""
        target = format_path(self.binding.target)
        if self.binding.array_path is None:
            return target
        return f"{self.engine.model.item_key_prefix(self.binding.array_path, self.token)}.{target}"

    @property
    def instance_key(self) -> str:
        """Unique per rule and item; timers, tasks and pass slots use it."""
        return f"{self.field_key}@{self.binding.rule_id}"

    @property
    def item_path(self) -> Optional[Segments]:
        if self.binding.array_path is None:
            return None
        return self.engine.model.item_path(self.binding.array_path, self.token)

    @property
    def target_path(self) -> Optional[Segments]:
        """Concrete target path, or None once the item is gone."""
        if self.binding.array_path is None:
            return self.binding.target
        item_path = self.item_path
        return self.binding.target_path(item_path) if item_path is not None else None

    @property
    def is_active(self) -> bool:
        return not self._destroyed and self.target_path is not None

    @property
    def generation(self) -> int:
        return self._generation

    # -------------------------------------------------------------------------
    # Scope
    # -------------------------------------------------------------------------

    def scope(self) -> EvaluationScope:
        model = self.engine.model
        item_path = self.item_path
        return EvaluationScope(
            root=model.value,
            item_path=self.binding.scope_path(item_path),
            field_path=self.target_path,
            state_of=lambda segments: model.state(segments).to_dict(),
            external_data=self.engine.external_data,
        )

    def dependency_values(self) -> Dict[str, Any]:
        return dependency_values(self.binding, self.engine.model.value, self.item_path)

    def context(self) -> DerivationContext:
        return DerivationContext(scope=self.scope(), dependencies=self.dependency_values())

    # -------------------------------------------------------------------------
    # Synchronous evaluation
    # -------------------------------------------------------------------------

    def run_sync(self, trigger: TriggerType = TriggerType.VALUE_CHANGE, caused_by: Optional[str] = None) -> EvaluationRecord:
        """Gate, compute and apply inline. Must run inside a propagation pass."""
        skipped = self._gate(trigger, caused_by)
        if skipped is not None:
            return skipped
        result = self.strategy.compute(self.context())
        return self._apply(result, trigger, caused_by)

    # -------------------------------------------------------------------------
    # Deferred evaluation
    # -------------------------------------------------------------------------

    def arm(self, trigger: TriggerType = TriggerType.VALUE_CHANGE, caused_by: Optional[str] = None) -> EvaluationRecord:
        """
        (Re)start the debounce timer.

        Supersedes any in-flight request of this instance.
        """
        if not self.is_active:
            return self._skip(SkipReason.DESTROYED, trigger, caused_by)

        self._generation += 1
        scheduler = self.engine.scheduler
        scheduler.cancel(self.instance_key)

        delay = self.binding.debounce_ms
        if not scheduler.schedule(self.instance_key, delay, self.fire):
            error = DerivationError("No running event loop; deferred derivation cannot be scheduled")
            return self._fail(ComputationResult.failed(error, ErrorCode.NO_EVENT_LOOP), trigger, caused_by)

        self.engine.trigger_log.log_scheduled(
            self.binding.rule_id,
            self._target_str(),
            delay,
            trigger_type=trigger,
            debug_name=self.binding.rule.debug_name,
            caused_by=caused_by,
            pass_id=self.engine.current_pass_id,
        )
        return EvaluationRecord(
            rule_id=self.binding.rule_id,
            instance_key=self.instance_key,
            outcome=EvaluationOutcome.SCHEDULED,
            caused_by=caused_by,
        )

    def fire(self) -> None:
        """Debounce timer elapsed."""
        if self._destroyed:
            return
        self._generation += 1
        generation = self._generation

        if self.binding.kind.is_async:
            self.engine.run_in_pass(lambda: self._start_async(generation))
        else:
            self.engine.run_in_pass(lambda: self.run_sync(TriggerType.DEBOUNCE_FIRED))

    def _start_async(self, generation: int) -> EvaluationRecord:
        skipped = self._gate(TriggerType.DEBOUNCE_FIRED, None)
        if skipped is not None:
            return skipped

        ctx = self.context()
        self.last_result = ComputationResult.pending()
        task = self.engine.scheduler.spawn(self.instance_key, self._run_async(generation, ctx))
        if task is None:
            error = DerivationError("No running event loop; async derivation cannot start")
            return self._fail(ComputationResult.failed(error, ErrorCode.NO_EVENT_LOOP), TriggerType.DEBOUNCE_FIRED, None)

        logger.debug(f"Started {self.binding.kind.value} derivation for '{self._target_str()}' (generation {generation})")
        return EvaluationRecord(
            rule_id=self.binding.rule_id,
            instance_key=self.instance_key,
            outcome=EvaluationOutcome.SCHEDULED,
        )

    async def _run_async(self, generation: int, ctx: DerivationContext) -> None:
        strategy: AsyncComputationStrategy = self.strategy
        try:
            result = await strategy.compute_async(ctx)
        except asyncio.CancelledError:
            logger.debug(f"In-flight derivation for '{self._target_str()}' cancelled")
            raise

        if self._destroyed or generation != self._generation:
            self._skip(SkipReason.SUPERSEDED, TriggerType.ASYNC_SETTLED, None)
            return

        self.engine.run_in_pass(lambda: self._apply(result, TriggerType.ASYNC_SETTLED, None))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def destroy(self) -> None:
        """Cancel timers and discard in-flight results."""
        if self._destroyed:
            return
        self._destroyed = True
        self._generation += 1
        self.engine.scheduler.cancel(self.instance_key)

    # -------------------------------------------------------------------------
    # Gates and application
    # -------------------------------------------------------------------------

    def _gate(self, trigger: TriggerType, caused_by: Optional[str]) -> Optional[EvaluationRecord]:
        if not self.is_active:
            return self._skip(SkipReason.DESTROYED, trigger, caused_by)

        binding = self.binding
        tracker = self.engine.tracker
        if binding.stop_on_user_override and tracker.is_overridden(self.field_key):
            if not (binding.re_engage and tracker.try_reengage(self.field_key, self.dependency_values())):
                return self._skip(SkipReason.USER_OVERRIDE, trigger, caused_by)
            self.engine.trigger_log.log_applied(
                binding.rule_id,
                self._target_str(),
                old_value=None,
                new_value=None,
                trigger_type=TriggerType.REENGAGED,
                debug_name=binding.rule.debug_name,
                caused_by=caused_by,
                pass_id=self.engine.current_pass_id,
            )

        if binding.rule.condition is not None:
            try:
                allowed = evaluate_condition(binding.rule.condition, self.scope(), self.engine.registry.conditions)
            except DerivationError as e:
                code = ErrorCode.CONFIG if isinstance(e, RuleConfigurationError) else ErrorCode.EXPR_EVAL
                return self._fail(ComputationResult.failed(e, code), trigger, caused_by)
            if not allowed:
                return self._skip(SkipReason.CONDITION_FALSE, trigger, caused_by)
        return None

    def _apply(self, result: ComputationResult, trigger: TriggerType, caused_by: Optional[str]) -> EvaluationRecord:
        self.last_result = result
        if result.is_failed:
            return self._fail(result, trigger, caused_by)

        target = self.target_path
        if target is None or self._destroyed:
            return self._skip(SkipReason.DESTROYED, trigger, caused_by)
        if result.value is UNDEFINED:
            return self._skip(SkipReason.UNDEFINED_RESULT, trigger, caused_by)

        model = self.engine.model
        old = model.get(target)
        if values_equal(old, result.value):
            return self._skip(SkipReason.VALUE_UNCHANGED, trigger, caused_by)

        model.set(target, result.value, WriteOrigin.ENGINE)
        self.engine.tracker.record_engine_write(self.field_key)
        self.engine.trigger_log.log_applied(
            self.binding.rule_id,
            format_path(target),
            old_value=old,
            new_value=result.value,
            trigger_type=trigger,
            debug_name=self.binding.rule.debug_name,
            caused_by=caused_by,
            pass_id=self.engine.current_pass_id,
        )
        return EvaluationRecord(
            rule_id=self.binding.rule_id,
            instance_key=self.instance_key,
            outcome=EvaluationOutcome.APPLIED,
            old_value=old,
            new_value=result.value,
            caused_by=caused_by,
        )

    def _skip(self, reason: SkipReason, trigger: TriggerType, caused_by: Optional[str]) -> EvaluationRecord:
        logger.debug(f"Skipped '{self.binding.label}' on '{self._target_str()}': {reason.value}")
        self.engine.trigger_log.log_skipped(
            self.binding.rule_id,
            self._target_str(),
            reason,
            trigger_type=trigger,
            debug_name=self.binding.rule.debug_name,
            caused_by=caused_by,
            pass_id=self.engine.current_pass_id,
        )
        return EvaluationRecord(
            rule_id=self.binding.rule_id,
            instance_key=self.instance_key,
            outcome=EvaluationOutcome.SKIPPED,
            skip_reason=reason,
            caused_by=caused_by,
        )

    def _fail(self, result: ComputationResult, trigger: TriggerType, caused_by: Optional[str]) -> EvaluationRecord:
        self.last_result = result
        self.engine.report_failure(self, result)
        self.engine.trigger_log.log_failed(
            self.binding.rule_id,
            self._target_str(),
            str(result.error),
            trigger_type=trigger,
            debug_name=self.binding.rule.debug_name,
            caused_by=caused_by,
            pass_id=self.engine.current_pass_id,
        )
        return EvaluationRecord(
            rule_id=self.binding.rule_id,
            instance_key=self.instance_key,
            outcome=EvaluationOutcome.FAILED,
            error=str(result.error),
            caused_by=caused_by,
        )

    def _target_str(self) -> str:
        target = self.target_path
        return format_path(target) if target is not None else self.field_key

    def __repr__(self) -> str:
        return f"DerivationController({self.instance_key!r}, kind={self.binding.kind.value})"
