"""
DYNAFORM Derivation Engine

Wires the form model, dependency graph, controllers, override tracker and
debounce scheduler together.

The engine subscribes once to the form model and is the single fan-out
point for change notifications: every value or state change is matched
against the compiled rules, the affected rule instances are queued into a
propagation pass, and the pass settles the whole synchronous cascade
before any deferred rule is armed.

Usage:
    engine = DerivationEngine.from_fields(fields, initial_value={"basePrice": 100})
    engine.start()
    engine.user_input("basePrice", 200)
    await engine.settle()
    engine.submit()
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union
import logging

from dynaform.bootstrap.config import DerivationConfig, get_config
from dynaform.core.enums import StrategyKind, WriteOrigin
from dynaform.core.form_model import FormEvent, FormEventType, FormModel
from dynaform.core.paths import Segments, format_path, is_descendant, parse_path
from dynaform.dependencies.graph import DependencyGraph
from dynaform.dependencies.propagation import PassResult, PropagationPass
from dynaform.dependencies.trigger_log import TriggerLog, TriggerType
from dynaform.derivation.collector import collect_rules
from dynaform.derivation.controller import DerivationController
from dynaform.derivation.debounce import DebounceScheduler
from dynaform.derivation.http import HttpTransport, HttpxTransport
from dynaform.derivation.override import OverrideTracker
from dynaform.derivation.registry import FunctionRegistry
from dynaform.derivation.rules import DerivationRule, RuleBinding, compile_rule, split_target
from dynaform.derivation.strategies import ComputationResult, build_strategy
from dynaform.errors.aggregator import ErrorAggregator
from dynaform.errors.exceptions import RuleConfigurationError
from dynaform.errors.taxonomy import DerivationFailure, ErrorCode

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[DerivationFailure], Any]
ControllerKey = Tuple[str, Optional[str]]


class DerivationEngine:
    """
    Form value derivation engine.

    Attributes:
        model: Form value tree the engine reads and writes
        graph: Field dependency DAG
        tracker: Override state per derived field instance
        scheduler: Debounce timers and in-flight requests
        trigger_log: Audit log of every evaluation
        errors: Runtime failures reported by rules
        last_pass: Result of the most recent propagation pass
    """

    def __init__(
        self,
        rules: Iterable[Union[DerivationRule, Dict[str, Any]]] = (),
        initial_value: Optional[Dict[str, Any]] = None,
        array_paths: Iterable[str] = (),
        registry: Optional[FunctionRegistry] = None,
        transport: Optional[HttpTransport] = None,
        external_data: Optional[Dict[str, Any]] = None,
        on_error: Optional[ErrorCallback] = None,
        config: Optional[DerivationConfig] = None,
        model: Optional[FormModel] = None,
    ):
        self.config = config or get_config().derivation
        self.model = model or FormModel(initial_value, array_paths=array_paths)
        self.registry = registry or FunctionRegistry()
        self.external_data: Dict[str, Any] = dict(external_data or {})
        self.on_error = on_error

        self.transport = transport
        self._owns_transport = False

        self.graph = DependencyGraph()
        self.tracker = OverrideTracker(max_transitions=self.config.max_override_transitions)
        self.scheduler = DebounceScheduler()
        self.trigger_log = TriggerLog(max_entries=self.config.max_trigger_log_entries)
        self.errors = ErrorAggregator(max_errors=self.config.max_errors)

        self._bindings: Dict[str, RuleBinding] = {}
        self._strategies: Dict[str, Any] = {}
        self._controllers: Dict[ControllerKey, DerivationController] = {}
        self._rule_counter = 0

        self._current_pass: Optional[PropagationPass] = None
        self.last_pass: Optional[PassResult] = None

        self._subscription: Optional[str] = None
        self._started = False

        for rule in rules:
            self.add_rule(rule)

    @classmethod
    def from_fields(
        cls,
        fields: List[Dict[str, Any]],
        initial_value: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> "DerivationEngine":
        """Build an engine from a field-definition tree."""
        collection = collect_rules(fields)
        engine = cls(initial_value=initial_value, array_paths=collection.array_paths, **kwargs)
        for collected in collection:
            engine.add_rule(
                collected.rule,
                array_path=collected.array_path,
                item_keys=collected.item_keys,
                group_path=collected.group_path,
                group_keys=collected.group_keys,
            )
        return engine

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def add_rule(
        self,
        rule: Union[DerivationRule, Dict[str, Any]],
        array_path: Optional[str] = None,
        item_keys: Optional[Iterable[str]] = None,
        group_path: Optional[str] = None,
        group_keys: Iterable[str] = (),
    ) -> RuleBinding:
        """
        Compile and register a rule.

        Bare names in an array-scoped rule bind to the item when they appear
        in ``item_keys``; without ``item_keys`` the keys of the current items
        are used.

        Raises:
            RuleConfigurationError: invalid declaration or duplicate rule id
            CyclicDependencyError: the rule would close a dependency cycle
        """
        if not isinstance(rule, DerivationRule):
            rule = DerivationRule.from_dict(rule)

        self._rule_counter += 1
        rule_id = rule.id or f"{rule.target}:{rule.kind.value}:{self._rule_counter}"
        if rule_id in self._bindings:
            raise RuleConfigurationError(f"Duplicate rule id '{rule_id}'", target=rule.target)

        array_segments = parse_path(array_path) if array_path else None
        if item_keys is None:
            item_keys = self._infer_item_keys(rule.target, array_segments)

        binding = compile_rule(
            rule,
            rule_id,
            array_path=array_segments,
            item_keys=item_keys,
            array_paths=self.model.array_paths,
            group_path=parse_path(group_path) if group_path else (),
            group_keys=group_keys,
            default_debounce_ms=self.config.default_debounce_ms,
            self_transform_debounce_ms=self.config.self_transform_debounce_ms,
            async_debounce_ms=self.config.async_debounce_ms,
        )

        if binding.kind == StrategyKind.HTTP and self.transport is None:
            self.transport = HttpxTransport(timeout_seconds=self.config.http_timeout_seconds)
            self._owns_transport = True
        strategy = build_strategy(binding, self.registry, self.transport)

        self.graph.add_rule(
            rule_id,
            binding.target_pattern_str,
            binding.graph_dependencies(),
            self_transform=binding.kind == StrategyKind.SELF_TRANSFORM,
        )
        self._bindings[rule_id] = binding
        self._strategies[rule_id] = strategy

        logger.debug(
            f"Registered {binding.kind.value} rule '{rule_id}' -> {binding.target_pattern_str} "
            f"(depends on {binding.graph_dependencies()}, debounce {binding.debounce_ms}ms)"
        )

        if self._started:
            with self._pass_scope() as pass_:
                for token in self._tokens_for(binding):
                    self._enqueue(self._create_controller(binding, token), TriggerType.INITIAL, None, pass_)
        return binding

    def _infer_item_keys(self, target: str, array_path: Optional[Segments]) -> List[str]:
        array, _ = split_target(target, array_path, self.model.array_paths)
        if array is None:
            return []
        keys: List[str] = []
        items = self.model.get(array, [])
        for item in items if isinstance(items, list) else []:
            if isinstance(item, dict):
                keys.extend(k for k in item if k not in keys)
        return keys

    @property
    def bindings(self) -> List[RuleBinding]:
        return list(self._bindings.values())

    def get_binding(self, rule_id: str) -> Optional[RuleBinding]:
        return self._bindings.get(rule_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> Optional[PassResult]:
        """
        Subscribe to the form model and run every rule once.

        HTTP and async rules are armed on start only inside a running event
        loop (and when ``fire_async_on_start`` is set).
        """
        if self._started:
            return self.last_pass

        self._subscription = self.model.subscribe_all(self._on_event)
        self._started = True
        self._run_initial()

        logger.info(
            f"Derivation engine started: {len(self._bindings)} rules, "
            f"{len(self._controllers)} instances, {self.graph.node_count} graph nodes"
        )
        return self.last_pass

    def _run_initial(self) -> None:
        with self._pass_scope() as pass_:
            for binding in self._bindings.values():
                for token in self._tokens_for(binding):
                    self._enqueue(self._create_controller(binding, token), TriggerType.INITIAL, None, pass_)

    async def settle(self, timeout: Optional[float] = None) -> None:
        """Wait until no debounce timer is armed and no request is in flight."""
        await self.scheduler.wait_idle(timeout)

    async def close(self) -> None:
        """Destroy every rule instance and release the HTTP client the engine created."""
        self._destroy_all()
        self.scheduler.cancel_all()
        if self._subscription:
            self.model.unsubscribe(self._subscription)
            self._subscription = None
        self._started = False

        if self._owns_transport and self.transport is not None:
            await self.transport.close()
            self.transport = None
            self._owns_transport = False
        logger.info("Derivation engine closed")

    # -------------------------------------------------------------------------
    # Host operations
    # -------------------------------------------------------------------------

    @property
    def value(self) -> Dict[str, Any]:
        return self.model.value

    def get(self, path: Any, default: Any = None) -> Any:
        return self.model.get(path, default)

    def set_value(self, path: Any, value: Any, origin: WriteOrigin = WriteOrigin.ENGINE) -> Optional[PassResult]:
        """Programmatic write; engine-attributed unless ``origin`` says otherwise."""
        with self._pass_scope():
            self.model.set(path, value, origin)
        return self.last_pass

    def user_input(self, path: Any, value: Any) -> Optional[PassResult]:
        """A user edit: marks the field dirty and, for derived fields, overridden."""
        return self.set_value(path, value, WriteOrigin.USER)

    def mark_touched(self, path: Any, touched: bool = True) -> Optional[PassResult]:
        with self._pass_scope():
            self.model.mark_touched(path, touched)
        return self.last_pass

    def add_array_item(
        self,
        array_path: Any,
        item: Optional[Dict[str, Any]] = None,
        index: Optional[int] = None,
        origin: WriteOrigin = WriteOrigin.USER,
    ) -> str:
        """Insert an item and derive its fields; returns the item token."""
        with self._pass_scope():
            token = self.model.add_item(array_path, item, index, origin)
        return token

    def remove_array_item(self, array_path: Any, index: int, origin: WriteOrigin = WriteOrigin.USER) -> str:
        with self._pass_scope():
            token = self.model.remove_item(array_path, index, origin)
        return token

    def move_array_item(
        self,
        array_path: Any,
        from_index: int,
        to_index: int,
        origin: WriteOrigin = WriteOrigin.USER,
    ) -> str:
        with self._pass_scope():
            token = self.model.move_item(array_path, from_index, to_index, origin)
        return token

    def reset(self, value: Optional[Dict[str, Any]] = None) -> Optional[PassResult]:
        """Restore the initial value, clear overrides and pending work, then recompute."""
        self.model.reset(value)
        return self.last_pass

    def submit(self) -> Dict[str, Any]:
        """Current value tree, overridden values included."""
        snapshot = self.model.snapshot()
        logger.debug(f"Submit with {len(self.tracker.overridden_keys())} overridden fields")
        return snapshot

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_overridden(self, path: Any) -> bool:
        segments = path if isinstance(path, tuple) else parse_path(path)
        return self.tracker.is_overridden(self.model.instance_key(segments))

    def field_state(self, path: Any) -> Dict[str, bool]:
        return self.model.state(path).to_dict()

    def controllers_for(self, path: Any) -> List[DerivationController]:
        """Rule instances writing a concrete path."""
        segments = path if isinstance(path, tuple) else parse_path(path)
        key = self.model.instance_key(segments)
        return [c for c in self._controllers.values() if c.field_key == key]

    @property
    def current_pass_id(self) -> Optional[str]:
        return self._current_pass.pass_id if self._current_pass is not None else None

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "rules": len(self._bindings),
            "instances": len(self._controllers),
            "overridden": len(self.tracker.overridden_keys()),
            "errors": len(self.errors),
            "scheduler": self.scheduler.stats,
            "trigger_log": self.trigger_log.get_statistics(),
        }

    # -------------------------------------------------------------------------
    # Propagation
    # -------------------------------------------------------------------------

    @contextmanager
    def _pass_scope(self) -> Iterator[PropagationPass]:
        """Join the running pass, or open one and run it on exit."""
        if self._current_pass is not None:
            yield self._current_pass
            return

        pass_ = PropagationPass()
        self._current_pass = pass_
        try:
            yield pass_
            pass_.run()
        finally:
            self._current_pass = None
        self.last_pass = pass_.result

    def run_in_pass(self, fn: Callable[[], Any]) -> Any:
        """Run ``fn`` inside a propagation pass and settle the cascade it causes."""
        with self._pass_scope() as pass_:
            record = fn()
            if record is not None:
                pass_.record(record)
        return record

    def _enqueue(
        self,
        controller: DerivationController,
        trigger: TriggerType,
        caused_by: Optional[str],
        pass_: PropagationPass,
    ) -> None:
        binding = controller.binding
        if binding.kind == StrategyKind.SELF_TRANSFORM and trigger != TriggerType.SELF_CHANGE:
            return

        if binding.is_deferred:
            if trigger == TriggerType.INITIAL:
                if binding.kind.is_async:
                    if not self.config.fire_async_on_start:
                        return
                    if not self.scheduler.has_loop:
                        logger.warning(
                            f"No running event loop at start; '{binding.label}' waits for its first dependency change"
                        )
                        return
                else:
                    # Debounced synchronous rules settle inline on start
                    self._queue_sync(controller, trigger, caused_by, pass_)
                    return
            pass_.defer(controller.instance_key, lambda: pass_.record(controller.arm(trigger, caused_by)))
            return

        self._queue_sync(controller, trigger, caused_by, pass_)

    def _queue_sync(
        self,
        controller: DerivationController,
        trigger: TriggerType,
        caused_by: Optional[str],
        pass_: PropagationPass,
    ) -> None:
        binding = controller.binding
        pass_.enqueue(
            controller.instance_key,
            self.graph.get_rank(binding.target_pattern_str),
            binding.rule_id,
            lambda: controller.run_sync(trigger, caused_by),
            caused_by,
        )

    def _on_event(self, event: FormEvent) -> None:
        if event.event_type == FormEventType.FORM_RESET:
            self._on_reset()
            return

        with self._pass_scope() as pass_:
            if event.event_type == FormEventType.VALUE_CHANGED:
                self._on_value_changed(event, pass_)
            elif event.event_type == FormEventType.STATE_CHANGED:
                flag = event.flag.value
                for binding in self._bindings.values():
                    everything, indices = binding.match_state_change(event.path, flag)
                    self._enqueue_matches(binding, everything, indices, TriggerType.STATE_CHANGE, event.key, pass_)
            elif event.event_type == FormEventType.ITEM_ADDED:
                self._on_item_added(event, pass_)
            elif event.event_type == FormEventType.ITEM_REMOVED:
                self._on_item_removed(event)

    def _on_value_changed(self, event: FormEvent, pass_: PropagationPass) -> None:
        structural = event.token is not None
        if event.origin == WriteOrigin.USER and not structural:
            self._record_user_edit(event, pass_)

        for binding in self._bindings.values():
            everything, indices = binding.match_value_change(event.path, structural)
            self._enqueue_matches(binding, everything, indices, TriggerType.VALUE_CHANGE, event.key, pass_)

    def _record_user_edit(self, event: FormEvent, pass_: PropagationPass) -> None:
        for controller in list(self._controllers.values()):
            if controller.field_key == event.key:
                if controller.binding.kind == StrategyKind.SELF_TRANSFORM:
                    self._enqueue(controller, TriggerType.SELF_CHANGE, event.key, pass_)
                    continue
                user_value = event.new_value
            elif self._written_below(controller, event.path):
                user_value = self.model.get(controller.target_path)
            else:
                continue
            if controller.binding.stop_on_user_override:
                self.tracker.record_user_edit(controller.field_key, controller.dependency_values(), user_value)
                logger.debug(f"'{controller.field_key}' overridden by user input")

    @staticmethod
    def _written_below(controller: DerivationController, written: Segments) -> bool:
        """Whether a user write to a container replaced the controller's target."""
        target = controller.target_path
        if target is None or controller.binding.kind == StrategyKind.SELF_TRANSFORM:
            return False
        if not is_descendant(target, written):
            return False
        # A whole-array write re-creates its items instead of overriding them
        array_path = controller.binding.array_path
        return array_path is None or len(written) > len(array_path)

    def _enqueue_matches(
        self,
        binding: RuleBinding,
        everything: bool,
        indices: Iterable[int],
        trigger: TriggerType,
        caused_by: Optional[str],
        pass_: PropagationPass,
    ) -> None:
        if binding.array_path is None:
            if everything:
                self._enqueue(self._controllers[(binding.rule_id, None)], trigger, caused_by, pass_)
            return

        tokens = self.model.items(binding.array_path)
        if everything:
            selected = tokens
        else:
            selected = [tokens[i] for i in sorted(indices) if 0 <= i < len(tokens)]
        for token in selected:
            controller = self._controllers.get((binding.rule_id, token))
            if controller is not None:
                self._enqueue(controller, trigger, caused_by, pass_)

    def _on_item_added(self, event: FormEvent, pass_: PropagationPass) -> None:
        for binding in self._bindings.values():
            if binding.array_path == event.path:
                controller = self._create_controller(binding, event.token)
                self._enqueue(controller, TriggerType.INITIAL, event.key, pass_)

    def _on_item_removed(self, event: FormEvent) -> None:
        for key in [k for k in self._controllers if k[1] == event.token]:
            self._controllers.pop(key).destroy()
        prefix = self.model.item_key_prefix(event.path, event.token)
        self.tracker.forget(prefix)
        self.scheduler.cancel_prefix(prefix)

    def _on_reset(self) -> None:
        self._destroy_all()
        self.scheduler.cancel_all()
        self.tracker.reset()
        self._run_initial()

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def _tokens_for(self, binding: RuleBinding) -> List[Optional[str]]:
        if binding.array_path is None:
            return [None]
        return list(self.model.items(binding.array_path))

    def _create_controller(self, binding: RuleBinding, token: Optional[str]) -> DerivationController:
        key = (binding.rule_id, token)
        existing = self._controllers.get(key)
        if existing is not None:
            existing.destroy()
        controller = DerivationController(binding, self._strategies[binding.rule_id], self, token)
        self._controllers[key] = controller
        return controller

    def _destroy_all(self) -> None:
        for controller in self._controllers.values():
            controller.destroy()
        self._controllers.clear()

    # -------------------------------------------------------------------------
    # Failures
    # -------------------------------------------------------------------------

    def report_failure(self, controller: DerivationController, result: ComputationResult) -> None:
        """Record a runtime failure; the target keeps its previous value."""
        target = controller.target_path
        failure = DerivationFailure(
            code=result.code or ErrorCode.FUNC_FAILED,
            message=str(result.error),
            rule_id=controller.binding.rule_id,
            target=format_path(target) if target is not None else controller.field_key,
        )
        self.errors.add(failure)
        logger.warning(f"Derivation '{controller.binding.label}' failed [{failure.code.value}]: {failure.message}")

        if self.on_error is not None:
            try:
                self.on_error(failure)
            except Exception as e:
                logger.error(f"Error callback failed for '{failure.rule_id}': {e}")

    def __repr__(self) -> str:
        return f"DerivationEngine(rules={len(self._bindings)}, instances={len(self._controllers)})"
