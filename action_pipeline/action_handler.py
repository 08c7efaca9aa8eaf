"""
Action handler
Orchestrates the per-action protocol: build and preserve the context,
intercept, execute, clean up and report lifecycle events
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .callback_executor import CallbackExecutor
from .cleanup_manager import ResourceCleanupManager
from .config import (
    ActionHandlerConfig,
    EnrichmentConfig,
    ErrorStrategy,
    PipelineConfig,
    PreservationOptions
)
from .context_preserver import ContextPreserver
from .errors import ActionExecutionError, ActionPipelineError, ContextPreservationError
from .events import (
    ACTION_CALLBACK,
    ACTION_COMPLETE,
    ACTION_ERROR,
    ACTION_PREVENTED,
    ACTION_START,
    RESULT_SELECTED,
    Event,
    EventBus
)
from .interceptor import ActionInterceptor
from .models import (
    ActionExecutionResult,
    ActionProcessingResult,
    CleanupResult,
    ResourceType,
    SearchResult,
    SecureActionContext,
    SourceInfo
)
from .navigation import Navigator
from .utils import elapsed_since, generate_id, resolve

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = SourceInfo(type="action-handler", name="ActionHandler", version="1.0")


@dataclass
class ActionProcessingOptions:
    """Per-action options for process_action"""
    query: str = ""
    action_type: str = "select"
    source: Optional[SourceInfo] = None
    enrichment: Optional[EnrichmentConfig] = None
    preservation: Optional[PreservationOptions] = None
    # None follows the interceptor's decision, True/False force it
    custom_navigation: Optional[bool] = None
    cleanup_immediate: bool = True
    callback_timeout: Optional[float] = None
    callback_retries: Optional[int] = None


@dataclass
class ActionRequest:
    """One entry for process_actions_parallel"""
    result: Union[SearchResult, Dict[str, Any]]
    options: Optional[ActionProcessingOptions] = None


@dataclass
class ActionHandlerStatistics:
    total_actions: int = 0
    successful_actions: int = 0
    failed_actions: int = 0
    prevented_actions: int = 0
    total_processing_time: float = 0.0
    average_processing_time: float = 0.0
    fastest_action: float = 0.0
    slowest_action: float = 0.0
    concurrent_actions: int = 0
    peak_concurrent_actions: int = 0
    queued_actions: int = 0


class _Outcome:
    """Internal result of the execution step"""

    def __init__(self, value: Any = None, callback_count: int = 0,
                 vetoed: Optional[ActionExecutionResult] = None):
        self.value = value
        self.callback_count = callback_count
        self.vetoed = vetoed


class ActionHandler:
    """Runs search-result actions through the full pipeline"""

    def __init__(
        self,
        config: Optional[ActionHandlerConfig] = None,
        *,
        event_bus: Optional[EventBus] = None,
        callback_executor: Optional[CallbackExecutor] = None,
        context_preserver: Optional[ContextPreserver] = None,
        interceptor: Optional[ActionInterceptor] = None,
        cleanup_manager: Optional[ResourceCleanupManager] = None,
        enrichment_config: Optional[EnrichmentConfig] = None,
        preservation_options: Optional[PreservationOptions] = None
    ):
        self.config = config or ActionHandlerConfig()
        self.event_bus = event_bus or EventBus(source="ActionHandler")
        self.callback_executor = callback_executor or CallbackExecutor(default_timeout=self.config.timeout)
        self.context_preserver = context_preserver or ContextPreserver()
        self.interceptor = interceptor or ActionInterceptor()
        self.cleanup_manager = cleanup_manager or ResourceCleanupManager()
        self.enrichment_config = enrichment_config or EnrichmentConfig()
        self.preservation_options = preservation_options or PreservationOptions(
            validate=self.config.validate_context,
            sanitize=self.config.validate_context
        )

        self.statistics = ActionHandlerStatistics()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_actions)
        self._leak_detection_started = False
        self._shut_down = False

        logger.info(
            f"Initialized action handler (max_concurrent_actions={self.config.max_concurrent_actions}, "
            f"error_strategy={self.config.error_strategy.value})"
        )

    @classmethod
    def from_config(cls, pipeline_config: PipelineConfig,
                    navigator: Optional[Navigator] = None) -> "ActionHandler":
        """Build a handler and all of its collaborators from a PipelineConfig"""
        return cls(
            pipeline_config.handler,
            callback_executor=CallbackExecutor(default_timeout=pipeline_config.handler.timeout),
            context_preserver=ContextPreserver(
                max_history_size=pipeline_config.max_history_size,
                default_max_size=pipeline_config.default_max_context_size
            ),
            interceptor=ActionInterceptor(
                navigation_config=pipeline_config.navigation,
                prevention_config=pipeline_config.prevention,
                navigator=navigator
            ),
            cleanup_manager=ResourceCleanupManager(pipeline_config.leak_detection),
            enrichment_config=pipeline_config.enrichment,
            preservation_options=pipeline_config.preservation
        )

    async def process_action(
        self,
        result: Union[SearchResult, Dict[str, Any]],
        options: Optional[ActionProcessingOptions] = None
    ) -> ActionProcessingResult:
        """
        Process one action through the pipeline.

        Admission is FIFO once max_concurrent_actions are in flight.

        Raises:
            ActionPipelineError: only under ErrorStrategy.THROW
        """
        if self._shut_down:
            raise RuntimeError("ActionHandler has been shut down")

        options = options or ActionProcessingOptions()
        self._ensure_leak_detection()
        action_id = generate_id("action")

        self.statistics.queued_actions += 1
        admitted = False
        try:
            async with self._semaphore:
                admitted = True
                self.statistics.queued_actions -= 1
                return await self._run(action_id, result, options)
        finally:
            if not admitted:
                self.statistics.queued_actions -= 1

    async def process_actions_parallel(
        self,
        actions: Sequence[Union[ActionRequest, SearchResult, Dict[str, Any]]]
    ) -> List[ActionProcessingResult]:
        """Process several actions concurrently; results keep input order"""
        requests = [a if isinstance(a, ActionRequest) else ActionRequest(a) for a in actions]
        logger.debug(f"Processing {len(requests)} actions in parallel")

        outcomes = await asyncio.gather(
            *(self.process_action(r.result, r.options) for r in requests),
            return_exceptions=True
        )

        results = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                results.append(ActionProcessingResult(
                    success=False,
                    action_id=generate_id("action"),
                    error=outcome
                ))
            else:
                results.append(outcome)
        return results

    async def _run(
        self,
        action_id: str,
        result: Union[SearchResult, Dict[str, Any]],
        options: ActionProcessingOptions
    ) -> ActionProcessingResult:
        start = time.perf_counter()
        stats = self.statistics
        stats.total_actions += 1
        stats.concurrent_actions += 1
        stats.peak_concurrent_actions = max(stats.peak_concurrent_actions, stats.concurrent_actions)

        context: Optional[SecureActionContext] = None
        event_count = 0
        intercepted = False

        try:
            if isinstance(result, dict):
                result = self._to_search_result(result)

            logger.debug(f"Processing action {action_id} for result {result.id}")
            started = await self.event_bus.emit(ACTION_START, {
                "action_id": action_id,
                "result": result,
                "timestamp": time.time()
            })
            event_count += len(started.results)

            context = await self._build_context(result, options)

            interception = await self.interceptor.intercept_action(result, context, options.action_type)
            intercepted = True
            if interception.error is not None:
                raise ActionExecutionError(f"Interception failed: {interception.error}") from interception.error
            if interception.prevented:
                return await self._prevented(action_id, result, context, interception, start, event_count)

            outcome = await self._execute(action_id, result, context, interception, options)
            if outcome.vetoed is not None:
                return await self._prevented(action_id, result, context, outcome.vetoed, start, event_count)

            cleanup_performed = False
            if self.config.auto_cleanup:
                cleanup_performed = await self._cleanup_action(action_id, context, options.cleanup_immediate)

            completed = await self.event_bus.emit(ACTION_COMPLETE, {
                "action_id": action_id,
                "result": result,
                "context": context,
                "success": True,
                "prevented": False,
                "timestamp": time.time()
            })
            event_count += len(completed.results)

            processing_time = elapsed_since(start)
            self._record(processing_time, success=True)
            logger.debug(f"Action {action_id} completed in {processing_time:.4f}s")

            return ActionProcessingResult(
                success=True,
                action_id=action_id,
                result=outcome.value,
                context=context,
                intercepted=intercepted,
                processing_time=processing_time,
                event_count=event_count,
                callback_count=outcome.callback_count,
                cleanup_performed=cleanup_performed,
                metadata=interception.metadata
            )

        except Exception as e:
            processing_time = elapsed_since(start)
            self._record(processing_time, success=False)
            logger.error(f"Action {action_id} failed: {e}")

            errored = await self.event_bus.emit(ACTION_ERROR, {
                "action_id": action_id,
                "result": result,
                "error": e,
                "timestamp": time.time()
            })

            if self.config.error_strategy is ErrorStrategy.THROW:
                if isinstance(e, ActionPipelineError):
                    raise
                raise ActionExecutionError(str(e)) from e

            return ActionProcessingResult(
                success=False,
                action_id=action_id,
                error=e,
                context=context,
                intercepted=intercepted,
                processing_time=processing_time,
                event_count=event_count + len(errored.results)
            )

        finally:
            stats.concurrent_actions -= 1

    @staticmethod
    def _to_search_result(data: Dict[str, Any]) -> SearchResult:
        try:
            return SearchResult.from_dict(data)
        except KeyError as e:
            raise ContextPreservationError(f"Search result is missing required field {e}") from e
        except (TypeError, ValueError) as e:
            raise ContextPreservationError(f"Invalid search result: {e}") from e

    async def _build_context(self, result: SearchResult, options: ActionProcessingOptions) -> SecureActionContext:
        enrichment = options.enrichment or self.enrichment_config

        context = await self.context_preserver.create_context(
            result,
            options.query,
            options.source or DEFAULT_SOURCE,
            enrichment
        )
        preserved = await self.context_preserver.preserve_context(
            context,
            options.preservation or self.preservation_options,
            enrichment
        )
        if not preserved.success:
            raise ContextPreservationError(f"Context preservation failed: {preserved.error}")
        return preserved.context

    async def _execute(
        self,
        action_id: str,
        result: SearchResult,
        context: SecureActionContext,
        interception: ActionExecutionResult,
        options: ActionProcessingOptions
    ) -> _Outcome:
        navigate = interception.navigation_requested
        if options.custom_navigation is not None:
            navigate = options.custom_navigation

        if navigate:
            if interception.custom_action:
                logger.warning(f"Action {action_id} navigates; skipping the interceptor's custom action")
            navigation = await self.interceptor.handle_navigation(result, context)
            if navigation.error is not None:
                raise ActionExecutionError(f"Navigation failed: {navigation.error}") from navigation.error
            if navigation.prevented:
                return _Outcome(vetoed=navigation)
            return _Outcome(value=navigation.metadata)

        if custom_action := interception.custom_action:
            try:
                return _Outcome(value=await resolve(custom_action()))
            except Exception as e:
                raise ActionExecutionError(f"Custom action failed: {e}") from e

        payload = {
            "action_id": action_id,
            "result": result,
            "context": context,
            "callback_timeout": options.callback_timeout,
            "callback_retries": options.callback_retries
        }
        callbacks = await self.event_bus.emit(ACTION_CALLBACK, payload)
        if errors := callbacks.errors:
            raise ActionExecutionError(f"Action callback failed: {errors[0]}") from errors[0]

        await self.event_bus.emit(RESULT_SELECTED, {"result": result, "context": context})
        return _Outcome(
            value={"action": "selected", "callback_results": [r.result for r in callbacks.results]},
            callback_count=len(callbacks.results)
        )

    async def _prevented(
        self,
        action_id: str,
        result: SearchResult,
        context: SecureActionContext,
        outcome: ActionExecutionResult,
        start: float,
        event_count: int
    ) -> ActionProcessingResult:
        self.statistics.prevented_actions += 1
        logger.info(f"Action {action_id} prevented: {outcome.prevention_reason}")

        prevented = await self.event_bus.emit(ACTION_PREVENTED, {
            "action_id": action_id,
            "result": result,
            "context": context,
            "reason": outcome.prevention_reason,
            "timestamp": time.time()
        })
        event_count += len(prevented.results)

        completed = await self.event_bus.emit(ACTION_COMPLETE, {
            "action_id": action_id,
            "result": result,
            "context": context,
            "success": False,
            "prevented": True,
            "reason": outcome.prevention_reason,
            "timestamp": time.time()
        })

        processing_time = elapsed_since(start)
        self._record(processing_time)
        return ActionProcessingResult(
            success=False,
            action_id=action_id,
            context=context,
            prevented=True,
            prevention_reason=outcome.prevention_reason,
            intercepted=True,
            processing_time=processing_time,
            event_count=event_count + len(completed.results),
            metadata=outcome.metadata
        )

    async def _cleanup_action(self, action_id: str, context: SecureActionContext, immediate: bool) -> bool:
        """Track the action's ephemeral resources and release them when immediate"""
        group_id = f"action_{action_id}"
        self.cleanup_manager.create_group(group_id, f"Action {action_id}")
        self.cleanup_manager.track_resource(
            ResourceType.CUSTOM,
            f"context:{context.context_id}",
            lambda: self.context_preserver.release_context(context.context_id),
            metadata={"action_id": action_id},
            group_id=group_id
        )

        if not immediate:
            return False

        cleanup = await self.cleanup_manager.cleanup_group(group_id)
        if not cleanup.success:
            logger.warning(f"Cleanup failed for action {action_id}: {cleanup.failed} resources")
        return cleanup.success

    def _record(self, processing_time: float, success: Optional[bool] = None) -> None:
        stats = self.statistics
        if success is True:
            stats.successful_actions += 1
        elif success is False:
            stats.failed_actions += 1

        if not self.config.enable_metrics:
            return

        stats.total_processing_time += processing_time
        stats.average_processing_time = stats.total_processing_time / max(stats.total_actions, 1)
        if stats.fastest_action == 0 or processing_time < stats.fastest_action:
            stats.fastest_action = processing_time
        stats.slowest_action = max(stats.slowest_action, processing_time)

    def _ensure_leak_detection(self) -> None:
        # Leak detection needs a running loop, so it starts with the first action
        if self.config.detect_leaks and not self._leak_detection_started:
            self._leak_detection_started = self.cleanup_manager.start_leak_detection()

    def register_action_callback(
        self,
        event: str,
        callback: Callable[..., Any],
        priority: int = 0,
        once: bool = False,
        timeout: Optional[float] = None,
        retries: int = 0
    ) -> str:
        """
        Run ``callback(result, context)`` through the callback executor
        whenever ``event`` carries a result and a context.

        Returns:
            Subscription id for unregister_action_callback
        """
        async def listener(event_data: Event) -> Any:
            data = event_data.data
            if not isinstance(data, dict) or "result" not in data or "context" not in data:
                return None

            outcome = await self.callback_executor.execute(
                callback,
                (data["result"], data["context"]),
                timeout=data.get("callback_timeout") or timeout or self.config.timeout,
                retries=data.get("callback_retries") or retries
            )
            if not outcome.success:
                raise outcome.error
            return outcome.result

        subscription = self.event_bus.subscribe(event, listener, priority=priority, once=once)
        logger.debug(f"Registered callback for event '{event}' with id {subscription.id}")
        return subscription.id

    def unregister_action_callback(self, subscription_id: str) -> bool:
        return self.event_bus.unsubscribe(subscription_id)

    def get_statistics(self) -> Dict[str, Any]:
        """Handler counters, plus collaborator statistics when metrics are enabled"""
        stats: Dict[str, Any] = asdict(self.statistics)
        if self.config.enable_metrics:
            stats["interceptor"] = self.interceptor.get_statistics()
            stats["context"] = self.context_preserver.get_statistics()
            stats["cleanup"] = asdict(self.cleanup_manager.get_statistics())
        return stats

    def reset_statistics(self) -> None:
        # In-flight counters describe live state and survive a reset
        self.statistics = ActionHandlerStatistics(
            concurrent_actions=self.statistics.concurrent_actions,
            queued_actions=self.statistics.queued_actions
        )
        logger.debug("Statistics reset")

    async def cleanup(self) -> Dict[str, int]:
        """Release every tracked resource, critical ones included"""
        result = await self.cleanup_manager.cleanup_all(respect_critical=False)
        logger.info(f"Cleanup completed: {result.resources_cleaned} resources cleaned")
        return {"cleaned": result.resources_cleaned, "errors": result.failed}

    async def shutdown(self) -> CleanupResult:
        """Stop leak detection and release everything; later calls do nothing"""
        if self._shut_down:
            return CleanupResult()
        self._shut_down = True
        logger.info("Shutting down action handler")
        return await self.cleanup_manager.shutdown()
