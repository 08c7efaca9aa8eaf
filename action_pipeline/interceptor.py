"""
Action interception chain
Runs prevention policies and a priority-ordered chain of interceptors before
an action executes, and owns the navigation sub-pipeline
"""
import itertools
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Pattern, Union

from .config import NavigationConfig, PreventionConfig
from .models import (
    ActionContext,
    ActionExecutionResult,
    ActionInterceptionResult,
    ActionRegistration,
    DeferredTask,
    SearchResult
)
from .navigation import Navigator
from .utils import elapsed_since, generate_id, resolve

logger = logging.getLogger(__name__)

InterceptorFn = Callable[
    [SearchResult, ActionContext, str],
    Union[Optional[ActionInterceptionResult], Awaitable[Optional[ActionInterceptionResult]]]
]


@dataclass
class InterceptorEntry:
    id: str
    fn: InterceptorFn
    priority: int
    order: int


@dataclass
class InterceptorStatistics:
    total_interceptions: int = 0
    prevented_actions: int = 0
    custom_navigations: int = 0
    executed_actions: int = 0
    total_interception_time: float = 0.0
    average_interception_time: float = 0.0


class ActionInterceptor:
    """Decides whether an action may run and what runs instead"""

    def __init__(
        self,
        navigation_config: Optional[NavigationConfig] = None,
        prevention_config: Optional[PreventionConfig] = None,
        navigator: Optional[Navigator] = None
    ):
        self.navigation_config = navigation_config or NavigationConfig()
        self.prevention_config = prevention_config or PreventionConfig()
        self.navigator = navigator
        self.interceptors: List[InterceptorEntry] = []
        self.actions: Dict[str, ActionRegistration] = {}
        self.statistics = InterceptorStatistics()
        self._order = itertools.count()

    # Interceptor chain

    def add_interceptor(self, fn: InterceptorFn, priority: int = 0) -> str:
        """Add an interceptor; higher priority runs first, ties keep registration order"""
        entry = InterceptorEntry(generate_id("interceptor"), fn, priority, next(self._order))
        self.interceptors.append(entry)
        self.interceptors.sort(key=lambda e: (-e.priority, e.order))
        logger.debug(f"Added interceptor {entry.id} with priority {priority}")
        return entry.id

    def remove_interceptor(self, fn_or_id: Union[str, InterceptorFn]) -> bool:
        """Remove an interceptor by id or by the function itself"""
        for entry in self.interceptors:
            if entry.id == fn_or_id or entry.fn is fn_or_id:
                self.interceptors.remove(entry)
                logger.debug(f"Removed interceptor {entry.id}")
                return True
        return False

    # Action registry

    def register_action(
        self,
        action_type: str,
        handler: Callable[..., Any],
        priority: int = 0,
        preventable: bool = True,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ActionRegistration:
        """Register a handler for an action type, replacing any existing one"""
        if action_type in self.actions:
            logger.info(f"Replacing registered action: {action_type}")

        registration = ActionRegistration(
            type=action_type,
            handler=handler,
            priority=priority,
            preventable=preventable,
            metadata=metadata,
            registered=time.time()
        )
        self.actions[action_type] = registration
        return registration

    def unregister_action(self, action_type: str) -> bool:
        return self.actions.pop(action_type, None) is not None

    def has_action(self, action_type: str) -> bool:
        return action_type in self.actions

    def get_registered_actions(self) -> List[ActionRegistration]:
        # sorted() is stable, so dict insertion order breaks ties
        return sorted(self.actions.values(), key=lambda r: -r.priority)

    # Configuration

    def configure_navigation(self, **changes) -> NavigationConfig:
        self.navigation_config = replace(self.navigation_config, **changes)
        logger.debug(f"Navigation configuration updated: {sorted(changes)}")
        return self.navigation_config

    def configure_prevention(self, **changes) -> PreventionConfig:
        self.prevention_config = replace(self.prevention_config, **changes)
        logger.debug(f"Prevention configuration updated: {sorted(changes)}")
        return self.prevention_config

    # Interception

    async def intercept_action(
        self,
        result: SearchResult,
        context: ActionContext,
        action_type: str = "select"
    ) -> ActionExecutionResult:
        """Run prevention policies and the interceptor chain for one action"""
        start = time.perf_counter()
        self.statistics.total_interceptions += 1

        try:
            prevented = False
            reason: Optional[str] = None
            custom_action: Optional[DeferredTask] = None
            stopped = False
            navigate = False
            interceptors_run = 0

            if policy_reason := await self._check_prevention(result, context, action_type):
                prevented = True
                reason = policy_reason
            else:
                for entry in list(self.interceptors):
                    interceptors_run += 1
                    outcome = await resolve(entry.fn(result, context, action_type))
                    if outcome is None:
                        continue

                    if outcome.prevent_default:
                        prevented = True
                        reason = reason or outcome.reason
                    if outcome.custom_action and custom_action is None:
                        custom_action = outcome.custom_action
                    navigate = navigate or outcome.navigate

                    if outcome.stop_processing:
                        stopped = True
                        logger.debug(f"Interceptor {entry.id} stopped the chain")
                        break

            metadata = {
                "action_type": action_type,
                "interceptors_run": interceptors_run,
                "stop_processing": stopped
            }

            if prevented:
                reason = reason or "Interceptor prevented action"
                self.statistics.prevented_actions += 1
                logger.info(f"Action prevented: {reason}")

                if handler := self.prevention_config.prevention_handler:
                    handler(result, context, reason)

                # No custom action means a silent veto
                if custom_action:
                    await resolve(custom_action())
                    metadata["custom_action_run"] = True

                return ActionExecutionResult(
                    executed=False,
                    prevented=True,
                    execution_time=elapsed_since(start),
                    prevention_reason=reason,
                    metadata=metadata
                )

            # auto_navigate only applies when no interceptor supplied a custom action
            if not navigate and custom_action is None:
                navigate = self.navigation_config.auto_navigate and bool(result.url)

            self.statistics.executed_actions += 1
            return ActionExecutionResult(
                executed=True,
                prevented=False,
                execution_time=elapsed_since(start),
                metadata=metadata,
                navigation_requested=navigate,
                custom_action=custom_action
            )

        except Exception as e:
            logger.error(f"Interception failed: {e}", exc_info=True)
            return ActionExecutionResult(
                executed=False,
                prevented=True,
                execution_time=elapsed_since(start),
                error=e,
                prevention_reason="Interception error",
                metadata={"action_type": action_type, "error": True}
            )
        finally:
            self._record_time(elapsed_since(start))

    async def _check_prevention(
        self,
        result: SearchResult,
        context: ActionContext,
        action_type: str
    ) -> Optional[str]:
        """Reason the prevention policy vetoes the action, if it does"""
        config = self.prevention_config

        if config.global_prevent_default and action_type not in config.allowed_actions:
            return "Global preventDefault enabled"

        for condition in config.prevent_conditions:
            if await resolve(condition(result, context)):
                return "Prevention condition matched"

        return None

    # Navigation

    async def handle_navigation(
        self,
        result: SearchResult,
        context: ActionContext,
        url: Optional[str] = None
    ) -> ActionExecutionResult:
        """Resolve, transform, filter and dispatch a navigation"""
        start = time.perf_counter()
        config = self.navigation_config

        def halted(reason: str, error: Optional[BaseException] = None, **metadata) -> ActionExecutionResult:
            if error:
                logger.error(f"{reason}: {error}")
            else:
                logger.info(f"Navigation halted: {reason}")
            return ActionExecutionResult(
                executed=False,
                prevented=True,
                execution_time=elapsed_since(start),
                error=error,
                prevention_reason=reason,
                metadata=metadata
            )

        if not (target_url := url or result.url):
            return halted("No URL provided")

        if transformer := config.url_transformer:
            try:
                target_url = await resolve(transformer(target_url, result, context))
            except Exception as e:
                return halted("URL transform error", e, url=target_url)

        for middleware in config.middleware:
            try:
                allowed = await resolve(middleware(target_url, result, context))
            except Exception as e:
                return halted("Navigation middleware error", e, url=target_url)
            if not allowed:
                return halted("Navigation middleware blocked", url=target_url)

        if handler := config.handler:
            try:
                await resolve(handler(target_url, result, context))
            except Exception as e:
                return halted("Navigation handler error", e, url=target_url)

            self.statistics.custom_navigations += 1
            return ActionExecutionResult(
                executed=True,
                prevented=False,
                custom_navigation=True,
                execution_time=elapsed_since(start),
                metadata={"url": target_url, "handler": "custom"}
            )

        if config.prevent_default:
            return halted("Navigation preventDefault enabled", url=target_url)

        metadata = {"url": target_url, "target": config.target, "handler": "default"}
        if self.navigator is not None:
            try:
                self.navigator.navigate(target_url, config.target)
            except Exception as e:
                logger.error(f"Navigation to {target_url} failed: {e}")
                return ActionExecutionResult(
                    executed=False,
                    prevented=False,
                    execution_time=elapsed_since(start),
                    error=e,
                    metadata=metadata
                )
            metadata["navigated"] = True
        else:
            logger.debug(f"No navigator configured, navigation to {target_url} recorded only")
            metadata["navigated"] = False

        return ActionExecutionResult(
            executed=True,
            prevented=False,
            execution_time=elapsed_since(start),
            metadata=metadata
        )

    # Registered actions

    async def execute_action(
        self,
        action_type: str,
        result: SearchResult,
        context: ActionContext
    ) -> ActionExecutionResult:
        """Run a registered action, intercepting it first when it is preventable"""
        start = time.perf_counter()

        if not (registration := self.actions.get(action_type)):
            return ActionExecutionResult(
                executed=False,
                prevented=True,
                execution_time=elapsed_since(start),
                prevention_reason=f"Action type '{action_type}' not registered",
                metadata={"action_type": action_type, "registered": False}
            )

        if registration.preventable:
            interception = await self.intercept_action(result, context, action_type)
            if interception.prevented:
                return interception

        try:
            value = await resolve(registration.handler(result, context))
        except Exception as e:
            logger.error(f"Action execution failed for {action_type}: {e}")
            return ActionExecutionResult(
                executed=False,
                prevented=True,
                execution_time=elapsed_since(start),
                error=e,
                prevention_reason="Action execution error",
                metadata={"action_type": action_type, "registered": True}
            )

        self.statistics.executed_actions += 1
        logger.debug(f"Executed action: {action_type}")
        return ActionExecutionResult(
            executed=True,
            prevented=False,
            execution_time=elapsed_since(start),
            metadata={
                "action_type": action_type,
                "registered": True,
                "priority": registration.priority,
                "result": value,
                **(registration.metadata or {})
            }
        )

    # Statistics

    def _record_time(self, elapsed: float) -> None:
        stats = self.statistics
        stats.total_interception_time += elapsed
        stats.average_interception_time = stats.total_interception_time / stats.total_interceptions

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **vars(self.statistics),
            "interceptor_count": len(self.interceptors),
            "registered_actions": len(self.actions)
        }

    def reset_statistics(self) -> None:
        self.statistics = InterceptorStatistics()

    def clear(self) -> None:
        """Remove every interceptor and registered action"""
        logger.debug(f"Cleared {len(self.interceptors)} interceptors and {len(self.actions)} actions")
        self.interceptors.clear()
        self.actions.clear()


# Interceptor factories

def create_conditional_interceptor(
    condition: Callable[[SearchResult, ActionContext], bool],
    **result_fields
) -> InterceptorFn:
    """Interceptor that returns the given result fields when the condition holds"""
    def interceptor(result, context, action_type):
        if condition(result, context):
            return ActionInterceptionResult(**result_fields)
        return ActionInterceptionResult()
    return interceptor


def create_url_interceptor(
    pattern: Union[str, Pattern[str]],
    handler: Callable[[str, SearchResult, ActionContext], Any]
) -> InterceptorFn:
    """Interceptor that hands matching URLs to a custom handler instead of navigating"""
    url_pattern = re.compile(pattern) if isinstance(pattern, str) else pattern

    def interceptor(result, context, action_type):
        url = result.url or ""
        if url_pattern.search(url):
            return ActionInterceptionResult(
                prevent_default=True,
                custom_action=lambda: handler(url, result, context),
                reason=f"URL pattern matched: {url_pattern.pattern}",
                metadata={"url_pattern": url_pattern.pattern, "url": url}
            )
        return ActionInterceptionResult()
    return interceptor


def prevent_by_category(categories: Iterable[str], reason: str = "Category not allowed") -> InterceptorFn:
    blocked = set(categories)

    def interceptor(result, context, action_type):
        if (category := result.metadata.get("category")) and category in blocked:
            return ActionInterceptionResult(prevent_default=True, reason=reason)
        return ActionInterceptionResult()
    return interceptor


def require_permissions(permissions: Iterable[str], reason: str = "Insufficient permissions") -> InterceptorFn:
    required = list(permissions)

    def interceptor(result, context, action_type):
        granted = context.user.permissions if context.user else []
        if not all(p in granted for p in required):
            return ActionInterceptionResult(prevent_default=True, reason=reason)
        return ActionInterceptionResult()
    return interceptor


def add_tracking(track: Callable[[SearchResult, ActionContext], Any]) -> InterceptorFn:
    """Interceptor that calls a tracking function and lets the action run unchanged"""
    async def interceptor(result, context, action_type):
        try:
            await resolve(track(result, context))
        except Exception as e:
            logger.warning(f"Tracking failed for result {result.id}: {e}")
        return ActionInterceptionResult()
    return interceptor
