"""
Resource cleanup manager
Tracks acquired resources, releases them individually, by group, by type or
in bulk, and watches for resources that look leaked
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import LeakDetectionConfig
from .models import (
    CleanupGroup,
    CleanupResult,
    DeferredTask,
    ResourceCleanupOutcome,
    ResourceTracker,
    ResourceType
)
from .utils import elapsed_since, generate_id, resolve

logger = logging.getLogger(__name__)


@dataclass
class CleanupStatistics:
    total_tracked: int = 0
    total_cleaned: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    active_resources: int = 0
    leaks_detected: int = 0
    average_lifetime: float = 0.0
    total_cleanup_time: float = 0.0
    average_cleanup_time: float = 0.0
    failed_cleanups: int = 0


class ResourceCleanupManager:
    """Tracks resources with priority, criticality and grouping"""

    def __init__(self, leak_detection_config: Optional[LeakDetectionConfig] = None):
        self.resources: Dict[str, ResourceTracker] = {}
        self.groups: Dict[str, CleanupGroup] = {}
        self.leak_detection_config = leak_detection_config or LeakDetectionConfig()
        self.statistics = CleanupStatistics()
        self._leak_task: Optional[asyncio.Task] = None
        self._shutting_down = False

    def track_resource(
        self,
        resource_type: ResourceType,
        name: str,
        cleanup: DeferredTask,
        priority: int = 0,
        critical: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        group_id: Optional[str] = None
    ) -> str:
        """Track a resource and return its id"""
        resource_id = generate_id("resource")
        now = time.time()

        self.resources[resource_id] = ResourceTracker(
            id=resource_id,
            type=resource_type,
            name=name,
            cleanup=cleanup,
            created=now,
            last_accessed=now,
            metadata=metadata,
            priority=priority,
            critical=critical
        )

        self.statistics.total_tracked += 1
        self.statistics.by_type[resource_type.value] = self.statistics.by_type.get(resource_type.value, 0) + 1
        self.statistics.active_resources = len(self.resources)

        if group_id:
            if group := self.groups.get(group_id):
                group.resources.add(resource_id)
            else:
                logger.warning(f"Cleanup group {group_id} does not exist; {name} tracked ungrouped")

        logger.debug(f"Tracking resource: {name} ({resource_type.value}) - {resource_id}")
        return resource_id

    def track_event_listener(self, target: Any, event: str, listener: Any) -> str:
        """Track a listener registered on an emitter with ``remove_listener``"""
        target_name = type(target).__name__
        return self.track_resource(
            ResourceType.EVENT_LISTENER,
            f"{target_name}:{event}",
            lambda: target.remove_listener(event, listener),
            metadata={"event": event, "target": target_name}
        )

    def track_timer(self, handle: Any, name: Optional[str] = None) -> str:
        """Track an asyncio TimerHandle or Task; cleanup cancels it"""
        return self.track_resource(
            ResourceType.TIMER,
            name or f"timer:{id(handle)}",
            handle.cancel,
            metadata={"handle": type(handle).__name__}
        )

    def track_subscription(
        self,
        name: str,
        unsubscribe: DeferredTask,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        return self.track_resource(ResourceType.SUBSCRIPTION, name, unsubscribe, metadata=metadata)

    def track_observer(
        self,
        observer: Any,
        name: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """Track an observer exposing ``disconnect()``"""
        return self.track_resource(ResourceType.OBSERVER, name, observer.disconnect, metadata=metadata)

    def create_group(
        self,
        group_id: str,
        name: str,
        priority: int = 0,
        atomic: bool = False,
        metadata: Optional[Dict[str, Any]] = None
    ) -> CleanupGroup:
        """Create a cleanup group"""
        group = CleanupGroup(id=group_id, name=name, priority=priority, atomic=atomic, metadata=metadata)
        self.groups[group_id] = group
        logger.debug(f"Created cleanup group: {name} - {group_id}")
        return group

    def add_to_group(self, resource_id: str, group_id: str) -> bool:
        """Add a tracked resource to an existing group"""
        if resource_id in self.resources and (group := self.groups.get(group_id)):
            group.resources.add(resource_id)
            return True
        return False

    async def cleanup_resource(self, resource_id: str) -> bool:
        """Clean up one resource; False when unknown or when its cleanup failed"""
        return (await self._cleanup_one(resource_id)).success

    async def _cleanup_one(self, resource_id: str) -> ResourceCleanupOutcome:
        if not (resource := self.resources.get(resource_id)):
            return ResourceCleanupOutcome(resource_id=resource_id, success=False)

        start = time.perf_counter()
        try:
            await resolve(resource.cleanup())
        except Exception as e:
            self.statistics.failed_cleanups += 1
            logger.error(f"Failed to cleanup resource {resource.name} ({resource_id}): {e}")
            return ResourceCleanupOutcome(
                resource_id=resource_id, success=False, time=elapsed_since(start), error=e
            )

        cleanup_time = elapsed_since(start)
        self._forget(resource_id, cleanup_time)
        logger.debug(f"Cleaned up resource: {resource.name} - {resource_id}")
        return ResourceCleanupOutcome(resource_id=resource_id, success=True, time=cleanup_time)

    def _forget(self, resource_id: str, cleanup_time: float) -> None:
        """Drop a cleaned resource from tracking and from every group"""
        self.resources.pop(resource_id, None)
        for group in self.groups.values():
            group.resources.discard(resource_id)

        self.statistics.total_cleaned += 1
        self.statistics.active_resources = len(self.resources)
        self.statistics.total_cleanup_time += cleanup_time
        self.statistics.average_cleanup_time = (
            self.statistics.total_cleanup_time / self.statistics.total_cleaned
        )

    async def cleanup_by_type(self, resource_type: ResourceType) -> CleanupResult:
        return await self.cleanup_resources(
            [r.id for r in self.resources.values() if r.type == resource_type]
        )

    async def cleanup_group(self, group_id: str) -> CleanupResult:
        """Clean up a group; the group is deleted afterwards"""
        if not (group := self.groups.get(group_id)):
            return CleanupResult(success=False)

        # Highest priority first, then tracking order
        members = [r for r in self.resources.values() if r.id in group.resources]
        members.sort(key=lambda r: r.priority, reverse=True)
        resource_ids = [r.id for r in members]
        result = await self.cleanup_resources(resource_ids, atomic=group.atomic)

        self.groups.pop(group_id, None)
        logger.debug(f"Cleaned up group: {group.name} - {len(resource_ids)} resources")
        return result

    async def cleanup_resources(self, resource_ids: List[str], atomic: bool = False) -> CleanupResult:
        """
        Clean up several resources.

        In atomic mode every cleanup runs inside one guarded block: if any of
        them raises, nothing is removed from tracking and every resource is
        reported as failed. Otherwise each resource succeeds or fails on its own.
        """
        start = time.perf_counter()

        if atomic:
            outcomes = await self._cleanup_atomic(resource_ids)
        else:
            outcomes = [await self._cleanup_one(resource_id) for resource_id in resource_ids]

        failed = sum(1 for o in outcomes if not o.success)
        return CleanupResult(
            success=failed == 0,
            resources_cleaned=len(outcomes) - failed,
            failed=failed,
            total_time=elapsed_since(start),
            results=outcomes
        )

    async def _cleanup_atomic(self, resource_ids: List[str]) -> List[ResourceCleanupOutcome]:
        members = [self.resources[rid] for rid in resource_ids if rid in self.resources]
        outcomes: List[ResourceCleanupOutcome] = []

        try:
            for resource in members:
                resource_start = time.perf_counter()
                await resolve(resource.cleanup())
                outcomes.append(ResourceCleanupOutcome(
                    resource_id=resource.id, success=True, time=elapsed_since(resource_start)
                ))
        except Exception as e:
            self.statistics.failed_cleanups += len(members)
            logger.error(f"Atomic cleanup failed, keeping {len(members)} resources tracked: {e}")
            return [
                ResourceCleanupOutcome(resource_id=resource.id, success=False, error=e)
                for resource in members
            ]

        for outcome in outcomes:
            self._forget(outcome.resource_id, outcome.time)
        return outcomes

    async def cleanup_all(self, respect_critical: bool = True) -> CleanupResult:
        """Clean up everything, highest priority first"""
        candidates = [
            r for r in self.resources.values()
            if not (respect_critical and r.critical)
        ]
        candidates.sort(key=lambda r: r.priority, reverse=True)
        result = await self.cleanup_resources([r.id for r in candidates])

        for group_id in [g.id for g in self.groups.values() if not g.resources]:
            del self.groups[group_id]
        return result

    def start_leak_detection(self) -> bool:
        """Start periodic leak checks on the running event loop"""
        if not self.leak_detection_config.enabled or self._leak_task is not None:
            return False

        try:
            self._leak_task = asyncio.get_running_loop().create_task(self._leak_loop())
        except RuntimeError:
            logger.warning("Leak detection needs a running event loop; not started")
            return False

        logger.debug("Started leak detection monitoring")
        return True

    def stop_leak_detection(self) -> None:
        if self._leak_task is not None:
            self._leak_task.cancel()
            self._leak_task = None
            logger.debug("Stopped leak detection monitoring")

    async def _leak_loop(self) -> None:
        while True:
            await asyncio.sleep(self.leak_detection_config.check_interval)
            try:
                self.check_for_leaks()
            except Exception as e:
                logger.error(f"Leak check failed: {e}")

    def check_for_leaks(self) -> List[ResourceTracker]:
        """Flag non-critical resources that have not been accessed for too long"""
        config = self.leak_detection_config
        now = time.time()

        if len(self.resources) > config.max_resources:
            logger.warning(
                f"Resource count exceeded limit: {len(self.resources)} > {config.max_resources}"
            )

        leaked = [
            r for r in self.resources.values()
            if not r.critical and now - r.last_accessed > config.age_threshold
        ]

        for resource in leaked:
            self.statistics.leaks_detected += 1
            logger.warning(
                f"Potential leak detected: {resource.name} (idle {now - resource.last_accessed:.0f}s)"
            )
            if config.on_leak_detected:
                config.on_leak_detected(resource)

        return leaked

    def access_resource(self, resource_id: str) -> bool:
        """Refresh a resource's last-access time"""
        if resource := self.resources.get(resource_id):
            resource.last_accessed = time.time()
            return True
        return False

    def get_resource(self, resource_id: str) -> Optional[ResourceTracker]:
        return self.resources.get(resource_id)

    def get_resources(self) -> List[ResourceTracker]:
        return list(self.resources.values())

    def get_resources_by_type(self, resource_type: ResourceType) -> List[ResourceTracker]:
        return [r for r in self.resources.values() if r.type == resource_type]

    @property
    def active_resource_count(self) -> int:
        return len(self.resources)

    def get_statistics(self) -> CleanupStatistics:
        now = time.time()
        lifetimes = [now - r.created for r in self.resources.values()]
        self.statistics.average_lifetime = sum(lifetimes) / len(lifetimes) if lifetimes else 0.0
        self.statistics.active_resources = len(self.resources)
        return CleanupStatistics(**{**vars(self.statistics), "by_type": dict(self.statistics.by_type)})

    def reset_statistics(self) -> None:
        self.statistics = CleanupStatistics(active_resources=len(self.resources))

    async def shutdown(self) -> CleanupResult:
        """Release everything, critical resources included; safe to call twice"""
        if self._shutting_down:
            return CleanupResult()

        self._shutting_down = True
        self.stop_leak_detection()

        logger.info(f"Shutting down cleanup manager, releasing {len(self.resources)} resources")
        result = await self.cleanup_all(respect_critical=False)
        logger.info(
            f"Cleanup manager shutdown complete: {result.resources_cleaned} cleaned, {result.failed} failed"
        )
        return result


def combine_cleanup_tasks(*tasks: DeferredTask) -> DeferredTask:
    """Build one cleanup task that runs all of ``tasks``, logging individual failures"""
    async def combined() -> None:
        for task in tasks:
            try:
                await resolve(task())
            except Exception as e:
                logger.error(f"Cleanup task failed: {e}")

    return combined


def with_retry(task: DeferredTask, max_retries: int = 3, delay: float = 1.0) -> DeferredTask:
    """Wrap a cleanup task so it is retried with linear backoff before failing"""
    async def retrying() -> None:
        for attempt in range(1, max_retries + 1):
            try:
                await resolve(task())
                return
            except Exception:
                if attempt == max_retries:
                    raise
                await asyncio.sleep(delay * attempt)

    return retrying
