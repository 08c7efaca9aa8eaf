"""
Data models for the action pipeline
"""
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

# Zero-argument task that may be sync or async
DeferredTask = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class SearchResult:
    """A search result the user selected"""
    id: str
    title: str
    url: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchResult":
        """Build a result from a plain mapping, ignoring unknown keys"""
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            url=data.get("url"),
            description=data.get("description"),
            metadata=dict(data.get("metadata") or {})
        )


@dataclass
class SourceInfo:
    """Where the result came from"""
    type: str
    id: Optional[str] = None
    name: Optional[str] = None
    version: Optional[str] = None


@dataclass
class SearchInfo:
    """Search-level metadata for the action"""
    total_results: int
    processing_time: float
    result_index: int
    page: Optional[int] = None
    filters: Optional[Dict[str, Any]] = None


@dataclass
class PerformanceMetrics:
    query_time: float = 0.0
    transformation_time: float = 0.0
    render_time: float = 0.0


@dataclass
class UserInfo:
    id: str
    session_id: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    preferences: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionContext:
    """Provenance snapshot describing why an action is happening"""
    query: str
    timestamp: float
    source: SourceInfo
    search: SearchInfo
    performance: Optional[PerformanceMetrics] = None
    user: Optional[UserInfo] = None
    custom: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return asdict(self)


@dataclass
class ValidationRecord:
    is_valid: bool = True
    sanitized: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class SecurityRecord:
    trusted: bool = True
    origin: str = "unknown"
    permissions: List[str] = field(default_factory=list)
    restrictions: List[str] = field(default_factory=list)


@dataclass
class AuditRecord:
    context_id: str = ""
    created_by: str = ""
    created_at: float = 0.0
    modified_by: Optional[str] = None
    modified_at: Optional[float] = None
    chain: List[str] = field(default_factory=list)


@dataclass
class SecureActionContext(ActionContext):
    """Action context wrapped with validation, security and audit records"""
    validation: ValidationRecord = field(default_factory=ValidationRecord)
    security: SecurityRecord = field(default_factory=SecurityRecord)
    audit: AuditRecord = field(default_factory=AuditRecord)

    @property
    def context_id(self) -> str:
        return self.audit.context_id


@dataclass
class ValidationOutcome:
    """Result of a context validation rule"""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ContextPreservationResult:
    """Result of preserving a context"""
    success: bool = False
    context: Optional[SecureActionContext] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    size: int = 0
    processing_time: float = 0.0


@dataclass
class ActionInterceptionResult:
    """What a single interceptor decided about an action"""
    prevent_default: bool = False
    stop_processing: bool = False
    custom_action: Optional[DeferredTask] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    navigate: bool = False  # ask the handler to navigate even when auto_navigate is off


@dataclass
class ActionExecutionResult:
    """Outcome of interception, navigation or a registered action"""
    executed: bool
    prevented: bool
    custom_navigation: bool = False
    execution_time: float = 0.0
    error: Optional[BaseException] = None
    prevention_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    navigation_requested: bool = False
    custom_action: Optional[DeferredTask] = None


@dataclass
class ActionRegistration:
    """A named action handler"""
    type: str
    handler: Callable[..., Any]
    priority: int = 0
    preventable: bool = True
    metadata: Optional[Dict[str, Any]] = None
    registered: float = 0.0


class ResourceType(Enum):
    """Kinds of tracked resources"""
    EVENT_LISTENER = "event-listener"
    TIMER = "timer"
    SUBSCRIPTION = "subscription"
    OBSERVER = "observer"
    CONNECTION = "connection"
    CUSTOM = "custom"


@dataclass
class ResourceTracker:
    """A tracked resource and the task that releases it"""
    id: str
    type: ResourceType
    name: str
    cleanup: DeferredTask
    created: float
    last_accessed: float
    metadata: Optional[Dict[str, Any]] = None
    priority: int = 0
    critical: bool = False


@dataclass
class CleanupGroup:
    """Resources that are cleaned up together"""
    id: str
    name: str
    resources: Set[str] = field(default_factory=set)
    priority: int = 0
    atomic: bool = False
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ResourceCleanupOutcome:
    resource_id: str
    success: bool
    time: float = 0.0
    error: Optional[BaseException] = None


@dataclass
class CleanupResult:
    """Aggregated result of a cleanup run"""
    success: bool = True
    resources_cleaned: int = 0
    failed: int = 0
    total_time: float = 0.0
    results: List[ResourceCleanupOutcome] = field(default_factory=list)


@dataclass
class ActionProcessingResult:
    """Result of pushing one action through the pipeline"""
    success: bool
    action_id: str
    result: Any = None
    error: Optional[BaseException] = None
    context: Optional[SecureActionContext] = None
    prevented: bool = False
    prevention_reason: Optional[str] = None
    intercepted: bool = False
    processing_time: float = 0.0
    event_count: int = 0
    callback_count: int = 0
    cleanup_performed: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Summary suitable for JSON output"""
        summary = {
            "action_id": self.action_id,
            "success": self.success,
            "prevented": self.prevented,
            "processing_time": self.processing_time,
            "cleanup_performed": self.cleanup_performed
        }
        if self.prevention_reason:
            summary["prevention_reason"] = self.prevention_reason
        if self.error:
            summary["error"] = str(self.error)
        if self.context:
            summary["context_id"] = self.context.context_id
        return summary
