"""
Configuration module for action-pipeline
"""
import inspect
import json
import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .models import ResourceTracker
from .utils import substitute_env_vars

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_SIZE = 1024 * 1024  # 1 MiB
DEFAULT_MAX_HISTORY_SIZE = 1000


class ConfigurationError(Exception):
    """Base exception for configuration errors"""
    pass


class ErrorStrategy(Enum):
    """How ActionHandler reports pipeline failures"""
    THROW = "throw"
    CALLBACK = "callback"


@dataclass
class ActionHandlerConfig:
    """Configuration for an ActionHandler instance"""
    timeout: float = 10.0  # applied by the callback executor
    auto_cleanup: bool = True
    max_concurrent_actions: int = 10
    enable_metrics: bool = True
    error_strategy: ErrorStrategy = ErrorStrategy.CALLBACK
    validate_context: bool = True
    detect_leaks: bool = True

    def __post_init__(self):
        if isinstance(self.error_strategy, str):
            self.error_strategy = ErrorStrategy(self.error_strategy)
        if self.max_concurrent_actions < 1:
            raise ValueError("max_concurrent_actions must be at least 1")


@dataclass
class LeakDetectionConfig:
    """Leak detection settings; intervals and thresholds are in seconds"""
    enabled: bool = True
    check_interval: float = 60.0
    age_threshold: float = 300.0
    max_resources: int = 1000
    on_leak_detected: Optional[Callable[[ResourceTracker], None]] = None


@dataclass
class SecurityPolicies:
    sanitize_custom_data: bool = False
    allowed_origins: Optional[List[str]] = None
    required_permissions: List[str] = field(default_factory=list)
    restricted_fields: List[str] = field(default_factory=list)
    redact_sensitive_data: bool = False


@dataclass
class EnrichmentConfig:
    """Controls what createContext folds in and how contexts are validated"""
    include_performance: bool = False
    include_user: bool = False
    include_detailed_source: bool = False
    custom_enrichers: List[Callable[..., Any]] = field(default_factory=list)
    validation_rules: List[Callable[..., Any]] = field(default_factory=list)
    security_policies: Optional[SecurityPolicies] = None


@dataclass
class PreservationOptions:
    deep_clone: bool = False
    validate: bool = False
    sanitize: bool = False
    max_size: Optional[int] = None


NavigationHandler = Callable[..., Union[None, Awaitable[None]]]
NavigationMiddleware = Callable[..., Union[bool, Awaitable[bool]]]


@dataclass
class NavigationConfig:
    """Navigation sub-pipeline settings"""
    handler: Optional[NavigationHandler] = None
    target: str = "_self"
    prevent_default: bool = False
    url_transformer: Optional[Callable[..., str]] = None
    middleware: List[NavigationMiddleware] = field(default_factory=list)
    # Ask the orchestrator to navigate when the result carries a URL
    auto_navigate: bool = True


@dataclass
class PreventionConfig:
    global_prevent_default: bool = False
    prevent_conditions: List[Callable[..., Any]] = field(default_factory=list)
    # Called synchronously as (result, context, reason)
    prevention_handler: Optional[Callable[..., None]] = None
    allowed_actions: List[str] = field(default_factory=list)

    def __post_init__(self):
        if inspect.iscoroutinefunction(self.prevention_handler):
            raise TypeError("prevention_handler must be a synchronous function")


@dataclass
class PipelineConfig:
    """Aggregate configuration for a full pipeline"""
    handler: ActionHandlerConfig = field(default_factory=ActionHandlerConfig)
    leak_detection: LeakDetectionConfig = field(default_factory=LeakDetectionConfig)
    navigation: NavigationConfig = field(default_factory=NavigationConfig)
    prevention: PreventionConfig = field(default_factory=PreventionConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    preservation: PreservationOptions = field(default_factory=PreservationOptions)
    max_history_size: int = DEFAULT_MAX_HISTORY_SIZE
    default_max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE


# Keys that may appear in a JSON config file; callables are code-only
FILE_SECTIONS: Dict[str, type] = {
    "handler": ActionHandlerConfig,
    "leak_detection": LeakDetectionConfig,
    "navigation": NavigationConfig,
    "prevention": PreventionConfig,
    "enrichment": EnrichmentConfig,
    "preservation": PreservationOptions,
}
CODE_ONLY_FIELDS = {
    "on_leak_detected", "handler", "url_transformer", "middleware",
    "prevent_conditions", "prevention_handler", "custom_enrichers",
    "validation_rules", "security_policies",
}
TOP_LEVEL_KEYS = set(FILE_SECTIONS) | {"security_policies", "max_history_size", "default_max_context_size"}


class ConfigurationManager:
    """Loads pipeline configuration from a JSON file"""

    def __init__(self, config_file: Union[str, Path]):
        self.config_file = Path(config_file)
        self.config: Dict = {}  # Raw configuration after substitution

    def load(self) -> PipelineConfig:
        """Load configuration from JSON file"""
        if not self.config_file.exists():
            error_msg = f"Configuration file not found: {self.config_file}"
            logger.error(error_msg)
            raise FileNotFoundError(error_msg)

        try:
            with self.config_file.open('r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in configuration file: {e}")
            raise ConfigurationError(f"Invalid JSON: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Configuration root must be a JSON object")

        self.config = self._substitute(config_data)

        try:
            pipeline_config = self.build(self.config)
        except (TypeError, ValueError) as e:
            logger.error(f"Configuration error: {e}")
            raise ConfigurationError(str(e)) from e

        logger.info(f"Loaded pipeline configuration from {self.config_file}")
        return pipeline_config

    @classmethod
    def build(cls, data: Dict[str, Any]) -> PipelineConfig:
        """Build a PipelineConfig from an already-parsed mapping"""
        if unknown := set(data) - TOP_LEVEL_KEYS:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        sections = {
            name: cls._create_section(name, section_cls, data.get(name, {}))
            for name, section_cls in FILE_SECTIONS.items()
        }

        if "security_policies" in data:
            policies = cls._create_section("security_policies", SecurityPolicies, data["security_policies"])
            sections["enrichment"].security_policies = policies

        return PipelineConfig(
            **sections,
            max_history_size=data.get("max_history_size", DEFAULT_MAX_HISTORY_SIZE),
            default_max_context_size=data.get("default_max_context_size", DEFAULT_MAX_CONTEXT_SIZE)
        )

    @staticmethod
    def _create_section(name: str, section_cls: type, section_data: Any) -> Any:
        """Create one configuration record, rejecting unknown keys"""
        if not isinstance(section_data, dict):
            raise ConfigurationError(f"Section '{name}' must be a JSON object")

        allowed = {f.name for f in fields(section_cls)} - CODE_ONLY_FIELDS
        if unknown := set(section_data) - allowed:
            raise ConfigurationError(
                f"Unknown keys in section '{name}': {', '.join(sorted(unknown))}"
            )
        return section_cls(**section_data)

    def _substitute(self, value: Any) -> Any:
        """Substitute ${VAR} references in every string value"""
        if isinstance(value, str):
            return substitute_env_vars(value)
        if isinstance(value, list):
            return [self._substitute(item) for item in value]
        if isinstance(value, dict):
            return {key: self._substitute(item) for key, item in value.items()}
        return value
