"""
action-pipeline Package
Main package initialization
"""
from .action_handler import ActionHandler, ActionProcessingOptions, ActionRequest
from .callback_executor import CallbackExecutor, CallbackExecutionResult
from .cleanup_manager import ResourceCleanupManager, combine_cleanup_tasks, with_retry
from .config import (
    ActionHandlerConfig,
    ConfigurationError,
    ConfigurationManager,
    EnrichmentConfig,
    ErrorStrategy,
    LeakDetectionConfig,
    NavigationConfig,
    PipelineConfig,
    PreservationOptions,
    PreventionConfig,
    SecurityPolicies
)
from .context_preserver import ContextPreserver
from .errors import ActionExecutionError, ActionPipelineError, ContextPreservationError
from .events import EventBus, Subscription
from .interceptor import ActionInterceptor
from .models import *
from .navigation import Navigator, RecordingNavigator, WebBrowserNavigator
from .utils import substitute_env_vars

__all__ = [
    'ActionHandler',
    'ActionProcessingOptions',
    'ActionRequest',
    'CallbackExecutor',
    'CallbackExecutionResult',
    'ResourceCleanupManager',
    'combine_cleanup_tasks',
    'with_retry',
    'ActionHandlerConfig',
    'ConfigurationError',
    'ConfigurationManager',
    'EnrichmentConfig',
    'ErrorStrategy',
    'LeakDetectionConfig',
    'NavigationConfig',
    'PipelineConfig',
    'PreservationOptions',
    'PreventionConfig',
    'SecurityPolicies',
    'ContextPreserver',
    'ActionPipelineError',
    'ContextPreservationError',
    'ActionExecutionError',
    'EventBus',
    'Subscription',
    'ActionInterceptor',
    'Navigator',
    'RecordingNavigator',
    'WebBrowserNavigator',
    'substitute_env_vars',
    'SearchResult',
    'SourceInfo',
    'ActionContext',
    'SecureActionContext',
    'ActionProcessingResult',
    'ResourceType'
]
