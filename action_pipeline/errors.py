"""
Exception types raised by the action pipeline
"""


class ActionPipelineError(Exception):
    """Base exception for action pipeline failures"""
    pass


class ContextPreservationError(ActionPipelineError):
    """Raised when an action context cannot be built or preserved"""
    pass


class ActionExecutionError(ActionPipelineError):
    """Raised when the execution step of an action fails"""
    pass
