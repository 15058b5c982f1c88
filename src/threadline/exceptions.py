"""
Threadline Exception Hierarchy

This module defines the exception hierarchy for the orchestration core,
providing specific error types for the different failure categories with
rich context and standardized error handling.

The hierarchy is designed to:
1. Separate fatal failures (budget exceeded, unknown content shapes) from recoverable ones
2. Include rich context information (agent ids, run ids, timestamps)
3. Keep error message formats consistent across modules
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorAction(Enum):
    """What action can be taken for this error."""

    # Host can fix the input and retry
    USER_FIXABLE = "user_fixable"

    # Cannot be fixed on-the-fly, the run must terminate
    TERMINAL = "terminal"

    # Handled inside the core, at most a log line
    RECOVERED = "recovered"


class ThreadlineError(Exception):
    """
    Base exception class for all threadline errors.

    Attributes:
        error_code: Unique error code for programmatic handling
        agent_id: Id of the agent where the error occurred (if applicable)
        run_id: Run id where the error occurred (if applicable)
        timestamp: When the error occurred
        context: Additional context information
        user_message: User-friendly error message
        developer_message: Detailed technical error message
        suggestion: Suggested fix or next steps (if applicable)
    """

    action: ErrorAction = ErrorAction.TERMINAL

    def __init__(
        self,
        message: str,
        error_code: str = "THREADLINE_ERROR",
        agent_id: Optional[str] = None,
        run_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        """
        Initialize error with rich context.

        Args:
            message: Technical error message for developers
            error_code: Unique error code for programmatic handling
            agent_id: Id of the agent where the error occurred
            run_id: Run id where the error occurred
            context: Additional context information
            user_message: User-friendly error message
            suggestion: Suggested fix or next steps
        """
        super().__init__(message)
        self.error_code = error_code
        self.agent_id = agent_id
        self.run_id = run_id
        self.timestamp = time.time()
        self.context = context or {}
        self.user_message = user_message or message
        self.developer_message = message
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.developer_message,
            "user_message": self.user_message,
            "agent_id": self.agent_id,
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "context": self.context,
            "suggestion": self.suggestion,
            "action": self.action.value,
        }

    def __str__(self) -> str:
        """String representation with context."""
        parts = [f"[{self.error_code}]"]
        if self.agent_id:
            parts.append(f"Agent:{self.agent_id}")
        if self.run_id:
            parts.append(f"Run:{self.run_id[:8]}...")
        parts.append(self.developer_message)
        return " ".join(parts)


# =============================================================================
# MESSAGE HANDLING ERRORS
# =============================================================================


class MessageError(ThreadlineError):
    """Base class for message handling and validation errors."""

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop("error_code", "MESSAGE_ERROR")
        super().__init__(message, error_code=error_code, **kwargs)


class MessageFormatError(MessageError):
    """
    Raised when a payload entry has the wrong structure.

    Examples:
    - Payload entry without a role
    - Content that is neither a string nor a list of blocks
    """

    action = ErrorAction.USER_FIXABLE

    def __init__(
        self,
        message: str,
        invalid_content: Optional[Any] = None,
        expected_format: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if invalid_content is not None:
            context["invalid_content"] = repr(invalid_content)[:200]
        if expected_format:
            context["expected_format"] = expected_format

        super().__init__(
            message,
            error_code="MESSAGE_FORMAT_ERROR",
            context=context,
            user_message="Message format is invalid",
            suggestion=f"Expected format: {expected_format}" if expected_format else None,
            **kwargs,
        )
        self.invalid_content = invalid_content
        self.expected_format = expected_format


class MessageContentError(MessageError):
    """
    Raised when a content block carries an unrecognized type tag or shape.

    Silently dropping model output is worse than failing loudly, so these
    errors are never recovered inside the core.
    """

    def __init__(
        self,
        message: str,
        block_type: Optional[str] = None,
        allowed_types: Optional[List[str]] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if block_type is not None:
            context["block_type"] = block_type
        if allowed_types:
            context["allowed_types"] = sorted(allowed_types)

        super().__init__(
            message,
            error_code="MESSAGE_CONTENT_ERROR",
            context=context,
            user_message="Message contains content that cannot be converted",
            **kwargs,
        )
        self.block_type = block_type


class ToolCallError(MessageError):
    """Raised when a tool call descriptor cannot be interpreted."""

    action = ErrorAction.RECOVERED

    def __init__(
        self,
        message: str,
        tool_name: Optional[str] = None,
        tool_call_id: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if tool_name:
            context["tool_name"] = tool_name
        if tool_call_id:
            context["tool_call_id"] = tool_call_id

        super().__init__(message, error_code="TOOL_CALL_ERROR", context=context, **kwargs)
        self.tool_name = tool_name
        self.tool_call_id = tool_call_id


# =============================================================================
# CONTEXT ERRORS
# =============================================================================


class ContextError(ThreadlineError):
    """Base class for conversation context errors."""

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop("error_code", "CONTEXT_ERROR")
        super().__init__(message, error_code=error_code, **kwargs)


class ContextWindowExceededError(ContextError):
    """
    Raised when no valid non-empty context fits the token budget.

    Fatal: the run must be aborted or retried by the host with a larger
    budget.
    """

    def __init__(
        self,
        message: str,
        max_tokens: Optional[int] = None,
        required_tokens: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if max_tokens is not None:
            context["max_tokens"] = max_tokens
        if required_tokens is not None:
            context["required_tokens"] = required_tokens

        super().__init__(
            message,
            error_code="CONTEXT_WINDOW_EXCEEDED",
            context=context,
            user_message="The conversation no longer fits in the model's context window",
            suggestion="Increase the token budget or shorten the largest tool results",
            **kwargs,
        )
        self.max_tokens = max_tokens
        self.required_tokens = required_tokens


# =============================================================================
# AGENT AND RUN ERRORS
# =============================================================================


class AgentConfigurationError(ThreadlineError):
    """Raised when an agent context is configured incorrectly."""

    action = ErrorAction.USER_FIXABLE

    def __init__(
        self,
        message: str,
        config_field: Optional[str] = None,
        config_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if config_field:
            context["config_field"] = config_field
        if config_value is not None:
            context["config_value"] = repr(config_value)[:200]

        super().__init__(
            message,
            error_code="AGENT_CONFIGURATION_ERROR",
            context=context,
            user_message="Agent configuration is invalid",
            suggestion=f"Check the '{config_field}' setting" if config_field else None,
            **kwargs,
        )
        self.config_field = config_field


class RunStepError(ThreadlineError):
    """Raised when the step stream cannot be interpreted (missing keys, unknown step ids)."""

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        step_key: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if step_id:
            context["step_id"] = step_id
        if step_key:
            context["step_key"] = step_key

        super().__init__(message, error_code="RUN_STEP_ERROR", context=context, **kwargs)
        self.step_id = step_id
        self.step_key = step_key


def get_error_summary(error: ThreadlineError) -> Dict[str, Any]:
    """
    Get a summary of error information for logging.

    Args:
        error: Threadline error

    Returns:
        Dictionary with error summary
    """
    return {
        "type": error.__class__.__name__,
        "code": error.error_code,
        "message": error.developer_message,
        "agent": error.agent_id,
        "run": error.run_id,
        "action": error.action.value,
        "has_suggestion": bool(error.suggestion),
    }
