"""
Error taxonomy for the execution core.

Only ProviderFault and BudgetExceeded ever end an iteration abruptly; the others
are raised close to where they happen and converted into model-visible results
or a clarification pause by the loop driver.
"""

from typing import List, Optional

from bedrock_service import BedrockError


class AgentError(Exception):
    """Base class for execution-core errors"""
    pass


class ToolExecutionFault(AgentError):
    """A single tool call failed (transport or domain)."""

    def __init__(self, tool: str, message: str, reason: str = "unknown"):
        super().__init__(message)
        self.tool = tool
        self.reason = reason


class MutationConflict(AgentError):
    """Concurrent edits collided on one file during worktree merge."""

    def __init__(self, path: str, detail: str = ""):
        super().__init__(f"Conflicting concurrent edits to {path}" + (f": {detail}" if detail else ""))
        self.path = path
        self.detail = detail


class VerificationRegression(AgentError):
    """New issues vs. the baseline; hard regressions clear the change set."""

    def __init__(self, issues: List, hard: bool):
        kind = "hard-gate" if hard else "soft"
        super().__init__(f"{len(issues)} {kind} verification regression(s)")
        self.issues = issues
        self.hard = hard


class ProviderFault(AgentError):
    """Network/timeout/rate-limit failure from the model backend."""

    def __init__(self, message: str, retryable: bool, code: str = ""):
        super().__init__(message)
        self.retryable = retryable
        self.code = code


class ClarificationRequested(AgentError):
    """Not a failure: the run pauses awaiting user input."""

    def __init__(self, question: str, options: Optional[List[str]] = None):
        super().__init__(question)
        self.question = question
        self.options = options or []


class BudgetExceeded(AgentError):
    """Iteration, tool-call, time or lookup budget reached."""

    def __init__(self, kind: str, limit: int, detail: str = ""):
        super().__init__(detail or f"{kind} budget exceeded (limit {limit})")
        self.kind = kind
        self.limit = limit


# Substrings that mark a transport problem worth retrying or checkpointing
RETRYABLE_KEYWORDS = [
    "timeout", "timed out", "connection", "reset by peer",
    "broken pipe", "eof", "throttl", "serviceunav", "too many requests",
    "read timeout", "endpoint url", "connect timeout",
    "network", "socket", "aborted", "internalserver", "modelnotready",
]

RETRYABLE_CODES = {
    "ThrottlingException", "ServiceUnavailableException", "ModelTimeoutException",
    "InternalServerException", "ModelNotReadyException", "ModelStreamErrorException",
}


def classify_provider_error(exc: BaseException) -> ProviderFault:
    """Turn any exception raised by a model call into a classified ProviderFault."""
    if isinstance(exc, ProviderFault):
        return exc
    code = getattr(exc, "code", "") if isinstance(exc, BedrockError) else ""
    err_str = str(exc).lower()
    retryable = code in RETRYABLE_CODES or any(kw in err_str for kw in RETRYABLE_KEYWORDS)
    if isinstance(exc, (TimeoutError, ConnectionError)):
        retryable = True
    return ProviderFault(str(exc) or exc.__class__.__name__, retryable=retryable, code=code)
