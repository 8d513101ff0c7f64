"""Custom exception hierarchy."""

class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class APIClientError(AppError):
    """Raised when a call to the generation capability fails."""
    pass


class APITimeoutError(APIClientError):
    """Raised when a call to the generation capability times out."""
    pass


class LLMOutputError(APIClientError):
    """Raised when generated output cannot be parsed into the expected shape."""
    pass


class InputValidationError(AppError):
    """Raised when a document is rejected before entering the pipeline."""
    pass


class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass


class StateTransitionError(AppError):
    """Raised when an action is not allowed in the session's current state."""

    def __init__(self, message: str, current_status: str = None, original_error: Exception = None):
        super().__init__(message, original_error=original_error)
        self.current_status = current_status


class PermissionDeniedError(AppError):
    """Raised when the actor lacks the privilege for an action."""
    pass


class SessionNotFoundError(AppError):
    """Raised when a validation session is not found."""
    pass


class ClaimNotFoundError(AppError):
    """Raised when a claim is not found in the given session."""
    pass


class PipelineError(AppError):
    """Base exception for pipeline stage errors."""
    pass


class ReconstructionError(PipelineError):
    """Stage 1: markdown reconstruction failed."""
    pass


class ClaimExtractionError(PipelineError):
    """Stage 2: claim extraction failed."""
    pass


class VerificationError(PipelineError):
    """Stage 3: regex or LLM verification failed."""
    pass
