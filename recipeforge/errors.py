"""Error types raised along the recipe generation path.

Provider-facing errors come out of the generation client; the rest are
raised by the orchestrator and the stores. None of them escape a
background generation run.
"""

from typing import Optional


class GenerationError(Exception):
    """Base class for every failure in a generation run."""

    stage: Optional[str] = None


class AuthorizationError(GenerationError):
    """Provider rejected the credential (or none is configured). Never retried."""


class TransientProviderError(GenerationError):
    """Rate limit or provider overload. Retried up to the attempt cap."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetriesExhaustedError(GenerationError):
    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"exhausted {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class ProviderError(GenerationError):
    """Provider error with no retry rule; carries the underlying cause."""


class EmptyResponseError(GenerationError):
    """Call succeeded but returned no usable payload."""


class SchemaViolationError(GenerationError):
    """Payload could not be parsed into the recipe schema."""


class RecipeValidationError(GenerationError):
    """Required recipe fields are missing after population."""


class PersistenceError(GenerationError):
    """A store write or delete failed."""


class GenerationTimeoutError(GenerationError, TimeoutError):
    """The run deadline passed while waiting on a stage."""
