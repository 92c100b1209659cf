"""Exception hierarchy for the invoice document core.

Every error carries the pipeline stage and the artifact id it occurred on
so provenance survives failures. Conditions that are normal outcomes
(low zone confidence, empty extraction, budget exhaustion, validation
contradictions) are represented as flags on results, not as exceptions.
"""


class InvoiceCoreError(Exception):
    """Base exception for all invoice core errors.

    Args:
        message: Human-readable error message.
        stage: Pipeline stage where the error occurred.
        artifact_id: Identity of the artifact being processed, if any.
    """

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        artifact_id: str | None = None,
    ) -> None:
        self.message = message
        self.stage = stage
        self.artifact_id = artifact_id
        super().__init__(message)

    def __str__(self) -> str:
        context = []
        if self.stage:
            context.append(f"stage={self.stage}")
        if self.artifact_id:
            context.append(f"artifact={self.artifact_id[:12]}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class TransientEngineError(InvoiceCoreError):
    """Recognition engine failed in a way that may succeed on retry."""


class EngineTimeoutError(TransientEngineError):
    """Recognition call exceeded its per-call time budget."""


class EngineCrashError(TransientEngineError):
    """Recognition engine process crashed or returned garbage."""


class EngineUnavailableError(InvoiceCoreError):
    """Requested recognition engine is not installed or not registered."""


class CorruptInputError(InvoiceCoreError):
    """Input page bytes cannot be decoded. Fatal, never retried."""


class ConfigError(InvoiceCoreError):
    """Configuration data is missing or invalid."""


class ProfileConfigError(ConfigError):
    """OCR profile definitions are invalid."""


class LexiconConfigError(ConfigError):
    """Lexicon definitions are invalid."""


class DuplicateResolutionError(InvoiceCoreError):
    """A field was already resolved for this document run."""


class UnknownArtifactError(InvoiceCoreError):
    """An artifact id was referenced that the store does not hold."""
