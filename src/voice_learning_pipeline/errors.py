"""Exceptions raised by the learning pipeline."""


class LearningPipelineError(Exception):
    """Base exception for all learning pipeline errors."""

    pass


class FatalPipelineError(LearningPipelineError):
    """An error that must stop the scheduler and be surfaced to an operator."""

    pass


class HarvestError(LearningPipelineError):
    """The call platform could not return the interactions for a window."""

    pass


class PlatformError(LearningPipelineError):
    """The call platform rejected or failed an agent-configuration request."""

    pass


class SynthesisError(LearningPipelineError):
    """The generative service failed or returned a malformed proposal."""

    pass


class KnowledgeStoreError(LearningPipelineError):
    """A knowledge-store operation failed."""

    def __init__(self, operation: str, message: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Knowledge store '{operation}' failed: {message}")


class KnowledgeBaseCreateError(KnowledgeStoreError, FatalPipelineError):
    """The replacement knowledge base could not be created.

    Raised after the previous knowledge base may already be gone. The merged
    document set is kept in the staging area and is folded back in on the
    next synchronization.
    """

    def __init__(self, agent_id: str, staging_path: str, cause: Exception | None = None):
        self.agent_id = agent_id
        self.staging_path = staging_path
        KnowledgeStoreError.__init__(
            self,
            "create",
            f"knowledge base for agent '{agent_id}' was not recreated; "
            f"snapshot kept at {staging_path}",
            cause,
        )


class CoreBehaviorViolation(FatalPipelineError):
    """A merge would remove mandatory identity or safety text."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Core behavior removed: {', '.join(missing)}")


class ApprovalNotFoundError(LearningPipelineError):
    """No pending approval exists to resolve."""

    pass


class CycleInProgressError(LearningPipelineError):
    """A learning cycle is already running in this process."""

    pass
