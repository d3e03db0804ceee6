"""
Error taxonomy for cascade runs.

Only misuse of the executor API raises out of the engine. Everything that
happens during a run (missing root, per-node failures, structural failures)
is reported through the run state instead.
"""


class CascadeError(Exception):
    """Base class for all cascade engine errors."""


class RootNotFoundError(CascadeError):
    """The cascade root does not exist or is soft-deleted."""

    def __init__(self, root_id: str):
        self.root_id = root_id
        super().__init__(f"Cascade root not found: {root_id}")


class CascadeAlreadyRunningError(CascadeError):
    """A cascade is already active on this executor."""

    def __init__(self, active_root_id: str | None):
        self.active_root_id = active_root_id
        super().__init__(f"A cascade is already running (root={active_root_id})")


class GenerationError(CascadeError):
    """Failure reported by a generation client."""

    def __init__(
        self, message: str, *, code: str | None = None, cause: BaseException | None = None
    ):
        super().__init__(message)
        self.code = code
        self.cause = cause


class NodeGenerationError(GenerationError):
    """A single generation call failed. The cascade continues with the next node."""


class StructuralError(GenerationError):
    """Auth, configuration or connectivity failure. Fatal for the whole cascade."""
