"""Error taxonomy of the workflow engine.

Operations raise these inside their atomic block so every write rolls back,
and the public state machine methods hand them back as rejected results.
"""


class WorkflowError(Exception):
    status_code = 400

    def __init__(self, *messages):
        self.messages = [str(m) for m in messages] or [self.__class__.__name__]
        super().__init__('; '.join(self.messages))


class ValidationError(WorkflowError):
    status_code = 400


class NoNextStageError(ValidationError):
    pass


class ConcurrencyError(WorkflowError):
    status_code = 409


class NotFoundError(WorkflowError):
    status_code = 404


class PermissionDenied(WorkflowError):
    status_code = 403


class ImmutableHistoryError(RuntimeError):
    """Raised on any attempt to change or remove an audit record."""
