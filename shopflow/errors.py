"""Exception hierarchy for shopflow."""

from __future__ import annotations


class ShopflowError(Exception):
    """Base class for all shopflow errors."""


class WorkflowDefinitionError(ShopflowError):
    """A workflow definition is malformed or registered twice."""


class UnknownWorkflowError(ShopflowError):
    """No workflow definition is registered under the requested name."""


class UnknownCompletionHandlerError(ShopflowError):
    """No completion handler is registered under the requested reference."""


class RunNotFoundError(ShopflowError):
    """The requested workflow run does not exist in the journal."""


class JournalConflictError(ShopflowError):
    """A journal write lost a compare-and-set race.

    Raised when a ``succeeded`` entry is appended for a step the run's cursor
    has already moved past, i.e. another executor finished it first.
    """


class NotAuthenticatedError(ShopflowError):
    pass


class NotAuthorizedError(ShopflowError):
    pass


class RecordNotFoundError(ShopflowError):
    """A business record referenced by a workflow is missing."""


class InvalidStateError(ShopflowError):
    """A business record is not in the state an operation requires."""
