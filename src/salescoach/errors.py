class SalesCoachError(Exception):
    """Base class for service errors."""


class StorageError(SalesCoachError):
    """Redis is unreachable, not connected, or a session lock could not be taken."""


class ModelError(SalesCoachError):
    """The inference call failed or returned no text."""


class WorkflowNotFoundError(SalesCoachError):
    """No workflow instance is stored under the requested id."""


class BadRequestError(SalesCoachError):
    """The request body or query is missing a required field."""
