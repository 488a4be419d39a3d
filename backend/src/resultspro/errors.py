"""Error taxonomy shared by the stores, services and API."""

from resultspro_models import ErrorKind, Result


class MessagingError(Exception):
    """Base class for failures surfaced to callers."""

    kind: ErrorKind = ErrorKind.PERSISTENCE
    retryable: bool = False

    def to_result(self) -> Result:
        return Result.failure(self.kind, str(self))


class ValidationError(MessagingError):
    """Malformed input. Shown to the user, never retried."""

    kind = ErrorKind.VALIDATION


class NotFoundError(MessagingError):
    """A conversation, message or template does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class PersistenceError(MessagingError):
    """The database call failed. Safe to retry."""

    kind = ErrorKind.PERSISTENCE
    retryable = True
