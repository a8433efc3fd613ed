# failure kinds raised by the classification pipeline
# the api layer maps each kind to a status code, never to a raw provider message

from __future__ import annotations


class IngestionError(Exception):
    # set by the pipeline once an audit row exists for the failing input
    audit_id: str | None = None


# missing/malformed user id, raised before any write is attempted
class InvalidIdentity(IngestionError, ValueError):
    def __init__(self, message: str, *, context: str) -> None:
        super().__init__(message)
        self.context = context


# network failure or non-2xx status from the language model endpoint
class ClassificationApiFailure(IngestionError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


# model answered but the answer is not a usable event
class ClassificationParseFailure(IngestionError, ValueError):
    def __init__(self, message: str, *, raw_response: str | None = None) -> None:
        super().__init__(message)
        self.raw_response = raw_response


# product catalog unreachable or erroring; recovered locally by the resolver
class SearchApiFailure(IngestionError):
    def __init__(self, message: str, *, source: str) -> None:
        super().__init__(message)
        self.source = source


# store rejected a read/write, including row-level authorization denials
class PersistenceFailure(IngestionError):
    pass


# confirm called for an audit row that does not exist for this user
class AuditRecordNotFound(IngestionError, LookupError):
    pass


# confirm called for an audit row that is not awaiting user clarification
class AuditStateConflict(IngestionError):
    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status
