"""
Exception taxonomy shared by the store, notifier and worker.

- ValidationError: bad/missing required fields, surfaced to the caller, never retried
- NotFoundError: the addressed subscription does not exist
- PersistenceError: a ledger invariant could not be upheld
- FetchError: the course data source failed for one course group
- EvaluationError: course data missing or malformed for one subscription
- ContactError / UnsupportedChannelError / TransportError: delivery path failures
"""


class SlottyError(Exception):
    """Base class for all application errors."""


class ValidationError(SlottyError):
    pass


class NotFoundError(SlottyError):
    pass


class PersistenceError(SlottyError):
    pass


class FetchError(SlottyError):
    def __init__(self, message: str, *, institution_key=None, course_key=None, term_key=None):
        super().__init__(message)
        self.institution_key = institution_key
        self.course_key = course_key
        self.term_key = term_key


class EvaluationError(SlottyError):
    pass


class ContactError(SlottyError):
    pass


class UnsupportedChannelError(ContactError):
    pass


class TransportError(SlottyError):
    def __init__(self, message: str, code=None):
        super().__init__(message)
        self.code = code
