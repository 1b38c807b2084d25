"""
Error taxonomy shared by the store, the AI service and the step solver.

The API layer maps each class to an HTTP status (see main.py).
"""

from typing import Optional


class StudyError(Exception):
    """Base class for domain errors surfaced to the client as 'try again' states."""


class NotFound(StudyError):
    """A referenced assignment, question or other document does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class PersistenceFailure(StudyError):
    """A read or write against the document store failed."""


class AlreadyExists(PersistenceFailure):
    """A create targeted an id that is already taken."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


class VersionConflict(PersistenceFailure):
    """A conditional write found a newer document version than the one read."""

    def __init__(self, collection: str, doc_id: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"{collection}/{doc_id} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.expected = expected
        self.actual = actual


class AIGenerationFailure(StudyError):
    """The generative text service failed, timed out or returned unusable text."""


class StepStateError(StudyError):
    """The cursor does not point at a step the requested transition applies to."""
