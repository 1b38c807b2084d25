"""
Typed repositories over the document store.

Each repository owns one collection, converts between models and documents,
and enforces ownership: a document that is missing or belongs to another
user is reported as NotFound.
"""

import logging
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from pydantic import TypeAdapter

from errors import AlreadyExists, NotFound
from models import (
    Assignment,
    Flashcard,
    Lecture,
    PracticeTest,
    Question,
    StoredModel,
    Streak,
    StudyHub,
    Subject,
    Topic,
    UserSettings,
    WeakSkill,
    utcnow,
)
from store import DocumentStore

logger = logging.getLogger(__name__)

ASSIGNMENTS = "assignments"
SUBJECTS = "subjects"
TOPICS = "topics"
STUDY_HUBS = "studyHubs"
LECTURES = "lectures"
WEAK_SKILLS = "weakSkills"
STREAKS = "streaks"
PRACTICE_TESTS = "tests"
USERS = "users"

M = TypeVar("M", bound=StoredModel)

_timestamp_adapter = TypeAdapter(datetime)


def json_timestamp(value: Optional[datetime] = None) -> str:
    """Serialize a timestamp exactly as model dumps do."""
    return _timestamp_adapter.dump_python(value or utcnow(), mode="json")


def to_document(obj: StoredModel) -> dict:
    return obj.model_dump(mode="json", exclude={"id", "version"})


class Repository(Generic[M]):
    collection: str
    model: type[M]
    kind: str

    def __init__(self, store: DocumentStore):
        self.store = store

    def _to_model(self, doc: dict) -> M:
        return self.model.model_validate(doc)

    async def create(self, obj: M) -> M:
        doc_id = await self.store.create(self.collection, to_document(obj), doc_id=obj.id or None)
        logger.debug(f"[{self.kind}] Created {doc_id}")
        return obj.model_copy(update={"id": doc_id, "version": 1})

    async def get(self, user_id: str, doc_id: str) -> M:
        doc = await self.store.get(self.collection, doc_id)
        if doc is None or doc.get("user_id") != user_id:
            raise NotFound(self.kind, doc_id)
        return self._to_model(doc)

    async def list_for_user(
        self,
        user_id: str,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        **filters: Any,
    ) -> list[M]:
        docs = await self.store.query(
            self.collection,
            filters={"user_id": user_id, **filters},
            order_by=order_by,
            descending=descending,
            limit=limit,
        )
        return [self._to_model(d) for d in docs]

    async def update_fields(self, user_id: str, doc_id: str, changes: dict[str, Any]) -> M:
        """Validate ``changes`` against the model, then write only those fields."""
        current = await self.get(user_id, doc_id)
        data = {**current.model_dump(), **changes}
        if "updated_at" in self.model.model_fields:
            data["updated_at"] = utcnow()
        merged = self.model.model_validate(data)
        dumped = to_document(merged)
        fields = {k: dumped[k] for k in changes}
        if "updated_at" in dumped:
            fields["updated_at"] = dumped["updated_at"]
        version = await self.store.update(
            self.collection, doc_id, fields, expected_version=current.version
        )
        return merged.model_copy(update={"version": version})

    async def delete(self, user_id: str, doc_id: str) -> None:
        await self.get(user_id, doc_id)
        await self.store.delete(self.collection, doc_id)


# ============================================================================
# ASSIGNMENTS
# ============================================================================

class AssignmentRepository(Repository[Assignment]):
    collection = ASSIGNMENTS
    model = Assignment
    kind = "Assignment"

    async def list_ordered(self, user_id: str) -> list[Assignment]:
        return await self.list_for_user(user_id, order_by="due_date")

    async def list_upcoming(self, user_id: str, limit: int = 5) -> list[Assignment]:
        return await self.list_for_user(user_id, order_by="due_date", limit=limit, completed=False)

    async def toggle_complete(self, user_id: str, assignment_id: str) -> Assignment:
        current = await self.get(user_id, assignment_id)
        return await self.update_fields(user_id, assignment_id, {"completed": not current.completed})

    async def add_questions(
        self,
        user_id: str,
        assignment_id: str,
        contents: list[str],
        image_url: Optional[str] = None,
    ) -> Assignment:
        """Append questions; existing question indexes never shift."""
        current = await self.get(user_id, assignment_id)
        new_questions = [
            Question(assignment_id=assignment_id, content=c.strip(), image_url=image_url)
            for c in contents
            if c and c.strip()
        ]
        if not new_questions:
            return current
        questions = current.questions + new_questions
        updated_at = utcnow()
        version = await self.store.update(
            self.collection,
            assignment_id,
            {
                "questions": [q.model_dump(mode="json") for q in questions],
                "updated_at": json_timestamp(updated_at),
            },
            expected_version=current.version,
        )
        logger.info(f"[Assignments] Added {len(new_questions)} questions to {assignment_id}")
        return current.model_copy(update={
            "questions": questions,
            "updated_at": updated_at,
            "version": version,
        })


# ============================================================================
# SUBJECTS & TOPICS
# ============================================================================

class SubjectRepository(Repository[Subject]):
    collection = SUBJECTS
    model = Subject
    kind = "Subject"

    async def delete(self, user_id: str, doc_id: str) -> None:
        await super().delete(user_id, doc_id)
        topics = await self.store.query(TOPICS, filters={"user_id": user_id, "subject_id": doc_id})
        for topic in topics:
            await self.store.delete(TOPICS, topic["id"])


class TopicRepository(Repository[Topic]):
    collection = TOPICS
    model = Topic
    kind = "Topic"

    async def list_for_subject(self, user_id: str, subject_id: str) -> list[Topic]:
        return await self.list_for_user(user_id, order_by="created_at", subject_id=subject_id)


class StudyHubRepository(Repository[StudyHub]):
    """One hub per (user, topic), stored under a deterministic id."""
    collection = STUDY_HUBS
    model = StudyHub
    kind = "StudyHub"

    @staticmethod
    def hub_id(user_id: str, topic_id: str) -> str:
        return f"{user_id}:{topic_id}"

    async def get_or_create(self, user_id: str, topic_id: str) -> StudyHub:
        hub_id = self.hub_id(user_id, topic_id)
        doc = await self.store.get(self.collection, hub_id)
        if doc is not None:
            return self._to_model(doc)
        logger.info(f"[StudyHub] Creating hub for topic {topic_id}")
        try:
            return await self.create(StudyHub(id=hub_id, user_id=user_id, topic_id=topic_id))
        except AlreadyExists:
            # Another request created it between our read and write
            return await self.get(user_id, hub_id)

    async def save_notes(self, user_id: str, topic_id: str, notes: str) -> StudyHub:
        hub = await self.get_or_create(user_id, topic_id)
        return await self.update_fields(user_id, hub.id, {"notes": notes})

    async def save_flashcards(
        self,
        user_id: str,
        topic_id: str,
        cards: list[Flashcard],
        append: bool = True,
    ) -> StudyHub:
        hub = await self.get_or_create(user_id, topic_id)
        combined = (hub.flashcards if append else []) + cards
        return await self.update_fields(
            user_id, hub.id, {"flashcards": [c.model_dump() for c in combined]}
        )


# ============================================================================
# LECTURES, WEAK SKILLS, STREAKS
# ============================================================================

class LectureRepository(Repository[Lecture]):
    collection = LECTURES
    model = Lecture
    kind = "Lecture"

    async def list_recent(self, user_id: str) -> list[Lecture]:
        return await self.list_for_user(user_id, order_by="recorded_at", descending=True)


class WeakSkillRepository(Repository[WeakSkill]):
    collection = WEAK_SKILLS
    model = WeakSkill
    kind = "WeakSkill"

    async def record(self, user_id: str, topic_id: str, skills: list[str]) -> list[WeakSkill]:
        """Store newly detected skills, skipping ones already tracked for the topic."""
        existing = {
            s.skill.lower() for s in await self.list_for_user(user_id, topic_id=topic_id)
        }
        recorded = []
        for skill in skills:
            if skill.lower() in existing:
                continue
            existing.add(skill.lower())
            recorded.append(await self.create(WeakSkill(user_id=user_id, topic_id=topic_id, skill=skill)))
        return recorded

    async def weakest(self, user_id: str, limit: int = 5) -> list[WeakSkill]:
        return await self.list_for_user(user_id, order_by="improvement_score", limit=limit)


class PracticeTestRepository(Repository[PracticeTest]):
    collection = PRACTICE_TESTS
    model = PracticeTest
    kind = "PracticeTest"

    async def list_upcoming(self, user_id: str, limit: int = 3) -> list[PracticeTest]:
        return await self.list_for_user(user_id, order_by="created_at", limit=limit, completed=False)

    async def complete(self, user_id: str, test_id: str, score: float) -> PracticeTest:
        return await self.update_fields(
            user_id, test_id, {"completed": True, "score": score, "completed_at": utcnow()}
        )


class StreakRepository(Repository[Streak]):
    collection = STREAKS
    model = Streak
    kind = "Streak"

    async def get_or_default(self, user_id: str) -> Streak:
        streaks = await self.list_for_user(user_id, limit=1)
        return streaks[0] if streaks else Streak(user_id=user_id)


# ============================================================================
# USER SETTINGS
# ============================================================================

class SettingsRepository(Repository[UserSettings]):
    """Settings live at users/<user_id>."""
    collection = USERS
    model = UserSettings
    kind = "UserSettings"

    async def get_or_create(self, user_id: str) -> UserSettings:
        doc = await self.store.get(self.collection, user_id)
        if doc is not None:
            return self._to_model(doc)
        logger.info(f"[Settings] Creating default settings for {user_id}")
        try:
            return await self.create(UserSettings(id=user_id, user_id=user_id))
        except AlreadyExists:
            return await self.get(user_id, user_id)

    async def update(self, user_id: str, changes: dict[str, Any]) -> UserSettings:
        await self.get_or_create(user_id)
        return await self.update_fields(user_id, user_id, changes)
