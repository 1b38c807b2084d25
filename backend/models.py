"""
Domain models for the StudyApe backend.

Every model is stored as a JSON document; ``id`` and ``version`` are managed
by the document store and never written into the document body.
"""

import uuid
from datetime import datetime, timezone
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


ExplanationMode = Literal["guided", "balanced", "direct"]
Priority = Literal["low", "medium", "high"]
Difficulty = Literal["easy", "medium", "hard"]
EducationLevel = Literal["middle-school", "high-school", "college", "graduate", "other"]
Theme = Literal["light", "dark", "dim"]
FontSize = Literal["sm", "base", "lg", "xl"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sortable_timestamp(v: datetime) -> datetime:
    """
    UTC, whole seconds. Stores order by the serialized string, which only
    matches chronological order when every value has the same shape.
    Naive values (plain dates from forms) are taken as UTC.
    """
    v = v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc).replace(microsecond=0)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def check_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {name}")
    return name


class StoredModel(BaseModel):
    """Base for top-level documents."""
    id: str = ""
    version: int = 0


# ============================================================================
# ASSIGNMENTS, QUESTIONS, STEPS
# ============================================================================

class SolutionStep(BaseModel):
    """One incrementally revealed unit of a solution."""
    id: str = Field(default_factory=lambda: new_id("step"))
    question_id: str
    step_number: int = Field(ge=1, description="1-based, equals position in the step list + 1")
    explanation: str
    confirmed: bool = False
    ai_mode: ExplanationMode
    created_at: datetime = Field(default_factory=utcnow)


class Question(BaseModel):
    """A question embedded in an assignment; its list index is its identity."""
    id: str = Field(default_factory=lambda: new_id("q"))
    assignment_id: str
    content: str
    image_url: Optional[str] = None
    completed: bool = False
    steps: list[SolutionStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class Assignment(StoredModel):
    user_id: str
    title: str = Field(min_length=1)
    subject_id: str = "General"
    due_date: datetime
    priority: Priority = "medium"
    completed: bool = False
    questions: list[Question] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, v: datetime) -> datetime:
        return sortable_timestamp(v)


# ============================================================================
# SUBJECTS, TOPICS, STUDY HUBS
# ============================================================================

class Subject(StoredModel):
    user_id: str
    name: str = Field(min_length=1)
    icon: Optional[str] = None
    color: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Topic(StoredModel):
    user_id: str
    subject_id: str
    name: str = Field(min_length=1)
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Flashcard(BaseModel):
    front: str
    back: str


class StudyHub(StoredModel):
    """Per-user workspace for one topic: notes, flashcards, linked material."""
    user_id: str
    topic_id: str
    linked_material_ids: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    flashcards: list[Flashcard] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class IncorrectAnswer(BaseModel):
    question: str
    user_answer: str
    correct_answer: str


class WeakSkill(StoredModel):
    user_id: str
    topic_id: str
    skill: str
    improvement_score: float = Field(default=0.0, ge=0, le=100)
    detected_at: datetime = Field(default_factory=utcnow)
    last_practiced_at: Optional[datetime] = None


class PracticeTest(StoredModel):
    """A scheduled or finished practice test for a topic."""
    user_id: str
    topic_id: Optional[str] = None
    name: str = Field(min_length=1)
    question_count: int = Field(default=10, ge=1)
    difficulty: Difficulty = "medium"
    completed: bool = False
    score: Optional[float] = Field(default=None, ge=0, le=100)
    created_at: datetime = Field(default_factory=lambda: sortable_timestamp(utcnow()))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return sortable_timestamp(v)


class Streak(StoredModel):
    user_id: str
    current_streak: int = 0
    longest_streak: int = 0
    last_study_date: datetime = Field(default_factory=utcnow)
    multiplier: float = 1.0
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# LECTURES
# ============================================================================

class Lecture(StoredModel):
    user_id: str
    title: str = Field(min_length=1)
    subject_id: Optional[str] = None
    recorded_at: datetime = Field(default_factory=lambda: sortable_timestamp(utcnow()))
    duration_minutes: int = Field(default=0, ge=0)
    transcript: Optional[str] = None
    summary: Optional[str] = None
    key_points: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("recorded_at")
    @classmethod
    def normalize_recorded_at(cls, v: datetime) -> datetime:
        return sortable_timestamp(v)


# ============================================================================
# USER SETTINGS
# ============================================================================

DEFAULT_DASHBOARD_LAYOUT = ["assignments", "streak", "tests", "weakTopics", "motivation"]


class UserSettings(StoredModel):
    """Preferences; the document id is the user id."""
    user_id: str
    education_level: EducationLevel = "high-school"
    subjects: list[str] = Field(default_factory=list)
    default_ai_mode: ExplanationMode = "balanced"
    theme: Theme = "dark"
    font_size: FontSize = "base"
    reduced_motion: bool = False
    dyslexic_font: bool = False
    confetti_enabled: bool = True
    voice_auto_play: bool = False
    voice_speed: float = Field(default=1.0, ge=0.5, le=2.0)
    due_date_offset: int = Field(default=3, ge=0, le=30)
    timezone: str = "UTC"  # IANA name; decides what "today" means for due dates
    dashboard_layout: list[str] = Field(default_factory=lambda: list(DEFAULT_DASHBOARD_LAYOUT))
    dashboard_widgets: dict[str, bool] = Field(
        default_factory=lambda: {name: True for name in DEFAULT_DASHBOARD_LAYOUT}
    )
    study_reminders: bool = True
    onboarding_completed: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("subjects")
    @classmethod
    def dedupe_subjects(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for name in v:
            name = name.strip()
            if name and name not in seen:
                seen.append(name)
        return seen

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return check_timezone(v)
