"""
Tests for the repositories and dashboard rules.
"""

import asyncio
import sys
import os
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(__file__))

from dashboard import build_dashboard, due_date_label, due_date_urgency
from errors import NotFound
from models import Assignment, Flashcard, Lecture, PracticeTest, Subject, Topic, UserSettings, WeakSkill
from repositories import (
    AssignmentRepository,
    LectureRepository,
    PracticeTestRepository,
    SettingsRepository,
    StudyHubRepository,
    SubjectRepository,
    TopicRepository,
    WeakSkillRepository,
)

NOW = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)


# ============================================================================
# ASSIGNMENTS
# ============================================================================

async def test_assignment_ownership(store, user_id):
    repo = AssignmentRepository(store)
    created = await repo.create(Assignment(user_id=user_id, title="Essay", due_date=NOW))

    assert created.version == 1
    assert (await repo.get(user_id, created.id)).title == "Essay"
    with pytest.raises(NotFound):
        await repo.get("intruder", created.id)
    with pytest.raises(NotFound):
        await repo.delete("intruder", created.id)


async def test_assignments_ordered_by_due_date(store, user_id):
    repo = AssignmentRepository(store)
    for days, title in [(3, "C"), (1, "A"), (2, "B")]:
        await repo.create(Assignment(user_id=user_id, title=title, due_date=NOW + timedelta(days=days)))
    done = await repo.create(Assignment(user_id=user_id, title="Done", due_date=NOW))
    await repo.toggle_complete(user_id, done.id)

    assert [a.title for a in await repo.list_ordered(user_id)] == ["Done", "A", "B", "C"]
    assert [a.title for a in await repo.list_upcoming(user_id, limit=2)] == ["A", "B"]


def test_naive_due_dates_are_utc(user_id):
    assignment = Assignment(user_id=user_id, title="Lab", due_date=datetime(2030, 5, 1, 12, 30, 15, 999))
    assert assignment.due_date == datetime(2030, 5, 1, 12, 30, 15, tzinfo=timezone.utc)


async def test_update_fields_is_conditional(store, user_id):
    repo = AssignmentRepository(store)
    created = await repo.create(Assignment(user_id=user_id, title="Draft", due_date=NOW))

    updated = await repo.update_fields(user_id, created.id, {"title": "Final", "priority": "high"})

    assert (updated.title, updated.priority, updated.version) == ("Final", "high", 2)
    assert updated.updated_at >= created.updated_at


async def test_add_questions_appends_in_order(store, assignment, user_id):
    repo = AssignmentRepository(store)

    updated = await repo.add_questions(user_id, assignment.id, ["Solve x + 1 = 2", "  ", "Solve 3x = 9"])

    assert [q.content for q in updated.questions] == ["Solve 2x - 3 = 5", "Solve x + 1 = 2", "Solve 3x = 9"]
    assert updated.questions[0].id == assignment.questions[0].id, "❌ Existing questions must keep their identity"
    assert all(q.assignment_id == assignment.id for q in updated.questions)


# ============================================================================
# SUBJECTS, TOPICS, STUDY HUB, WEAK SKILLS, LECTURES
# ============================================================================

async def test_deleting_subject_removes_its_topics(store, user_id):
    subjects = SubjectRepository(store)
    topics = TopicRepository(store)
    math = await subjects.create(Subject(user_id=user_id, name="Math"))
    keep = await subjects.create(Subject(user_id=user_id, name="Biology"))
    await topics.create(Topic(user_id=user_id, subject_id=math.id, name="Algebra"))
    await topics.create(Topic(user_id=user_id, subject_id=keep.id, name="Cells"))

    await subjects.delete(user_id, math.id)

    assert await topics.list_for_subject(user_id, math.id) == []
    assert [t.name for t in await topics.list_for_subject(user_id, keep.id)] == ["Cells"]


async def test_study_hub_flashcards(store, user_id):
    hubs = StudyHubRepository(store)

    first = await hubs.get_or_create(user_id, "topic-1")
    again = await hubs.get_or_create(user_id, "topic-1")
    assert first.id == again.id, "❌ One hub per topic"

    await hubs.save_flashcards(user_id, "topic-1", [Flashcard(front="a", back="b")])
    hub = await hubs.save_flashcards(user_id, "topic-1", [Flashcard(front="c", back="d")])
    assert [c.front for c in hub.flashcards] == ["a", "c"]

    hub = await hubs.save_flashcards(user_id, "topic-1", [Flashcard(front="e", back="f")], append=False)
    assert [c.front for c in hub.flashcards] == ["e"]

    hub = await hubs.save_notes(user_id, "topic-1", "# Notes")
    assert hub.notes == "# Notes"
    assert len(hub.flashcards) == 1


def _stale_first_read(store, monkeypatch):
    """Make the first store read miss, as if another request created the document right after it."""
    real_get = store.get
    calls = []

    async def get(collection, doc_id):
        calls.append(doc_id)
        if len(calls) == 1:
            return None
        return await real_get(collection, doc_id)

    monkeypatch.setattr(store, "get", get)
    return calls


async def test_study_hub_id_is_deterministic(store, user_id):
    hubs = StudyHubRepository(store)

    first, second = await asyncio.gather(
        hubs.get_or_create(user_id, "topic-1"),
        hubs.get_or_create(user_id, "topic-1"),
    )

    assert first.id == second.id == "user-1:topic-1"
    assert len(await hubs.list_for_user(user_id)) == 1, "❌ Concurrent requests must share one hub"


async def test_study_hub_lost_create_race(store, user_id, monkeypatch):
    hubs = StudyHubRepository(store)
    existing = await hubs.get_or_create(user_id, "topic-1")
    await hubs.save_notes(user_id, "topic-1", "# Kept")
    calls = _stale_first_read(store, monkeypatch)

    hub = await hubs.get_or_create(user_id, "topic-1")

    assert len(calls) == 2, "❌ The losing create must re-read the stored hub"
    assert hub.id == existing.id
    assert hub.notes == "# Kept"


async def test_weak_skills_are_deduplicated(store, user_id):
    repo = WeakSkillRepository(store)

    first = await repo.record(user_id, "topic-1", ["Sign errors", "Fractions"])
    second = await repo.record(user_id, "topic-1", ["sign errors", "Exponents", "Exponents"])

    assert [s.skill for s in first] == ["Sign errors", "Fractions"]
    assert [s.skill for s in second] == ["Exponents"]
    assert len(await repo.list_for_user(user_id, topic_id="topic-1")) == 3


async def test_weakest_skills_first(store, user_id):
    repo = WeakSkillRepository(store)
    for skill, score in [("A", 80), ("B", 10), ("C", 45)]:
        await repo.create(WeakSkill(user_id=user_id, topic_id="t", skill=skill, improvement_score=score))

    assert [s.skill for s in await repo.weakest(user_id, limit=2)] == ["B", "C"]


async def test_lectures_most_recent_first(store, user_id):
    repo = LectureRepository(store)
    await repo.create(Lecture(user_id=user_id, title="Week 1", recorded_at=NOW - timedelta(days=7)))
    await repo.create(Lecture(user_id=user_id, title="Week 2", recorded_at=NOW))

    assert [lec.title for lec in await repo.list_recent(user_id)] == ["Week 2", "Week 1"]


# ============================================================================
# SETTINGS & DASHBOARD
# ============================================================================

async def test_settings_defaults_and_update(store, user_id):
    repo = SettingsRepository(store)

    defaults = await repo.get_or_create(user_id)
    assert defaults.id == user_id
    assert defaults.default_ai_mode == "balanced"
    assert defaults.theme == "dark"
    assert defaults.due_date_offset == 3
    assert defaults.onboarding_completed is False

    updated = await repo.update(user_id, {"theme": "light", "subjects": ["Math", "Math ", "Physics"]})
    assert updated.theme == "light"
    assert updated.subjects == ["Math", "Physics"]
    assert (await repo.get_or_create(user_id)).theme == "light"


async def test_settings_lost_create_race(store, user_id, monkeypatch):
    repo = SettingsRepository(store)
    await repo.create(UserSettings(id=user_id, user_id=user_id, theme="light"))
    calls = _stale_first_read(store, monkeypatch)

    settings = await repo.get_or_create(user_id)

    assert len(calls) == 2
    assert settings.theme == "light", "❌ The losing create must return the stored settings"
    assert settings.version == 1


def test_settings_timezone_must_be_known(user_id):
    assert UserSettings(user_id=user_id).timezone == "UTC"
    assert UserSettings(user_id=user_id, timezone="Asia/Tokyo").timezone == "Asia/Tokyo"
    with pytest.raises(ValidationError):
        UserSettings(user_id=user_id, timezone="Mars/Olympus_Mons")


def test_due_date_label():
    assert due_date_label(NOW + timedelta(hours=5), NOW) == "Due today"
    assert due_date_label(NOW - timedelta(days=1), NOW) == "Overdue"
    assert due_date_label(NOW + timedelta(days=1), NOW) == "Due tomorrow"
    assert due_date_label(datetime(2030, 5, 9, tzinfo=timezone.utc), NOW) == "Due May 9"


def test_due_date_label_uses_local_day():
    new_york = ZoneInfo("America/New_York")
    evening = datetime(2030, 5, 1, 20, 0, tzinfo=timezone.utc)  # 16:00 in New York
    late = datetime(2030, 5, 2, 2, 0, tzinfo=timezone.utc)      # 22:00 on May 1 in New York

    assert due_date_label(late, evening) == "Due tomorrow"
    assert due_date_label(late, evening, tz=new_york) == "Due today"
    assert due_date_urgency(late, evening, tz=new_york) == "today"

    # 01:00 UTC on May 1 is still April 30 in New York
    early = datetime(2030, 5, 1, 1, 0, tzinfo=timezone.utc)
    assert due_date_label(early, evening, tz=new_york) == "Overdue"
    assert due_date_label(datetime(2030, 5, 9, 2, 0, tzinfo=timezone.utc), evening, tz=new_york) == "Due May 8"


def test_due_date_urgency():
    assert due_date_urgency(NOW + timedelta(hours=1), NOW) == "today"
    assert due_date_urgency(NOW - timedelta(days=2), NOW) == "overdue"
    assert due_date_urgency(NOW + timedelta(days=2), NOW, offset_days=3) == "soon"
    assert due_date_urgency(NOW + timedelta(days=10), NOW, offset_days=3) == "normal"


async def test_practice_tests(store, user_id):
    repo = PracticeTestRepository(store)
    quiz = await repo.create(PracticeTest(user_id=user_id, name="Quiz", topic_id="topic-1"))

    assert quiz.question_count == 10
    assert quiz.difficulty == "medium"

    done = await repo.complete(user_id, quiz.id, 72.5)
    assert (done.completed, done.score, done.version) == (True, 72.5, 2)
    assert done.completed_at is not None
    with pytest.raises(NotFound):
        await repo.complete("intruder", quiz.id, 10)
    with pytest.raises(ValidationError):
        PracticeTest(user_id=user_id, name="Bad", score=120)


async def test_dashboard(store, user_id):
    assignments = AssignmentRepository(store)
    await assignments.create(Assignment(user_id=user_id, title="Tomorrow", due_date=NOW + timedelta(days=1)))
    await assignments.create(Assignment(user_id=user_id, title="Later", due_date=NOW + timedelta(days=20)))

    tests = PracticeTestRepository(store)
    for days, name in [(4, "Fourth"), (1, "First"), (3, "Third"), (2, "Second")]:
        await tests.create(PracticeTest(user_id=user_id, name=name, created_at=NOW - timedelta(days=10 - days)))
    finished = await tests.create(PracticeTest(user_id=user_id, name="Finished", created_at=NOW - timedelta(days=20)))
    await tests.complete(user_id, finished.id, 90)
    await tests.create(PracticeTest(user_id="someone-else", name="Theirs", created_at=NOW - timedelta(days=30)))

    dashboard = await build_dashboard(store, user_id, now=NOW)

    assert [(u.assignment.title, u.label, u.urgency) for u in dashboard.upcoming] == [
        ("Tomorrow", "Due tomorrow", "soon"),
        ("Later", "Due May 21", "normal"),
    ]
    assert [t.name for t in dashboard.upcoming_tests] == ["First", "Second", "Third"], \
        "❌ Three oldest incomplete tests"
    assert dashboard.streak.current_streak == 0
    assert dashboard.weak_skills == []


async def test_dashboard_in_user_timezone(store, user_id):
    await SettingsRepository(store).update(user_id, {"timezone": "America/New_York"})
    await AssignmentRepository(store).create(
        Assignment(user_id=user_id, title="Late", due_date=datetime(2030, 5, 2, 2, 0, tzinfo=timezone.utc))
    )

    dashboard = await build_dashboard(store, user_id, now=datetime(2030, 5, 1, 20, 0, tzinfo=timezone.utc))

    assert [(u.label, u.urgency) for u in dashboard.upcoming] == [("Due today", "today")]
