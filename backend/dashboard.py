"""
Dashboard summary and due-date presentation rules.

"Today" and "tomorrow" are the user's local calendar days; both instants are
converted to the user's timezone before their dates are compared.
"""

from datetime import datetime, timedelta, tzinfo
from typing import Literal, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from models import Assignment, PracticeTest, Streak, WeakSkill, utcnow
from repositories import (
    AssignmentRepository,
    PracticeTestRepository,
    SettingsRepository,
    StreakRepository,
    WeakSkillRepository,
)

Urgency = Literal["overdue", "today", "soon", "normal"]

UTC = ZoneInfo("UTC")


def _local(due: datetime, now: Optional[datetime], tz: Optional[tzinfo]) -> tuple[datetime, datetime]:
    tz = tz or UTC
    return due.astimezone(tz), (now or utcnow()).astimezone(tz)


def due_date_label(due: datetime, now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> str:
    due, now = _local(due, now, tz)
    if due.date() == now.date():
        return "Due today"
    if due < now:
        return "Overdue"
    if due.date() == (now + timedelta(days=1)).date():
        return "Due tomorrow"
    return f"Due {due.strftime('%b')} {due.day}"


def due_date_urgency(
    due: datetime,
    now: Optional[datetime] = None,
    offset_days: int = 3,
    tz: Optional[tzinfo] = None,
) -> Urgency:
    due, now = _local(due, now, tz)
    if due.date() == now.date():
        return "today"
    if due < now:
        return "overdue"
    if due <= now + timedelta(days=offset_days):
        return "soon"
    return "normal"


class UpcomingAssignment(BaseModel):
    assignment: Assignment
    label: str
    urgency: Urgency


class Dashboard(BaseModel):
    upcoming: list[UpcomingAssignment]
    upcoming_tests: list[PracticeTest]
    streak: Streak
    weak_skills: list[WeakSkill]


async def build_dashboard(store, user_id: str, now: Optional[datetime] = None) -> Dashboard:
    now = now or utcnow()
    user_settings = await SettingsRepository(store).get_or_create(user_id)
    tz = ZoneInfo(user_settings.timezone)
    assignments = await AssignmentRepository(store).list_upcoming(user_id, limit=5)
    return Dashboard(
        upcoming=[
            UpcomingAssignment(
                assignment=a,
                label=due_date_label(a.due_date, now, tz),
                urgency=due_date_urgency(a.due_date, now, user_settings.due_date_offset, tz),
            )
            for a in assignments
        ],
        upcoming_tests=await PracticeTestRepository(store).list_upcoming(user_id, limit=3),
        streak=await StreakRepository(store).get_or_default(user_id),
        weak_skills=await WeakSkillRepository(store).weakest(user_id, limit=5),
    )
