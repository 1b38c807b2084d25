"""
Shared fixtures: an in-memory store and a scripted stand-in for the Gemini
text service, so no test needs network access or credentials.
"""

import asyncio
import sys
import os
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.dirname(__file__))

from ai_service import StudyAI
from models import Assignment
from repositories import AssignmentRepository
from step_solver import StepSolver
from store import MemoryDocumentStore


class FakeTextService:
    """
    Plays back queued responses in order. A queued exception is raised
    instead of returned; once the queue is empty it answers "Step N".
    """

    def __init__(self, responses=None, delay: float = 0.0):
        self.responses = list(responses or [])
        self.delay = delay
        self.prompts: list[str] = []
        self.images: list[str] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    async def generate(self, prompt, image_base64=None, mime_type="image/jpeg"):
        self.prompts.append(prompt)
        if image_base64:
            self.images.append(image_base64)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.responses:
            return f"Step {len(self.prompts)}"
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


USER = "user-1"
DUE = datetime(2030, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def user_id():
    return USER


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def text_service():
    return FakeTextService()


@pytest.fixture
def ai(text_service):
    return StudyAI(text_service, timeout_seconds=1.0)


@pytest.fixture
def solver(store, ai):
    return StepSolver(store, ai)


@pytest.fixture
async def assignment(store):
    """An assignment owned by USER holding one question: 2x - 3 = 5."""
    repo = AssignmentRepository(store)
    created = await repo.create(Assignment(user_id=USER, title="Linear equations", due_date=DUE))
    return await repo.add_questions(USER, created.id, ["Solve 2x - 3 = 5"])
