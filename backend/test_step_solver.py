"""
Tests for the confirm-to-advance step solver and its client session.
"""

import asyncio
import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(__file__))

from ai_service import SYSTEM_PROMPTS, StudyAI
from errors import AIGenerationFailure, NotFound, PersistenceFailure, StepStateError, VersionConflict
from models import SolutionStep
from repositories import ASSIGNMENTS, AssignmentRepository
from step_solver import StepSession, StepSolver, assemble_context, default_cursor, derive_state


def _steps(*confirmed):
    return [
        SolutionStep(question_id="q", step_number=i + 1, explanation=f"e{i + 1}", confirmed=c, ai_mode="balanced")
        for i, c in enumerate(confirmed)
    ]


# ============================================================================
# CURSOR & STATE RULES
# ============================================================================

def test_assemble_context_uses_steps_before_cursor():
    steps = _steps(True, True, False)
    assert assemble_context(steps, 0) == []
    assert assemble_context(steps, 2) == ["e1", "e2"]
    assert assemble_context(steps, 3) == ["e1", "e2", "e3"]


def test_assemble_context_orders_by_step_number():
    steps = list(reversed(_steps(True, True)))
    assert assemble_context(steps, 2) == ["e1", "e2"], "❌ Context must follow step numbers"


def test_default_cursor():
    assert default_cursor([]) == 0
    assert default_cursor(_steps(True, False, False)) == 1
    assert default_cursor(_steps(True, True)) == 1


def test_derive_state():
    assert derive_state([], 0) == "NoSteps"
    assert derive_state(_steps(False), 0) == "StepPending"
    assert derive_state(_steps(True), 0) == "AllConfirmedAwaitingNext"
    assert derive_state(_steps(True, True), 2) == "AllConfirmedAwaitingNext"
    assert derive_state(_steps(True, False), 0) == "StepConfirmed"


# ============================================================================
# GENERATE
# ============================================================================

async def test_first_step_on_empty_question(solver, text_service, assignment, user_id):
    print("\n🔬 Empty question -> first step")
    text_service.queue("Add 3 to both sides")

    result = await solver.generate_next_step(user_id, assignment.id, 0, "balanced")

    assert len(result.steps) == 1
    step = result.steps[0]
    assert step.step_number == 1
    assert step.explanation == "Add 3 to both sides"
    assert step.confirmed is False
    assert step.ai_mode == "balanced"
    assert step.question_id == assignment.questions[0].id
    assert result.cursor == 0
    assert result.state == "StepPending"

    stored = await solver.progress(user_id, assignment.id, 0)
    assert [s.explanation for s in stored.steps] == ["Add 3 to both sides"], "❌ Step was not persisted"
    print("✅ First step stored")


async def test_first_step_prompt(solver, text_service, assignment, user_id):
    await solver.generate_next_step(user_id, assignment.id, 0, "guided")

    prompt = text_service.prompts[0]
    assert prompt.startswith(SYSTEM_PROMPTS["guided"])
    assert "Question: Solve 2x - 3 = 5" in prompt
    assert "Provide the FIRST step only" in prompt
    assert "Previous steps completed" not in prompt


async def test_step_numbers_are_contiguous(solver, assignment, user_id):
    for _ in range(5):
        result = await solver.generate_next_step(user_id, assignment.id, 0, "direct")

    assert [s.step_number for s in result.steps] == [1, 2, 3, 4, 5]
    assert result.cursor == 4
    assert len({s.id for s in result.steps}) == 5, "❌ Step ids must be unique"


async def test_generate_after_confirmed_steps(solver, text_service, assignment, user_id):
    print("\n🔬 Two confirmed steps -> third step")
    text_service.queue("Add 3 to both sides", "So 2x = 8")
    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")
    await solver.confirm_step(user_id, assignment.id, 0, 0)
    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")
    await solver.confirm_step(user_id, assignment.id, 0, 1)

    text_service.queue("Divide by 2")
    result = await solver.generate_next_step(user_id, assignment.id, 0, "balanced")

    assert [s.confirmed for s in result.steps] == [True, True, False]
    assert result.steps[2].step_number == 3
    assert result.steps[2].explanation == "Divide by 2"
    assert result.cursor == 2
    assert result.state == "StepPending"

    prompt = text_service.prompts[-1]
    assert "Previous steps completed:\nAdd 3 to both sides\nSo 2x = 8" in prompt, "❌ Prior steps missing from prompt"
    assert "Provide the NEXT single step only" in prompt
    print("✅ Step 3 appended with full context")


async def test_generate_with_unconfirmed_last_step_appends(solver, assignment, user_id):
    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")
    result = await solver.generate_next_step(user_id, assignment.id, 0, "balanced")

    assert [s.step_number for s in result.steps] == [1, 2]
    assert [s.confirmed for s in result.steps] == [False, False]


async def test_service_failure_leaves_steps_untouched(solver, store, text_service, assignment, user_id):
    print("\n🔬 Service error -> nothing written")
    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")
    before = await store.get(ASSIGNMENTS, assignment.id)

    text_service.queue(RuntimeError("quota exhausted"))
    with pytest.raises(AIGenerationFailure):
        await solver.generate_next_step(user_id, assignment.id, 0, "balanced")

    after = await store.get(ASSIGNMENTS, assignment.id)
    assert after == before, "❌ Failed generation must not modify the document"
    print("✅ Document unchanged")


async def test_blank_response_is_a_failure(solver, store, text_service, assignment, user_id):
    text_service.queue("   \n")
    with pytest.raises(AIGenerationFailure):
        await solver.generate_next_step(user_id, assignment.id, 0, "balanced")

    progress = await solver.progress(user_id, assignment.id, 0)
    assert progress.steps == []


async def test_timeout_is_a_failure(store, text_service, assignment, user_id):
    text_service.delay = 0.5
    slow_solver = StepSolver(store, StudyAI(text_service, timeout_seconds=0.05))

    with pytest.raises(AIGenerationFailure, match="timed out"):
        await slow_solver.generate_next_step(user_id, assignment.id, 0, "balanced")

    progress = await slow_solver.progress(user_id, assignment.id, 0)
    assert progress.steps == []


async def test_concurrent_generation_stays_contiguous(solver, text_service, assignment, user_id):
    text_service.delay = 0.01

    results = await asyncio.gather(*[
        solver.generate_next_step(user_id, assignment.id, 0, "balanced") for _ in range(3)
    ])

    final = await solver.progress(user_id, assignment.id, 0)
    assert [s.step_number for s in final.steps] == [1, 2, 3]
    assert sorted(r.cursor for r in results) == [0, 1, 2]


async def test_concurrent_generation_across_questions(solver, store, text_service, assignment, user_id):
    print("\n🔬 Two questions of one assignment generated at once")
    await AssignmentRepository(store).add_questions(user_id, assignment.id, ["Solve x + 4 = 9"])
    text_service.delay = 0.01

    first, second = await asyncio.gather(
        solver.generate_next_step(user_id, assignment.id, 0, "balanced"),
        solver.generate_next_step(user_id, assignment.id, 1, "balanced"),
    )

    assert len(first.steps) == 1
    assert len(second.steps) == 1, "❌ Questions sharing a document must not conflict"
    assert len((await solver.progress(user_id, assignment.id, 0)).steps) == 1
    assert len((await solver.progress(user_id, assignment.id, 1)).steps) == 1
    print("✅ Both questions stored one step")


async def test_missing_question_and_foreign_user(solver, assignment, user_id):
    with pytest.raises(NotFound):
        await solver.generate_next_step(user_id, assignment.id, 7, "balanced")
    with pytest.raises(NotFound):
        await solver.generate_next_step("someone-else", assignment.id, 0, "balanced")
    with pytest.raises(NotFound):
        await solver.progress(user_id, "missing", 0)


# ============================================================================
# CONFIRM
# ============================================================================

async def test_confirm_single_step(solver, assignment, user_id):
    print("\n🔬 Confirm the only step")
    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")

    result = await solver.confirm_step(user_id, assignment.id, 0, 0)

    assert result.steps[0].confirmed is True
    assert result.cursor == 0, "❌ Cursor must stay when there is no next step"
    assert result.state == "AllConfirmedAwaitingNext"
    print("✅ Awaiting next step")


async def test_confirm_changes_only_target_step(solver, assignment, user_id):
    for _ in range(3):
        await solver.generate_next_step(user_id, assignment.id, 0, "balanced")
    before = (await solver.progress(user_id, assignment.id, 0)).steps

    result = await solver.confirm_step(user_id, assignment.id, 0, 1)

    assert result.cursor == 2
    assert [s.confirmed for s in result.steps] == [False, True, False]
    for old, new in zip(before, result.steps):
        assert (old.id, old.step_number, old.explanation, old.ai_mode) == (
            new.id, new.step_number, new.explanation, new.ai_mode
        ), "❌ Confirmation must not alter step content"


async def test_confirm_defaults_to_first_unconfirmed(solver, assignment, user_id):
    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")
    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")

    result = await solver.confirm_step(user_id, assignment.id, 0)

    assert [s.confirmed for s in result.steps] == [True, False]
    assert result.cursor == 1


async def test_confirm_rejects_invalid_cursor(solver, assignment, user_id):
    with pytest.raises(StepStateError):
        await solver.confirm_step(user_id, assignment.id, 0, 0)

    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")
    await solver.confirm_step(user_id, assignment.id, 0, 0)

    with pytest.raises(StepStateError, match="already confirmed"):
        await solver.confirm_step(user_id, assignment.id, 0, 0)
    with pytest.raises(StepStateError):
        await solver.confirm_step(user_id, assignment.id, 0, 3)


# ============================================================================
# SESSION
# ============================================================================

async def test_session_walkthrough(solver, text_service, assignment, user_id):
    print("\n🔬 Session: generate -> confirm -> generate")
    session = StepSession(solver, user_id, assignment.id, 0, mode="direct")
    await session.refresh()
    assert session.state == "NoSteps"

    text_service.queue("Add 3 to both sides", "Divide by 2")
    await session.generate_next_step()
    assert session.state == "StepPending"
    assert session.cursor == 0

    await session.confirm_step()
    assert session.state == "AllConfirmedAwaitingNext"

    await session.generate_next_step()
    assert session.cursor == 1
    assert [s.step_number for s in session.steps] == [1, 2]
    assert session.steps[1].ai_mode == "direct"
    print("✅ Session followed the store")


class InterferingService:
    """Edits the assignment behind the solver's back while 'thinking'."""

    def __init__(self, store, assignment_id):
        self.store = store
        self.assignment_id = assignment_id

    async def generate(self, prompt, image_base64=None, mime_type="image/jpeg"):
        await self.store.update(ASSIGNMENTS, self.assignment_id, {"title": "Renamed elsewhere"})
        return "Add 3 to both sides"


async def test_version_conflict_keeps_cursor(store, assignment, user_id):
    solver = StepSolver(store, StudyAI(InterferingService(store, assignment.id)))
    session = StepSession(solver, user_id, assignment.id, 0)
    await session.refresh()

    with pytest.raises(VersionConflict):
        await session.generate_next_step()

    assert session.cursor == 0
    assert session.steps == []
    progress = await solver.progress(user_id, assignment.id, 0)
    assert progress.steps == [], "❌ Losing write must not be stored"


async def test_failed_confirm_keeps_session_and_store(solver, store, assignment, user_id, monkeypatch):
    print("\n🔬 Store write fails during confirm")
    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")
    await solver.generate_next_step(user_id, assignment.id, 0, "balanced")
    session = StepSession(solver, user_id, assignment.id, 0)
    await session.refresh()

    async def failing_update(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(store, "update", failing_update)
    with pytest.raises(PersistenceFailure):
        await session.confirm_step()

    assert session.cursor == 0, "❌ Cursor must not advance past a failed write"
    assert [s.confirmed for s in session.steps] == [False, False]

    monkeypatch.undo()
    stored = await solver.progress(user_id, assignment.id, 0)
    assert [s.confirmed for s in stored.steps] == [False, False], "❌ Nothing may be stored"
    print("✅ Session and store unchanged")
