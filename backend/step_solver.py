"""
LangGraph Workflow for the Step Solver

Drives one question through confirm-to-advance solution steps:
- load_question: read the assignment, locate the question, assemble context
- generate_step: ask the text service for the next explanation only
- persist_step: append the unconfirmed step with a version-conditional write

A run either stores exactly one new step or raises before anything is
written. Runs for the same assignment are serialized by a per-assignment lock,
matching the document-wide version; the version check catches writers in
other processes.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Literal, Optional

from langgraph.graph import StateGraph, END

from ai_service import StudyAI
from errors import NotFound, PersistenceFailure, StepStateError
from models import Assignment, ExplanationMode, Question, SolutionStep, utcnow
from repositories import ASSIGNMENTS, AssignmentRepository, json_timestamp
from state import StepSolverState
from store import DocumentStore

logger = logging.getLogger(__name__)

StepState = Literal["NoSteps", "StepPending", "StepConfirmed", "AllConfirmedAwaitingNext"]


# ============================================================================
# CURSOR & CONTEXT RULES
# ============================================================================

def assemble_context(steps: list[SolutionStep], cursor: int) -> list[str]:
    """Explanations of the steps before ``cursor``, in step-number order."""
    prior = sorted(steps[:max(cursor, 0)], key=lambda s: s.step_number)
    return [s.explanation for s in prior]


def default_cursor(steps: list[SolutionStep]) -> int:
    """First unconfirmed step, else the last step, else 0."""
    for i, step in enumerate(steps):
        if not step.confirmed:
            return i
    return max(len(steps) - 1, 0)


def derive_state(steps: list[SolutionStep], cursor: int) -> StepState:
    if not steps:
        return "NoSteps"
    if 0 <= cursor < len(steps) and not steps[cursor].confirmed:
        return "StepPending"
    if all(s.confirmed for s in steps):
        return "AllConfirmedAwaitingNext"
    return "StepConfirmed"


@dataclass
class StepProgress:
    """What the client renders after an action."""
    assignment_id: str
    question_index: int
    steps: list[SolutionStep]
    cursor: int

    @property
    def state(self) -> StepState:
        return derive_state(self.steps, self.cursor)


def _question_at(assignment: Assignment, index: int) -> Question:
    if not 0 <= index < len(assignment.questions):
        raise NotFound("Question", f"{assignment.id}#{index}")
    return assignment.questions[index]


# ============================================================================
# STEP SOLVER
# ============================================================================

class StepSolver:
    """Generates and confirms solution steps against the document store."""

    def __init__(self, store: DocumentStore, ai: StudyAI):
        self.store = store
        self.ai = ai
        self.assignments = AssignmentRepository(store)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self.graph = self._build_graph()

    def _lock_for(self, assignment_id: str) -> asyncio.Lock:
        # Every question lives in the assignment document and shares its version
        lock = self._locks.get(assignment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[assignment_id] = lock
        return lock

    async def _load(self, user_id: str, assignment_id: str, index: int) -> tuple[Assignment, Question]:
        assignment = await self.assignments.get(user_id, assignment_id)
        return assignment, _question_at(assignment, index)

    async def _write_steps(self, assignment: Assignment, index: int, steps: list[SolutionStep]) -> int:
        """Replace one question's step list, conditional on the version read."""
        try:
            return await self.store.update(
                ASSIGNMENTS,
                assignment.id,
                {
                    f"questions.{index}.steps": [s.model_dump(mode="json") for s in steps],
                    "updated_at": json_timestamp(),
                },
                expected_version=assignment.version,
            )
        except (NotFound, PersistenceFailure):
            raise
        except Exception as e:
            logger.error(f"[StepSolver] Write failed for {assignment.id}: {e}", exc_info=True)
            raise PersistenceFailure(f"Could not save steps: {e}") from e

    # --- Graph nodes ---------------------------------------------------------

    async def load_question_node(self, state: StepSolverState) -> StepSolverState:
        assignment, question = await self._load(
            state["user_id"], state["assignment_id"], state["question_index"]
        )
        steps = question.steps
        if steps and not steps[-1].confirmed:
            # Permitted: generation does not require the previous step to be confirmed
            logger.info(
                f"[StepSolver] Generating after unconfirmed step {steps[-1].step_number} "
                f"({assignment.id}#{state['question_index']})"
            )
        return {
            **state,
            "assignment": assignment,
            "previous_steps": assemble_context(steps, len(steps)),
        }

    async def generate_step_node(self, state: StepSolverState) -> StepSolverState:
        question = _question_at(state["assignment"], state["question_index"])
        explanation = await self.ai.generate_step_explanation(
            question.content, state["mode"], state["previous_steps"]
        )
        return {**state, "explanation": explanation}

    async def persist_step_node(self, state: StepSolverState) -> StepSolverState:
        assignment = state["assignment"]
        index = state["question_index"]
        question = _question_at(assignment, index)
        position = len(question.steps)

        new_step = SolutionStep(
            question_id=question.id,
            step_number=position + 1,
            explanation=state["explanation"],
            confirmed=False,
            ai_mode=state["mode"],
            created_at=utcnow(),
        )
        steps = question.steps + [new_step]
        await self._write_steps(assignment, index, steps)

        logger.info(f"[StepSolver] Stored step {new_step.step_number} for {assignment.id}#{index}")
        return {**state, "steps": steps, "cursor": position}

    def _build_graph(self):
        workflow = StateGraph(StepSolverState)

        workflow.add_node("load_question", self.load_question_node)
        workflow.add_node("generate_step", self.generate_step_node)
        workflow.add_node("persist_step", self.persist_step_node)

        workflow.set_entry_point("load_question")
        workflow.add_edge("load_question", "generate_step")
        workflow.add_edge("generate_step", "persist_step")
        workflow.add_edge("persist_step", END)

        # No checkpointer: the assignment document is the durable state
        return workflow.compile()

    # --- Operations ----------------------------------------------------------

    async def progress(
        self,
        user_id: str,
        assignment_id: str,
        question_index: int,
        cursor: Optional[int] = None,
    ) -> StepProgress:
        _, question = await self._load(user_id, assignment_id, question_index)
        steps = question.steps
        if cursor is None or not 0 <= cursor <= len(steps):
            cursor = default_cursor(steps)
        return StepProgress(assignment_id, question_index, steps, cursor)

    async def generate_next_step(
        self,
        user_id: str,
        assignment_id: str,
        question_index: int,
        mode: ExplanationMode,
    ) -> StepProgress:
        """
        Append the next unconfirmed step.

        The new step always goes at the end of the list, so its number is
        len(steps) + 1 and its index becomes the cursor. Raises
        AIGenerationFailure before any write, PersistenceFailure (including
        VersionConflict) when the write is rejected, NotFound for a missing
        assignment or question.
        """
        async with self._lock_for(assignment_id):
            initial: StepSolverState = {
                "user_id": user_id,
                "assignment_id": assignment_id,
                "question_index": question_index,
                "mode": mode,
                "assignment": None,
                "previous_steps": [],
                "explanation": None,
                "steps": [],
                "cursor": 0,
            }
            result = await self.graph.ainvoke(initial)
        return StepProgress(assignment_id, question_index, result["steps"], result["cursor"])

    async def confirm_step(
        self,
        user_id: str,
        assignment_id: str,
        question_index: int,
        cursor: Optional[int] = None,
    ) -> StepProgress:
        """
        Mark the step at ``cursor`` confirmed and move the cursor to the next
        existing step, if any. The cursor defaults to the first unconfirmed step.
        """
        async with self._lock_for(assignment_id):
            assignment, question = await self._load(user_id, assignment_id, question_index)
            steps = question.steps
            if cursor is None:
                cursor = default_cursor(steps)
            if not 0 <= cursor < len(steps):
                raise StepStateError(f"No step at position {cursor}")
            if steps[cursor].confirmed:
                raise StepStateError(f"Step {steps[cursor].step_number} is already confirmed")

            updated = list(steps)
            updated[cursor] = steps[cursor].model_copy(update={"confirmed": True})
            await self._write_steps(assignment, question_index, updated)

        logger.info(f"[StepSolver] Confirmed step {cursor + 1} for {assignment_id}#{question_index}")
        next_cursor = cursor + 1 if cursor < len(updated) - 1 else cursor
        return StepProgress(assignment_id, question_index, updated, next_cursor)


# ============================================================================
# CLIENT SESSION
# ============================================================================

class StepSession:
    """
    Client-side cursor over one question.

    The cursor only moves after the solver reports a successful write, so it
    never runs ahead of what the store holds.
    """

    def __init__(
        self,
        solver: StepSolver,
        user_id: str,
        assignment_id: str,
        question_index: int,
        mode: ExplanationMode = "balanced",
    ):
        self.solver = solver
        self.user_id = user_id
        self.assignment_id = assignment_id
        self.question_index = question_index
        self.mode = mode
        self.steps: list[SolutionStep] = []
        self.cursor = 0

    @property
    def state(self) -> StepState:
        return derive_state(self.steps, self.cursor)

    def _apply(self, progress: StepProgress) -> StepProgress:
        self.steps = progress.steps
        self.cursor = progress.cursor
        return progress

    async def refresh(self) -> StepProgress:
        return self._apply(await self.solver.progress(
            self.user_id, self.assignment_id, self.question_index, self.cursor
        ))

    async def generate_next_step(self, mode: Optional[ExplanationMode] = None) -> StepProgress:
        return self._apply(await self.solver.generate_next_step(
            self.user_id, self.assignment_id, self.question_index, mode or self.mode
        ))

    async def confirm_step(self) -> StepProgress:
        return self._apply(await self.solver.confirm_step(
            self.user_id, self.assignment_id, self.question_index, self.cursor
        ))
