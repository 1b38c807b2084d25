"""
Graph State Definition for the Step Solver

This module defines the StepSolverState TypedDict that flows through the
LangGraph step-generation workflow. All nodes must accept and return updates
to this structure.
"""

from typing import TypedDict, List, Optional

from models import Assignment, ExplanationMode, SolutionStep


class StepSolverState(TypedDict):
    """
    The state object that flows through one generate-next-step run.

    Nothing here is checkpointed: the assignment document in the store is the
    source of truth, and a run either persists exactly one new step or
    leaves the document untouched.
    """

    # --- Input ---
    user_id: str
    assignment_id: str
    question_index: int
    mode: ExplanationMode

    # --- Loaded ---
    assignment: Optional[Assignment]
    previous_steps: List[str]  # Explanations before the append position, in order

    # --- Generated ---
    explanation: Optional[str]

    # --- Output ---
    steps: List[SolutionStep]
    cursor: int  # Index of the newly appended step
