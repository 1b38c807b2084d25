"""
FastAPI Application for the StudyApe Backend
"""

import base64
import binascii
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from ai_service import StudyAI, build_text_service
from config import settings
from dashboard import Dashboard, build_dashboard
from errors import AIGenerationFailure, NotFound, PersistenceFailure, StepStateError, VersionConflict
from models import (
    Assignment,
    Difficulty,
    EducationLevel,
    ExplanationMode,
    Flashcard,
    FontSize,
    IncorrectAnswer,
    Lecture,
    PracticeTest,
    Priority,
    SolutionStep,
    StudyHub,
    Subject,
    Theme,
    Topic,
    UserSettings,
    WeakSkill,
    check_timezone,
)
from rate_limiter import RateLimitConfig, close_rate_limiter, get_rate_limiter, init_rate_limiter
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
from step_solver import StepProgress, StepSolver, StepState
from store import DocumentStore, create_store

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class HealthResponse(BaseModel):
    status: str
    version: str = "0.1.0"
    environment: str
    store_backend: str


class AssignmentCreate(BaseModel):
    title: str = Field(..., min_length=1)
    subject_id: Optional[str] = None  # Falls back to the user's first subject
    due_date: datetime
    priority: Priority = "medium"


class AssignmentUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    subject_id: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: Optional[Priority] = None
    completed: Optional[bool] = None


class AddQuestionsRequest(BaseModel):
    questions: list[str] = Field(..., min_length=1)
    image_url: Optional[str] = None


class ExtractQuestionsRequest(BaseModel):
    image_base64: str = Field(..., min_length=1)
    mime_type: Literal["image/jpeg", "image/png", "image/webp"] = "image/jpeg"
    image_url: Optional[str] = None  # Where the client stored the original upload

    @field_validator("image_base64")
    @classmethod
    def validate_image(cls, v):
        # Accept data URLs as produced by FileReader.readAsDataURL
        if v.startswith("data:") and "," in v:
            v = v.split(",", 1)[1]
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Invalid base64 encoding")
        return v


class GenerateStepRequest(BaseModel):
    mode: Optional[ExplanationMode] = None  # Defaults to the user's preferred mode


class ConfirmStepRequest(BaseModel):
    cursor: Optional[int] = Field(None, ge=0)


class StepProgressResponse(BaseModel):
    assignment_id: str
    question_index: int
    steps: list[SolutionStep]
    cursor: int
    state: StepState

    @classmethod
    def from_progress(cls, progress: StepProgress) -> "StepProgressResponse":
        return cls(
            assignment_id=progress.assignment_id,
            question_index=progress.question_index,
            steps=progress.steps,
            cursor=progress.cursor,
            state=progress.state,
        )


class SubjectCreate(BaseModel):
    name: str = Field(..., min_length=1)
    icon: Optional[str] = None
    color: Optional[str] = None


class TopicCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""


class NotesRequest(BaseModel):
    material: Optional[str] = None


class FlashcardsRequest(BaseModel):
    material: Optional[str] = None
    count: int = Field(default=10, ge=1, le=30)
    append: bool = True


class FlashcardsResponse(BaseModel):
    generated: list[Flashcard]
    hub: StudyHub


class PracticeRequest(BaseModel):
    difficulty: Difficulty = "medium"
    count: int = Field(default=1, ge=1, le=10)
    focus_weak_skills: bool = True


class PracticeResponse(BaseModel):
    topic_id: str
    questions: list[str]


class WeakSkillsRequest(BaseModel):
    incorrect_answers: list[IncorrectAnswer] = Field(..., min_length=1)


class WeakSkillsResponse(BaseModel):
    detected: list[str]
    recorded: list[WeakSkill]


class AskRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    mode: Optional[ExplanationMode] = None
    context: Optional[str] = None


class AskResponse(BaseModel):
    mode: ExplanationMode
    response: str


class LectureCreate(BaseModel):
    title: str = Field(..., min_length=1)
    subject_id: Optional[str] = None
    recorded_at: Optional[datetime] = None
    duration_minutes: int = Field(default=0, ge=0)
    transcript: Optional[str] = None


class LectureUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    subject_id: Optional[str] = None
    duration_minutes: Optional[int] = Field(None, ge=0)
    transcript: Optional[str] = None
    summary: Optional[str] = None
    key_points: Optional[list[str]] = None


class PracticeTestCreate(BaseModel):
    name: str = Field(..., min_length=1)
    topic_id: Optional[str] = None
    question_count: int = Field(default=10, ge=1, le=50)
    difficulty: Difficulty = "medium"


class PracticeTestComplete(BaseModel):
    score: float = Field(..., ge=0, le=100)


class SettingsUpdate(BaseModel):
    education_level: Optional[EducationLevel] = None
    subjects: Optional[list[str]] = None
    default_ai_mode: Optional[ExplanationMode] = None
    theme: Optional[Theme] = None
    font_size: Optional[FontSize] = None
    reduced_motion: Optional[bool] = None
    dyslexic_font: Optional[bool] = None
    confetti_enabled: Optional[bool] = None
    voice_auto_play: Optional[bool] = None
    voice_speed: Optional[float] = Field(None, ge=0.5, le=2.0)
    due_date_offset: Optional[int] = Field(None, ge=0, le=30)
    timezone: Optional[str] = None
    dashboard_layout: Optional[list[str]] = None
    dashboard_widgets: Optional[dict[str, bool]] = None
    study_reminders: Optional[bool] = None
    onboarding_completed: Optional[bool] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        return check_timezone(v) if v is not None else v


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Identity is asserted by the upstream identity provider."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing X-User-Id header")
    return x_user_id.strip()


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_ai(request: Request) -> StudyAI:
    return request.app.state.ai


def get_solver(request: Request) -> StepSolver:
    return request.app.state.solver


async def enforce_ai_quota(user_id: str = Depends(get_user_id)) -> str:
    """Spend one AI token for the user; a no-op when rate limiting is disabled."""
    try:
        limiter = await get_rate_limiter()
    except RuntimeError:
        logger.debug("Rate limiter not available, skipping rate limit check")
        return user_id

    decision = await limiter.check_rate_limit(user_id)
    if not decision.allowed:
        raise HTTPException(
            status.HTTP_429_TOO_MANY_REQUESTS,
            f"Too many AI requests. Try again in {decision.reset_in} seconds.",
            headers={"Retry-After": str(decision.reset_in)},
        )
    return user_id


# ============================================================================
# ERROR HANDLERS
# ============================================================================

def _error_response(code: int, exc: Exception, retryable: bool) -> JSONResponse:
    return JSONResponse(
        status_code=code,
        content={"error": type(exc).__name__, "message": str(exc), "retryable": retryable},
    )


async def not_found_handler(request: Request, exc: NotFound):
    return _error_response(status.HTTP_404_NOT_FOUND, exc, retryable=False)


async def step_state_handler(request: Request, exc: StepStateError):
    return _error_response(status.HTTP_409_CONFLICT, exc, retryable=False)


async def persistence_handler(request: Request, exc: PersistenceFailure):
    if isinstance(exc, VersionConflict):
        logger.warning(f"[API] {request.url.path}: {exc}")
        return _error_response(status.HTTP_409_CONFLICT, exc, retryable=True)
    logger.error(f"[API] {request.url.path}: {exc}", exc_info=exc)
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, exc, retryable=True)


async def ai_failure_handler(request: Request, exc: AIGenerationFailure):
    logger.error(f"[API] {request.url.path}: {exc}")
    return _error_response(status.HTTP_502_BAD_GATEWAY, exc, retryable=True)


# ============================================================================
# ENDPOINTS
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(
        status="healthy",
        environment=settings.environment,
        store_backend=settings.store_backend,
    )


@router.get("/v1/quota")
async def get_quota(user_id: str = Depends(get_user_id)):
    """Get current AI quota status for a user."""
    try:
        limiter = await get_rate_limiter()
        return await limiter.get_quota_status(user_id)
    except RuntimeError:
        return {
            "remaining": -1,  # -1 means unlimited
            "limit": -1,
            "window_seconds": settings.rate_limit_window,
            "reset_in_seconds": 0,
            "enabled": False,
            "message": "Rate limiting not enabled"
        }


# --- Assignments ------------------------------------------------------------

@router.get("/v1/assignments", response_model=list[Assignment])
async def list_assignments(
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await AssignmentRepository(store).list_ordered(user_id)


@router.post("/v1/assignments", response_model=Assignment, status_code=status.HTTP_201_CREATED)
async def create_assignment(
    request: AssignmentCreate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    subject_id = request.subject_id
    if not subject_id:
        user_settings = await SettingsRepository(store).get_or_create(user_id)
        subject_id = user_settings.subjects[0] if user_settings.subjects else "General"

    assignment = await AssignmentRepository(store).create(Assignment(
        user_id=user_id,
        title=request.title,
        subject_id=subject_id,
        due_date=request.due_date,
        priority=request.priority,
    ))
    logger.info(f"[Assignments] Created {assignment.id} for {user_id}")
    return assignment


@router.get("/v1/assignments/{assignment_id}", response_model=Assignment)
async def get_assignment(
    assignment_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await AssignmentRepository(store).get(user_id, assignment_id)


@router.patch("/v1/assignments/{assignment_id}", response_model=Assignment)
async def update_assignment(
    assignment_id: str,
    request: AssignmentUpdate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    repo = AssignmentRepository(store)
    if not changes:
        return await repo.get(user_id, assignment_id)
    return await repo.update_fields(user_id, assignment_id, changes)


@router.post("/v1/assignments/{assignment_id}/toggle", response_model=Assignment)
async def toggle_assignment(
    assignment_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await AssignmentRepository(store).toggle_complete(user_id, assignment_id)


@router.delete("/v1/assignments/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_assignment(
    assignment_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    await AssignmentRepository(store).delete(user_id, assignment_id)


@router.post("/v1/assignments/{assignment_id}/questions", response_model=Assignment)
async def add_questions(
    assignment_id: str,
    request: AddQuestionsRequest,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await AssignmentRepository(store).add_questions(
        user_id, assignment_id, request.questions, image_url=request.image_url
    )


@router.post("/v1/assignments/{assignment_id}/questions/extract", response_model=Assignment)
async def extract_questions(
    assignment_id: str,
    request: ExtractQuestionsRequest,
    user_id: str = Depends(enforce_ai_quota),
    store: DocumentStore = Depends(get_store),
    ai: StudyAI = Depends(get_ai),
):
    """Read questions off a photo or scan and append them to the assignment."""
    repo = AssignmentRepository(store)
    await repo.get(user_id, assignment_id)  # 404 before spending a model call

    questions = await ai.extract_questions_from_image(request.image_base64, request.mime_type)
    if not questions:
        raise AIGenerationFailure("No questions could be read from the image")
    return await repo.add_questions(user_id, assignment_id, questions, image_url=request.image_url)


# --- Step solver -------------------------------------------------------------

STEPS_PATH = "/v1/assignments/{assignment_id}/questions/{question_index}/steps"


@router.get(STEPS_PATH, response_model=StepProgressResponse)
async def get_steps(
    assignment_id: str,
    question_index: int,
    cursor: Optional[int] = None,
    user_id: str = Depends(get_user_id),
    solver: StepSolver = Depends(get_solver),
):
    progress = await solver.progress(user_id, assignment_id, question_index, cursor)
    return StepProgressResponse.from_progress(progress)


@router.post(STEPS_PATH + "/generate", response_model=StepProgressResponse)
async def generate_step(
    assignment_id: str,
    question_index: int,
    request: GenerateStepRequest,
    user_id: str = Depends(enforce_ai_quota),
    store: DocumentStore = Depends(get_store),
    solver: StepSolver = Depends(get_solver),
):
    mode = request.mode or (await SettingsRepository(store).get_or_create(user_id)).default_ai_mode
    logger.info(f"[Steps] Generate {assignment_id}#{question_index} mode={mode}")
    progress = await solver.generate_next_step(user_id, assignment_id, question_index, mode)
    return StepProgressResponse.from_progress(progress)


@router.post(STEPS_PATH + "/confirm", response_model=StepProgressResponse)
async def confirm_step(
    assignment_id: str,
    question_index: int,
    request: ConfirmStepRequest,
    user_id: str = Depends(get_user_id),
    solver: StepSolver = Depends(get_solver),
):
    progress = await solver.confirm_step(user_id, assignment_id, question_index, request.cursor)
    return StepProgressResponse.from_progress(progress)


# --- Subjects & topics -------------------------------------------------------

@router.get("/v1/subjects", response_model=list[Subject])
async def list_subjects(
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await SubjectRepository(store).list_for_user(user_id, order_by="name")


@router.post("/v1/subjects", response_model=Subject, status_code=status.HTTP_201_CREATED)
async def create_subject(
    request: SubjectCreate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await SubjectRepository(store).create(Subject(user_id=user_id, **request.model_dump()))


@router.delete("/v1/subjects/{subject_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subject(
    subject_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    await SubjectRepository(store).delete(user_id, subject_id)


@router.get("/v1/subjects/{subject_id}/topics", response_model=list[Topic])
async def list_topics(
    subject_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    await SubjectRepository(store).get(user_id, subject_id)
    return await TopicRepository(store).list_for_subject(user_id, subject_id)


@router.post("/v1/subjects/{subject_id}/topics", response_model=Topic, status_code=status.HTTP_201_CREATED)
async def create_topic(
    subject_id: str,
    request: TopicCreate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    await SubjectRepository(store).get(user_id, subject_id)
    return await TopicRepository(store).create(
        Topic(user_id=user_id, subject_id=subject_id, **request.model_dump())
    )


@router.delete("/v1/topics/{topic_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_topic(
    topic_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    await TopicRepository(store).delete(user_id, topic_id)


# --- Study hub ---------------------------------------------------------------

@router.get("/v1/topics/{topic_id}/hub", response_model=StudyHub)
async def get_study_hub(
    topic_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    await TopicRepository(store).get(user_id, topic_id)
    return await StudyHubRepository(store).get_or_create(user_id, topic_id)


@router.post("/v1/topics/{topic_id}/notes", response_model=StudyHub)
async def generate_notes(
    topic_id: str,
    request: NotesRequest,
    user_id: str = Depends(enforce_ai_quota),
    store: DocumentStore = Depends(get_store),
    ai: StudyAI = Depends(get_ai),
):
    topic = await TopicRepository(store).get(user_id, topic_id)
    notes = await ai.generate_study_notes(topic.name, request.material)
    return await StudyHubRepository(store).save_notes(user_id, topic_id, notes)


@router.post("/v1/topics/{topic_id}/flashcards", response_model=FlashcardsResponse)
async def generate_flashcards(
    topic_id: str,
    request: FlashcardsRequest,
    user_id: str = Depends(enforce_ai_quota),
    store: DocumentStore = Depends(get_store),
    ai: StudyAI = Depends(get_ai),
):
    topic = await TopicRepository(store).get(user_id, topic_id)
    cards = await ai.generate_flashcards(topic.name, request.material, request.count)
    if not cards:
        raise AIGenerationFailure("The response contained no usable flashcards")
    hub = await StudyHubRepository(store).save_flashcards(user_id, topic_id, cards, append=request.append)
    return FlashcardsResponse(generated=cards, hub=hub)


@router.post("/v1/topics/{topic_id}/practice", response_model=PracticeResponse)
async def generate_practice(
    topic_id: str,
    request: PracticeRequest,
    user_id: str = Depends(enforce_ai_quota),
    store: DocumentStore = Depends(get_store),
    ai: StudyAI = Depends(get_ai),
):
    """Generate practice questions on demand, steered toward tracked weak skills."""
    topic = await TopicRepository(store).get(user_id, topic_id)
    weak_skills = []
    if request.focus_weak_skills:
        tracked = await WeakSkillRepository(store).list_for_user(user_id, topic_id=topic_id)
        weak_skills = [s.skill for s in tracked]

    questions = await ai.generate_practice_questions(
        topic.name, request.difficulty, request.count, weak_skills
    )
    if not questions:
        raise AIGenerationFailure("The response contained no numbered questions")
    logger.info(f"[Practice] Generated {len(questions)} questions for topic {topic_id}")
    return PracticeResponse(topic_id=topic_id, questions=questions)


@router.post("/v1/topics/{topic_id}/weak-skills", response_model=WeakSkillsResponse)
async def detect_weak_skills(
    topic_id: str,
    request: WeakSkillsRequest,
    user_id: str = Depends(enforce_ai_quota),
    store: DocumentStore = Depends(get_store),
    ai: StudyAI = Depends(get_ai),
):
    topic = await TopicRepository(store).get(user_id, topic_id)
    detected = await ai.detect_weak_skills(topic.name, request.incorrect_answers)
    recorded = await WeakSkillRepository(store).record(user_id, topic_id, detected)
    return WeakSkillsResponse(detected=detected, recorded=recorded)


@router.post("/v1/tutor/ask", response_model=AskResponse)
async def ask_tutor(
    request: AskRequest,
    user_id: str = Depends(enforce_ai_quota),
    store: DocumentStore = Depends(get_store),
    ai: StudyAI = Depends(get_ai),
):
    mode = request.mode or (await SettingsRepository(store).get_or_create(user_id)).default_ai_mode
    response = await ai.generate_ai_response(request.prompt, mode, request.context)
    return AskResponse(mode=mode, response=response)


# --- Lectures ----------------------------------------------------------------

@router.get("/v1/lectures", response_model=list[Lecture])
async def list_lectures(
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await LectureRepository(store).list_recent(user_id)


@router.post("/v1/lectures", response_model=Lecture, status_code=status.HTTP_201_CREATED)
async def log_lecture(
    request: LectureCreate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    fields = request.model_dump(exclude_none=True)
    return await LectureRepository(store).create(Lecture(user_id=user_id, **fields))


@router.get("/v1/lectures/{lecture_id}", response_model=Lecture)
async def get_lecture(
    lecture_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await LectureRepository(store).get(user_id, lecture_id)


@router.patch("/v1/lectures/{lecture_id}", response_model=Lecture)
async def update_lecture(
    lecture_id: str,
    request: LectureUpdate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    repo = LectureRepository(store)
    if not changes:
        return await repo.get(user_id, lecture_id)
    return await repo.update_fields(user_id, lecture_id, changes)


@router.delete("/v1/lectures/{lecture_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_lecture(
    lecture_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    await LectureRepository(store).delete(user_id, lecture_id)


@router.post("/v1/lectures/{lecture_id}/summarize", response_model=Lecture)
async def summarize_lecture(
    lecture_id: str,
    user_id: str = Depends(enforce_ai_quota),
    store: DocumentStore = Depends(get_store),
    ai: StudyAI = Depends(get_ai),
):
    repo = LectureRepository(store)
    lecture = await repo.get(user_id, lecture_id)
    if not lecture.transcript or not lecture.transcript.strip():
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Lecture has no transcript to summarize")

    summary, key_points = await ai.summarize_lecture(lecture.title, lecture.transcript)
    return await repo.update_fields(user_id, lecture_id, {"summary": summary, "key_points": key_points})


# --- Practice tests ----------------------------------------------------------

@router.get("/v1/tests", response_model=list[PracticeTest])
async def list_practice_tests(
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await PracticeTestRepository(store).list_for_user(user_id, order_by="created_at")


@router.post("/v1/tests", response_model=PracticeTest, status_code=status.HTTP_201_CREATED)
async def create_practice_test(
    request: PracticeTestCreate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    if request.topic_id:
        await TopicRepository(store).get(user_id, request.topic_id)
    return await PracticeTestRepository(store).create(PracticeTest(user_id=user_id, **request.model_dump()))


@router.post("/v1/tests/{test_id}/complete", response_model=PracticeTest)
async def complete_practice_test(
    test_id: str,
    request: PracticeTestComplete,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await PracticeTestRepository(store).complete(user_id, test_id, request.score)


@router.delete("/v1/tests/{test_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_practice_test(
    test_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    await PracticeTestRepository(store).delete(user_id, test_id)


# --- Settings & dashboard ----------------------------------------------------

@router.get("/v1/settings", response_model=UserSettings)
async def get_settings(
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await SettingsRepository(store).get_or_create(user_id)


@router.patch("/v1/settings", response_model=UserSettings)
async def update_settings(
    request: SettingsUpdate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    repo = SettingsRepository(store)
    if not changes:
        return await repo.get_or_create(user_id)
    return await repo.update(user_id, changes)


@router.get("/v1/dashboard", response_model=Dashboard)
async def get_dashboard(
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await build_dashboard(store, user_id)


# ============================================================================
# LIFECYCLE & APP
# ============================================================================

def create_app(store: Optional[DocumentStore] = None, text_service=None) -> FastAPI:
    """
    Build the application. Tests pass an in-memory store and a scripted text
    service; production builds both from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting up StudyApe Backend...")

        app.state.store = store or create_store(
            settings.store_backend, settings.database_url, settings.database_pool_size
        )
        try:
            await app.state.store.connect()
            logger.info(f"Document store ready ({type(app.state.store).__name__})")
        except Exception as e:
            logger.error(f"Failed to initialize document store: {e}")
            raise

        app.state.ai = StudyAI(
            text_service or build_text_service(),
            timeout_seconds=settings.ai_timeout_seconds,
        )
        app.state.solver = StepSolver(app.state.store, app.state.ai)

        if settings.redis_url:
            try:
                await init_rate_limiter(settings.redis_url, RateLimitConfig(
                    limit=settings.rate_limit_requests,
                    window_seconds=settings.rate_limit_window
                ))
                logger.info(f"Rate limiter initialized ({settings.rate_limit_requests}/{settings.rate_limit_window}s)")
            except Exception as e:
                logger.warning(f"Rate limiter unavailable (Redis connection failed): {e}")

        yield

        logger.info("Shutting down...")
        await close_rate_limiter()
        await app.state.store.close()

    app = FastAPI(
        title="StudyApe API",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(NotFound, not_found_handler)
    app.add_exception_handler(StepStateError, step_state_handler)
    app.add_exception_handler(PersistenceFailure, persistence_handler)
    app.add_exception_handler(AIGenerationFailure, ai_failure_handler)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=settings.backend_port, reload=True)
