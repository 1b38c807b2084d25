"""
Generative text service and the study-aid prompts built on it.

GeminiTextService is the only place that talks to the model. StudyAI
composes prompts, bounds every call with a timeout and turns the raw text
into domain values through the parsers. Any failure, including a blank
response, surfaces as AIGenerationFailure.
"""

import asyncio
import logging
from typing import Optional

from langchain_core.messages import HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from config import settings
from errors import AIGenerationFailure
from models import Difficulty, ExplanationMode, Flashcard, IncorrectAnswer
from parsers import (
    parse_flashcards,
    parse_lecture_summary,
    parse_numbered_items,
    parse_skill_lines,
)

logger = logging.getLogger(__name__)


# ============================================================================
# EXPLANATION MODES
# ============================================================================

SYSTEM_PROMPTS: dict[str, str] = {
    "guided": """You are a Socratic tutor. Help the student learn by asking questions and guiding them to discover the answer themselves. Never give the answer directly. Instead:
- Ask probing questions
- Guide the student through the reasoning
- Help them spot their misconceptions
- Encourage critical thinking
- Offer hints when they are stuck, but never a full solution
- Be patient and supportive""",

    "balanced": """You are a helpful study assistant. Help the student understand the concepts while giving clear explanations. You should:
- Explain concepts step by step
- Give examples when they help
- Ask occasional questions to check understanding
- Point out common mistakes
- Give hints before full solutions
- Balance guidance with direct help""",

    "direct": """You are a clear and direct tutor. Help the student understand through detailed step-by-step explanations. You should:
- Provide complete step-by-step solutions
- Explain each step clearly
- Show all work and reasoning
- Highlight the important concepts
- Point out common mistakes
- Be thorough and precise""",
}


# ============================================================================
# MODEL CLIENT
# ============================================================================

class GeminiTextService:
    """Stateless Gemini client: one composed prompt in, plain text out."""

    def __init__(
        self,
        api_key: str,
        text_model: str,
        vision_model: str,
        temperature: float = 0.3,
    ):
        self.text_llm = ChatGoogleGenerativeAI(
            model=text_model,
            google_api_key=api_key,
            temperature=temperature
        )
        self.vision_llm = ChatGoogleGenerativeAI(
            model=vision_model,
            google_api_key=api_key,
            temperature=0
        )

    async def generate(
        self,
        prompt: str,
        image_base64: Optional[str] = None,
        mime_type: str = "image/jpeg",
    ) -> str:
        if image_base64:
            message = HumanMessage(
                content=[
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_base64}"}}
                ]
            )
            result = await self.vision_llm.ainvoke([message])
        else:
            result = await self.text_llm.ainvoke(prompt)
        return _content_text(result.content)


def _content_text(content) -> str:
    # Multimodal responses come back as a list of parts
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def build_text_service() -> GeminiTextService:
    return GeminiTextService(
        api_key=settings.google_api_key,
        text_model=settings.text_model,
        vision_model=settings.vision_model,
        temperature=settings.ai_temperature,
    )


# ============================================================================
# PROMPTS
# ============================================================================

def build_step_prompt(question: str, mode: ExplanationMode, previous_steps: list[str]) -> str:
    """System instruction, then the question, then prior steps as context."""
    prompt = f"{SYSTEM_PROMPTS[mode]}\n\nQuestion: {question}\n\n"
    if previous_steps:
        prompt += "Previous steps completed:\n" + "\n".join(previous_steps) + "\n\n"
        prompt += "Provide the NEXT single step only. Explain it clearly but concisely."
    else:
        prompt += "Provide the FIRST step only to solve this problem. Do not solve the entire problem."
    return prompt


EXTRACT_QUESTIONS_PROMPT = """Extract all questions from this image. For each question:
1. Number the questions
2. Include all parts (a, b, c, etc.)
3. Preserve mathematical notation
4. Include any context or given information

Format each question clearly and return them as a numbered list, one question per number."""


# ============================================================================
# STUDY AIDS
# ============================================================================

class StudyAI:
    """Prompt construction and response parsing over a text service."""

    def __init__(self, service, timeout_seconds: float = 30.0):
        self.service = service
        self.timeout_seconds = timeout_seconds

    async def _complete(self, label: str, prompt: str, **kwargs) -> str:
        try:
            text = await asyncio.wait_for(
                self.service.generate(prompt, **kwargs),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"[{label}] Timed out after {self.timeout_seconds}s")
            raise AIGenerationFailure(f"{label} timed out") from e
        except AIGenerationFailure:
            raise
        except Exception as e:
            logger.error(f"[{label}] Error: {e}", exc_info=True)
            raise AIGenerationFailure(f"{label} failed: {str(e)[:200]}") from e

        if not text or not text.strip():
            logger.warning(f"[{label}] Empty response")
            raise AIGenerationFailure(f"{label} returned no content")
        return text.strip()

    async def generate_step_explanation(
        self,
        question: str,
        mode: ExplanationMode,
        previous_steps: list[str],
    ) -> str:
        logger.info(f"[StepExplanation] mode={mode}, prior_steps={len(previous_steps)}")
        return await self._complete("StepExplanation", build_step_prompt(question, mode, previous_steps))

    async def generate_ai_response(
        self,
        prompt: str,
        mode: ExplanationMode = "balanced",
        context: Optional[str] = None,
    ) -> str:
        system = SYSTEM_PROMPTS[mode]
        full_prompt = (
            f"{system}\n\nContext: {context}\n\nUser: {prompt}"
            if context
            else f"{system}\n\nUser: {prompt}"
        )
        return await self._complete("TutorResponse", full_prompt)

    async def extract_questions_from_image(
        self,
        image_base64: str,
        mime_type: str = "image/jpeg",
    ) -> list[str]:
        text = await self._complete(
            "ExtractQuestions",
            EXTRACT_QUESTIONS_PROMPT,
            image_base64=image_base64,
            mime_type=mime_type,
        )
        questions = parse_numbered_items(text)
        logger.info(f"[ExtractQuestions] Parsed {len(questions)} questions")
        return questions

    async def generate_study_notes(self, topic_name: str, material: Optional[str] = None) -> str:
        prompt = f'{SYSTEM_PROMPTS["direct"]}\n\nCreate comprehensive study notes for the topic: "{topic_name}"\n\n'
        if material:
            prompt += f"Based on the following material:\n{material}\n\n"
        prompt += """Include:
1. Key Concepts (clearly defined)
2. Important Examples (with explanations)
3. Common Mistakes (and how to avoid them)
4. Study Tips (how to master this topic)

Format the notes in a clear, organized manner with markdown."""
        return await self._complete("StudyNotes", prompt)

    async def generate_practice_questions(
        self,
        topic_name: str,
        difficulty: Difficulty = "medium",
        count: int = 1,
        weak_skills: Optional[list[str]] = None,
    ) -> list[str]:
        prompt = f'{SYSTEM_PROMPTS["balanced"]}\n\nGenerate {count} {difficulty} practice question(s) for the topic: "{topic_name}"\n\n'
        if weak_skills:
            prompt += f"Focus on these weak areas: {', '.join(weak_skills)}\n\n"
        prompt += """Requirements:
- Each question should test understanding, not just memorization
- Include variety in question types
- Make questions challenging but fair
- Number each question as "1.", "2.", ... at the start of a line

Provide only the questions, no solutions."""
        text = await self._complete("PracticeQuestions", prompt)
        return parse_numbered_items(text)[:count]

    async def generate_flashcards(
        self,
        topic_name: str,
        material: Optional[str] = None,
        count: int = 10,
    ) -> list[Flashcard]:
        prompt = f'{SYSTEM_PROMPTS["direct"]}\n\nCreate {count} flashcards for the topic: "{topic_name}"\n\n'
        if material:
            prompt += f"Based on this material:\n{material}\n\n"
        prompt += """Format each flashcard as:
FRONT: [question or concept]
BACK: [answer or explanation]

Make them concise but comprehensive. Focus on key concepts, definitions, and important relationships."""
        text = await self._complete("Flashcards", prompt)
        cards = parse_flashcards(text)
        logger.info(f"[Flashcards] Parsed {len(cards)} cards for {topic_name!r}")
        return cards

    async def detect_weak_skills(
        self,
        topic_name: str,
        incorrect_answers: list[IncorrectAnswer],
    ) -> list[str]:
        if not incorrect_answers:
            return []
        answers = "\n\n".join(
            f"{i + 1}. Question: {a.question}\n   User Answer: {a.user_answer}\n   Correct Answer: {a.correct_answer}"
            for i, a in enumerate(incorrect_answers)
        )
        prompt = f"""Analyze these incorrect answers from a test on "{topic_name}" and identify specific weak skills or concepts:

{answers}

Identify 3-5 specific skills or concepts the student needs to work on. Be specific and actionable.
List only the skill names, one per line."""
        text = await self._complete("WeakSkills", prompt)
        return parse_skill_lines(text)

    async def summarize_lecture(self, title: str, transcript: str) -> tuple[str, list[str]]:
        prompt = f"""{SYSTEM_PROMPTS["direct"]}

Summarize this lecture titled "{title}" for a student's revision.

Transcript:
{transcript}

Respond in this EXACT format:
SUMMARY: one or two short paragraphs
KEY POINTS:
1. first key point
2. second key point"""
        text = await self._complete("LectureSummary", prompt)
        return parse_lecture_summary(text)
