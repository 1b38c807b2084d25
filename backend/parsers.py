"""
Best-effort parsers for unstructured model output.

The models are asked for a specific layout, but nothing enforces it, so each
parser documents the grammar it accepts and returns an empty list when the
text does not follow it rather than guessing.

Numbered list grammar::

    item    := LINE_START number ("." | ")") WS text continuation*
    continuation := any following line that does not start a new item

Text before the first item (preambles like "Here are your questions:") is
discarded. Decimals such as "3.5" inside a line never start an item.

Flashcard grammar::

    card := "FRONT:" text "BACK:" text      (labels case-insensitive)

Cards missing either side, or with an empty side, are dropped.
"""

import re

from models import Flashcard

NUMBERED_ITEM = re.compile(r"^\s*(?:\*\*)?\d+[.)](?:\*\*)?\s+", re.MULTILINE)
FRONT_LABEL = re.compile(r"\bFRONT\s*:", re.IGNORECASE)
BACK_LABEL = re.compile(r"\bBACK\s*:", re.IGNORECASE)
SKILL_PREFIX = re.compile(r"^\s*(?:[-*•]+|\d+[.)])\s*")
KEY_POINTS_LABEL = re.compile(r"^\s*(?:\*\*)?KEY\s+POINTS\s*:(?:\*\*)?", re.IGNORECASE | re.MULTILINE)
SUMMARY_LABEL = re.compile(r"^\s*(?:\*\*)?SUMMARY\s*:(?:\*\*)?", re.IGNORECASE)


def parse_numbered_items(text: str) -> list[str]:
    """Split a numbered list into its items."""
    if not text:
        return []
    starts = list(NUMBERED_ITEM.finditer(text))
    items = []
    for i, match in enumerate(starts):
        end = starts[i + 1].start() if i + 1 < len(starts) else len(text)
        item = text[match.end():end].strip()
        if item:
            items.append(item)
    return items


def parse_flashcards(text: str) -> list[Flashcard]:
    """Extract FRONT/BACK pairs in order of appearance."""
    if not text:
        return []
    cards = []
    blocks = FRONT_LABEL.split(text)[1:]  # [0] is whatever preceded the first FRONT:
    for block in blocks:
        sides = BACK_LABEL.split(block, maxsplit=1)
        if len(sides) != 2:
            continue
        front, back = (side.strip().strip("*").strip() for side in sides)
        if front and back:
            cards.append(Flashcard(front=front, back=back))
    return cards


def parse_skill_lines(text: str) -> list[str]:
    """One skill per line, with bullets and numbering removed."""
    if not text:
        return []
    skills = []
    for line in text.splitlines():
        skill = SKILL_PREFIX.sub("", line).strip().strip("*").strip()
        if skill:
            skills.append(skill)
    return skills


def parse_lecture_summary(text: str) -> tuple[str, list[str]]:
    """
    Split a "SUMMARY: ... KEY POINTS: 1. ..." response.

    Without a KEY POINTS section the whole text is the summary and there are
    no key points.
    """
    if not text:
        return "", []
    sections = KEY_POINTS_LABEL.split(text, maxsplit=1)
    summary = SUMMARY_LABEL.sub("", sections[0]).strip()
    key_points = parse_numbered_items(sections[1]) if len(sections) == 2 else []
    return summary, key_points
