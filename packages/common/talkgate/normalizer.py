"""Transcript clean-up applied before intent resolution."""

import re
from typing import Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

# Recognizer mishearings seen often enough to fix unconditionally
MISHEARINGS = [
    ("the plane number ", "play number "),
    ("the plane ", "play "),
]

FILLER_PREFIXES = ("um ", "uh ", "hey ", "ok ", "okay ", "please ", "so ")

NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19, "twenty": 20,
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
}

ORDINALS = frozenset({"first", "second", "third", "fourth", "fifth"})

SELECTION_PREFIXES = (
    "play number ",
    "play option ",
    "number ",
    "option ",
    "choice ",
    "play ",
)


class TextNormalizer:
    """Lower-cases, corrects and strips conversational filler from transcripts."""

    def __init__(self, corrections: Optional[Dict[str, str]] = None):
        self.corrections = {k.lower(): v for k, v in (corrections or {}).items()}

    def normalize(self, text: str) -> str:
        result = text.lower().strip()
        result = re.sub(r"[^\w\s'-]", " ", result)
        result = re.sub(r"\s+", " ", result).strip()

        for wrong, right in self.corrections.items():
            result = result.replace(wrong, right)

        padded = result + " "
        for wrong, right in MISHEARINGS:
            padded = padded.replace(wrong, right)
        result = padded.strip()

        if result.startswith("but "):
            result = "play " + result[4:]

        stripped = True
        while stripped:
            stripped = False
            for prefix in FILLER_PREFIXES:
                if result.startswith(prefix) and len(result) > len(prefix):
                    result = result[len(prefix):].lstrip()
                    stripped = True

        if result != text:
            logger.debug("Transcript normalized", original=text, normalized=result)
        return result


def parse_number(text: str) -> Optional[int]:
    """Parse a spoken 1-based index ("2", "number two", "second").

    The number has to be the whole utterance once a selection prefix is
    removed, so "play one direction" is not read as index 1.
    """
    text = text.strip().lower()
    for prefix in SELECTION_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix):].strip()
            break

    if text.isdigit():
        value = int(text)
        return value if 1 <= value <= 99 else None

    if text.endswith(" one") and text[:-4] in ORDINALS:
        text = text[:-4]
    return NUMBER_WORDS.get(text)
