"""Text helpers for LLM responses and keyword matching."""
import re
from typing import List, Optional

_CODE_FENCE_OPEN = re.compile(r"```(?:json|JSON)?\s*")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x0c\x0e-\x1f\x7f]")


def strip_code_fences(response: str) -> str:
    """
    Remove markdown code fences an LLM wrapped around its answer.

    Args:
        response: Raw completion text

    Returns:
        Text without ``` / ```json markers, stripped of outer whitespace
    """
    return _CODE_FENCE_OPEN.sub("", response).replace("```", "").strip()


def extract_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} span in text, or None.

    Braces inside JSON string literals (including escaped quotes) are ignored.

    Args:
        text: Text that may contain a JSON object

    Returns:
        The substring holding the first complete object, or None if there is none
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for position in range(start, len(text)):
            char = text[position]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:position + 1]
        # Unbalanced from this brace on; try the next opening brace
        start = text.find("{", start + 1)
    return None


def remove_control_characters(text: str) -> str:
    """Drop control characters except newline, tab and carriage return."""
    return _CONTROL_CHARS.sub("", text)


def tokenize_query(query: str, min_length: int = 3) -> List[str]:
    """
    Split a query into lower-cased keywords, dropping words shorter than min_length.

    Args:
        query: Free-text query
        min_length: Minimum keyword length (default: 3)

    Returns:
        Keywords in query order, duplicates kept
    """
    return [word for word in query.lower().split() if len(word) >= min_length]


def count_word_matches(word: str, text: str) -> int:
    """Count case-insensitive whole-word occurrences of word in text."""
    pattern = re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)
    return len(pattern.findall(text))


def count_words(text: str) -> int:
    return len(text.split())
