"""Centralized prompt templates for fact extraction and summary generation."""
import json
from typing import Dict, List

from summarizer.models.facts import ExtractedFacts, StyleGuide

ANONYMIZATION_RULE = (
    'NEVER include individual names - use generic role terms like "the instructor", '
    '"the teacher", "the speaker", "a student", "a participant"'
)

FACT_SCHEMA = """{
  "class_title": "string (optional)",
  "date_or_series": "string (optional)",
  "audience": "string (optional)",
  "learning_objectives": ["string array"],
  "key_takeaways": ["string array - REQUIRED"],
  "topics": ["string array - REQUIRED"],
  "techniques": ["string array - REQUIRED"],
  "action_items": ["string array"],
  "notable_quotes": ["string array"],
  "open_questions": ["string array"],
  "timestamp_refs": ["string array"]
}"""

SUMMARY_STRUCTURE = """# {title}

## Synopsis
[Exactly 4 sentences on what the session covers and why it matters]

## Learning Objectives
[Bulleted list]

## Key Takeaways
[Bulleted list]

## Topics
[Bulleted list]

## Techniques
[Bulleted list]

## Notable Quotes
[Bulleted list]

## Open Questions
[Bulleted list]"""


def style_section(style_guide: StyleGuide) -> str:
    """Render the style guide block shared by every prompt."""
    tone = style_guide.tone_settings
    keywords = ", ".join(style_guide.keywords) if style_guide.keywords else "none"
    lines = [
        "STYLE GUIDE:",
        style_guide.instructions_md.strip() or "No specific style instructions.",
        "",
        "Tone Settings:",
        f"- Formality: {tone.formality}/100 (0=casual, 100=formal)",
        f"- Enthusiasm: {tone.enthusiasm}/100 (0=calm, 100=energetic)",
        f"- Technical Level: {tone.technicality}/100 (0=simple, 100=technical)",
        "",
        f"Keywords to emphasize: {keywords}",
    ]

    phrases = style_guide.example_phrases
    if phrases:
        groups = [
            ("Preferred openings", phrases.preferred_openings),
            ("Preferred transitions", phrases.preferred_transitions),
            ("Preferred conclusions", phrases.preferred_conclusions),
            ("Avoid", phrases.avoid_phrases),
        ]
        rendered = [f"- {label}: {'; '.join(items)}" for label, items in groups if items]
        if rendered:
            lines += ["", "Example phrases:"] + rendered

    return "\n".join(lines)


def _messages(system: str, user: str) -> List[Dict[str, str]]:
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


class FactExtractionPrompt:
    """Prompt template for extracting structured facts from one chunk."""

    SYSTEM_MESSAGE = "You extract structured facts from transcripts. Respond with valid JSON only."

    @staticmethod
    def build(chunk_text: str, style_guide: StyleGuide, chunk_index: int) -> List[Dict[str, str]]:
        """
        Build fact extraction messages.

        Args:
            chunk_text: Text of the chunk
            style_guide: Style guide applied to the extracted wording
            chunk_index: 0-based chunk index (shown 1-based)

        Returns:
            Chat messages
        """
        prompt = f"""You are extracting structured facts from a teaching transcript chunk. Extract information according to this JSON schema and style guide.

{style_section(style_guide)}

JSON SCHEMA:
{FACT_SCHEMA}

INSTRUCTIONS:
1. Extract facts ONLY from this chunk (chunk {chunk_index + 1})
2. Return ONLY valid JSON - no explanations or markdown
3. Include key_takeaways, topics, and techniques (required fields)
4. Use empty arrays for fields with no relevant content
5. Apply the style guide to your extracted content
6. {ANONYMIZATION_RULE}

CHUNK TEXT:
{chunk_text}

JSON RESPONSE:"""

        return _messages(FactExtractionPrompt.SYSTEM_MESSAGE, prompt)


class RawSummaryPrompt:
    """Prompt template for a plain factual summary built from merged facts."""

    SYSTEM_MESSAGE = "You write clear, factual markdown summaries without stylistic flourishes."

    @staticmethod
    def build(title: str, facts: ExtractedFacts) -> List[Dict[str, str]]:
        facts_json = json.dumps(facts.model_dump(), indent=2, ensure_ascii=False)
        prompt = f"""Generate a factual markdown summary from the extracted facts below. Use clear, professional language with no particular voice.

DOCUMENT: {title}

EXTRACTED FACTS:
{facts_json}

REQUIRED STRUCTURE (use this exact format):
{SUMMARY_STRUCTURE.format(title=title)}

INSTRUCTIONS:
1. Include ALL sections in this order
2. Use only the extracted facts
3. If a section has no content, write "No specific [section name] identified"
4. {ANONYMIZATION_RULE}

MARKDOWN SUMMARY:"""

        return _messages(RawSummaryPrompt.SYSTEM_MESSAGE, prompt)


class StyledSummaryPrompt:
    """Prompt template for the style-guided summary."""

    SYSTEM_MESSAGE = (
        "You are a content stylist. You rewrite factual summaries in an author's voice "
        "without adding or removing facts."
    )

    @staticmethod
    def build(title: str, facts: ExtractedFacts, raw_summary: str, style_guide: StyleGuide) -> List[Dict[str, str]]:
        """
        Build styled summary messages.

        Args:
            title: Document title
            facts: Merged facts
            raw_summary: Factual summary to restyle
            style_guide: Target voice

        Returns:
            Chat messages
        """
        facts_json = json.dumps(facts.model_dump(), indent=2, ensure_ascii=False)
        prompt = f"""Rewrite the factual summary below in the author's voice described by the style guide. Keep every fact and the same number of items per section.

{style_section(style_guide)}

DOCUMENT: {title}

EXTRACTED FACTS:
{facts_json}

FACTUAL SUMMARY:
{raw_summary}

REQUIRED STRUCTURE (use this exact format):
{SUMMARY_STRUCTURE.format(title=title)}

INSTRUCTIONS:
1. Follow the exact structure above - ALL sections must be included in this order
2. Apply the style guide throughout, ESPECIALLY in the synopsis
3. Focus the synopsis on benefits and practical outcomes
4. If a section has no content, write "No specific [section name] identified"
5. {ANONYMIZATION_RULE}

MARKDOWN SUMMARY:"""

        return _messages(StyledSummaryPrompt.SYSTEM_MESSAGE, prompt)


class CombinedSummaryPrompt:
    """Prompt template asking for the raw and the styled summary in one JSON response."""

    SYSTEM_MESSAGE = "You are a professional transcript summarizer and content stylist. Respond with valid JSON only."

    @staticmethod
    def build(title: str, document_text: str, style_guide: StyleGuide) -> List[Dict[str, str]]:
        structure = json.dumps(SUMMARY_STRUCTURE.format(title=title))
        prompt = f"""Generate BOTH a raw factual summary AND a stylized version of the transcript below in a single response.

DOCUMENT: {title}

TRANSCRIPT:
{document_text}

{style_section(style_guide)}

REQUIRED OUTPUT FORMAT:
Respond with ONLY valid JSON in this exact structure:
{{
  "rawSummary": {structure},
  "styledSummary": {structure}
}}

INSTRUCTIONS:
1. rawSummary: factual, clear, professional language without specific styling
2. styledSummary: the same facts and the same number of items per section, in the author's voice
3. Notable Quotes must quote or closely paraphrase the transcript; never leave it empty
4. {ANONYMIZATION_RULE}
5. Use proper JSON escaping (\\n for newlines), no markdown fences, no extra text

JSON RESPONSE:"""

        return _messages(CombinedSummaryPrompt.SYSTEM_MESSAGE, prompt)
