"""Prompt templates for clinical extraction and summarization."""
from typing import Iterable

BASE_FIELDS = [
    "chief_complaint",
    "symptoms",
    "past_medical_history",
    "medications",
    "allergies",
    "family_history",
    "social_history",
]


def get_extraction_system_prompt(extra_fields: Iterable[str] = ()) -> str:
    """Generate the system prompt for structured field extraction."""
    fields = BASE_FIELDS + [f for f in extra_fields if f not in BASE_FIELDS]
    field_lines = "\n".join(f"- {name}" for name in fields)
    return f"""You extract structured clinical information from a patient's answers
during a phone intake interview.

Only use these field names:
{field_lines}

Rules:
- Only include a field if the PATIENT actually stated it. Never infer or invent.
- If the patient says they have none (e.g. "no allergies"), set the field to "none".
- Use short strings, or lists of short strings for multiple items.
- Omit fields that were not mentioned.

Respond with a single JSON object mapping field name to value. Respond with {{}}
if nothing relevant was said."""


def get_extraction_user_prompt(text: str) -> str:
    return f"Extract clinical fields from this exchange:\n\n{text}"


SUMMARY_SYSTEM_PROMPT = """You are a warm, empathetic clinical intake assistant.
Summarize what the patient shared in two or three short spoken sentences,
addressed to the patient ("You mentioned..."). Do not ask any questions and do
not give medical advice.

Respond in JSON: {"summary": "..."}"""


def get_summary_user_prompt(transcript: str) -> str:
    return f"Conversation transcript:\n\n{transcript}"
