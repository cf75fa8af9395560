"""LLM-backed clinical extraction and summarization."""
import json
import logging
from typing import Any, Dict, Iterable, Optional

from openai import AsyncOpenAI

from app.core.config import settings
from app.services.extraction.prompt import (
    SUMMARY_SYSTEM_PROMPT,
    get_extraction_system_prompt,
    get_extraction_user_prompt,
    get_summary_user_prompt,
)
from app.services.session.coverage import has_value

logger = logging.getLogger(__name__)


class ClinicalExtractionService:
    """Turns free text into structured clinical fields and summaries."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.openai_extraction_model

    async def _complete_json(self, system_prompt: str, user_prompt: str, temperature: float) -> Dict[str, Any]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or "{}"
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            logger.warning(f"[EXTRACTION] Model returned invalid JSON: {content[:200]}")
            return {}
        if not isinstance(parsed, dict):
            logger.warning(f"[EXTRACTION] Model returned non-object JSON: {type(parsed).__name__}")
            return {}
        return parsed

    async def extract_fields(self, text: str, extra_fields: Iterable[str] = ()) -> Dict[str, Any]:
        """
        Extract clinical fields mentioned in ``text``.

        Returns:
            Mapping of field name to value, with empty values dropped
        """
        if not text.strip():
            return {}
        parsed = await self._complete_json(
            get_extraction_system_prompt(extra_fields),
            get_extraction_user_prompt(text),
            temperature=0.0,
        )
        fields = {key: value for key, value in parsed.items() if has_value(value)}
        logger.info(f"[EXTRACTION] Extracted fields: {sorted(fields)}")
        return fields

    async def summarize(self, transcript: str) -> str:
        """Short empathetic summary of the conversation so far."""
        parsed = await self._complete_json(
            SUMMARY_SYSTEM_PROMPT,
            get_summary_user_prompt(transcript),
            temperature=0.5,
        )
        summary = parsed.get("summary", "")
        return summary.strip() if isinstance(summary, str) else ""
