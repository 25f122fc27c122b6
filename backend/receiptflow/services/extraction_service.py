"""Receipt extraction stage.

This module wraps the external document-understanding capability.  A
``DocumentReader`` sends a fetchable PDF URL plus an instruction to a
language model and returns the raw JSON text it produced; the
``ReceiptExtractionStage`` turns that text into a ``ReceiptDraft``.

The stage never writes to the record store and never retries: retry and
backoff belong to the worker substrate.  Every failure of the capability,
including unparseable or type-invalid output and an entirely empty
result, is surfaced as ``ExtractionFailed`` carrying the underlying
message.

Diagnostic logging can be enabled by setting ``EXTRACTION_DEBUG=1``.
"""

from __future__ import annotations

import abc
import json
import logging
import time
from typing import Any, Dict, Optional

from openai import AsyncOpenAI
from pydantic import ValidationError

from receiptflow.core.config import settings
from receiptflow.core.errors import ExtractionFailed
from receiptflow.models.schemas import ReceiptDraft
from receiptflow.utils.prompts import get_default_extraction_prompt, get_extraction_system_prompt

logger = logging.getLogger(__name__)


class DocumentReader(abc.ABC):
    """Contract for a document-understanding capability."""

    name: str = "base"

    @abc.abstractmethod
    async def read(self, file_url: str, instructions: str) -> str:
        """Return the model's raw text answer for the document at ``file_url``."""


class OpenAIDocumentReader(DocumentReader):
    """Reads PDFs through the OpenAI Responses API (``input_file`` by URL)."""

    name = "openai"

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
    ) -> None:
        self._client = client or AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.EXTRACTION_TIMEOUT_SECONDS,
            max_retries=0,
        )
        self.model = model or settings.EXTRACTION_MODEL
        self.max_output_tokens = max_output_tokens or settings.EXTRACTION_MAX_OUTPUT_TOKENS

    async def read(self, file_url: str, instructions: str) -> str:
        t0 = time.monotonic()
        response = await self._client.responses.create(
            model=self.model,
            instructions=get_extraction_system_prompt(),
            input=[
                {
                    "role": "user",
                    "content": [
                        {"type": "input_file", "file_url": file_url},
                        {"type": "input_text", "text": instructions},
                    ],
                }
            ],
            text={"format": draft_response_format()},
            max_output_tokens=self.max_output_tokens,
        )
        if settings.EXTRACTION_DEBUG:
            logger.info(
                "[extraction][openai] model=%s latency_ms=%.1f",
                self.model,
                (time.monotonic() - t0) * 1000,
            )
        return response.output_text or ""


def draft_response_format() -> Dict[str, Any]:
    """Structured-output format derived from ``ReceiptDraft`` (camelCase keys)."""
    # Draft fields are optional, which strict mode does not accept
    return {
        "type": "json_schema",
        "name": "ReceiptDraft",
        "schema": ReceiptDraft.model_json_schema(by_alias=True),
        "strict": False,
    }


class ExtractionStage(abc.ABC):
    """Produces a structured draft for a receipt document."""

    @abc.abstractmethod
    async def extract(self, receipt_id: str, file_url: str) -> ReceiptDraft:
        """Return a draft or raise ``ExtractionFailed``."""


class ReceiptExtractionStage(ExtractionStage):
    def __init__(self, reader: DocumentReader, instructions: Optional[str] = None) -> None:
        self._reader = reader
        self._instructions = instructions or get_default_extraction_prompt()

    async def extract(self, receipt_id: str, file_url: str) -> ReceiptDraft:
        logger.info("[extraction] receipt=%s reader=%s", receipt_id, self._reader.name)
        try:
            raw = await self._reader.read(file_url, self._instructions)
        except Exception as exc:
            logger.warning("[extraction] capability failed receipt=%s err=%s", receipt_id, exc)
            raise ExtractionFailed(str(exc), receipt_id=receipt_id) from exc

        try:
            draft = ReceiptDraft.model_validate(json.loads(raw or ""))
        except (ValueError, ValidationError) as exc:
            # json.JSONDecodeError is a ValueError
            logger.warning("[extraction] malformed draft receipt=%s err=%s", receipt_id, exc)
            raise ExtractionFailed(f"Malformed extraction output: {exc}", receipt_id=receipt_id) from exc

        if draft.is_empty():
            raise ExtractionFailed("Extraction returned an empty draft", receipt_id=receipt_id)

        if settings.EXTRACTION_DEBUG:
            logger.info(
                "[extraction] receipt=%s merchant=%s items=%d total=%s",
                receipt_id,
                draft.merchant.name,
                len(draft.items),
                draft.totals.total,
            )
        return draft
