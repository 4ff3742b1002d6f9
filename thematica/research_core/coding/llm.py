"""Remote code extraction through the OpenRouter chat API."""
from __future__ import annotations

import json
import re
import time
from typing import Any

from loguru import logger

from thematica.errors import SourceExtractionError
from thematica.models.themes import InitialCode, SourceContent
from thematica.research_core.coding.base import CodeExtractionStrategy, CodeTarget, code_id
from thematica.services.llm_client import OpenRouterClientAdapter
from thematica.services.logger import log_llm_call
from thematica.services.prompt_store import render_prompt
from thematica.services.rate_limiter import ProviderGuard, call_with_retries

MAX_SOURCE_CHARS = 24000
MAX_EXCERPT_LENGTH = 300
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_codes_payload(text: str) -> list[dict[str, Any]]:
    """Pull the ``codes`` list out of a model reply. Raises ValueError when malformed."""
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("reply contains no JSON object")
    payload = json.loads(cleaned[start : end + 1])
    codes = payload.get("codes") if isinstance(payload, dict) else None
    if not isinstance(codes, list):
        raise ValueError("reply has no 'codes' list")
    return [c for c in codes if isinstance(c, dict)]


class LLMCodeStrategy(CodeExtractionStrategy):
    name = "llm"
    is_remote = True

    def __init__(
        self,
        llm: OpenRouterClientAdapter,
        *,
        model: str,
        guard: ProviderGuard,
        max_tokens: int = 2048,
        retry_max: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self.llm = llm
        self.model = model
        self.guard = guard
        self.max_tokens = max_tokens
        self.retry_max = retry_max
        self.backoff_seconds = backoff_seconds
        self.calls = 0

    async def extract(self, source: SourceContent, target: CodeTarget) -> list[InitialCode]:
        system = render_prompt("coding.system")
        user = render_prompt(
            "coding.user",
            purpose=target.purpose,
            focus=target.focus,
            codes_min=target.minimum,
            codes_max=target.maximum,
            title=source.title or source.id,
            content=source.content[:MAX_SOURCE_CHARS],
        )

        async def operation():
            self.calls += 1
            started = time.monotonic()
            try:
                response = await self.llm.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                    json_mode=True,
                )
            except Exception as exc:
                log_llm_call(
                    model=self.model,
                    caller="llm_code_extraction",
                    duration_ms=int((time.monotonic() - started) * 1000),
                    status="error",
                    error=str(exc),
                )
                raise
            log_llm_call(
                model=self.model,
                caller="llm_code_extraction",
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return response

        response = await call_with_retries(
            operation,
            guard=self.guard,
            retry_max=self.retry_max,
            backoff_seconds=self.backoff_seconds,
            context=f"LLM coding for {source.id}",
        )

        try:
            items = parse_codes_payload(response.text)
        except ValueError as exc:
            raise SourceExtractionError(
                f"Unparseable coding reply for {source.id}: {exc}",
                source_id=source.id,
                stage="coding",
            ) from exc

        haystack = " ".join(source.content.split()).lower()
        codes: list[InitialCode] = []
        ungrounded = 0
        for item in items:
            label = " ".join(str(item.get("label") or "").split())
            if not label:
                continue
            excerpt = " ".join(str(item.get("excerpt") or "").split())[:MAX_EXCERPT_LENGTH]
            # Excerpts must quote the source; invented ones drop the code.
            if excerpt and excerpt.lower() not in haystack:
                ungrounded += 1
                continue
            codes.append(
                InitialCode(
                    id=code_id(source.id, label, len(codes)),
                    label=label,
                    source_id=source.id,
                    raw_text=excerpt or label,
                    description=str(item.get("description") or "").strip(),
                    position=len(codes),
                )
            )
            if len(codes) >= target.maximum:
                break

        if ungrounded:
            logger.info(f"Dropped {ungrounded} LLM code(s) for {source.id} whose excerpt is not in the source")
        if len(codes) < target.minimum:
            logger.info(
                f"LLM returned {len(codes)} codes for {source.id}, below target {target.minimum}"
            )
        return codes
