import json
import logging
from typing import Iterable, Optional, Type, TypeVar

import openai
import pydantic
from openai import AsyncOpenAI

from caret.config import settings
from caret.errors import QuotaExceeded, ServiceUnavailable, ValidationError

logger = logging.getLogger("caret.llm")

T = TypeVar("T", bound=pydantic.BaseModel)

_QUOTA_MARKERS = ("429", "quota", "RESOURCE_EXHAUSTED")

_client: Optional[AsyncOpenAI] = None


def client() -> AsyncOpenAI:
    global _client
    if _client is None:
        if not settings.llm_api_key:
            raise ServiceUnavailable("LLM_API_KEY is not configured")
        _client = AsyncOpenAI(api_key=settings.llm_api_key, base_url=settings.llm_base_url)
    return _client


def render_contents(knowledge: Iterable[str], user_text: str) -> str:
    parts = [f"This is knowledge provided to you :\n{k}" for k in knowledge]
    parts.append(f"User Prompt:\n{user_text}")
    return "\n".join(parts)


def _strip_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_result(raw: Optional[str], schema: Type[T]) -> T:
    """Validate raw completion text against a result shape."""
    stage = getattr(schema, "kind", schema.__name__)
    if not raw or not raw.strip():
        raise ValidationError(stage, "empty response")
    try:
        data = json.loads(_strip_fences(raw))
    except json.JSONDecodeError as e:
        raise ValidationError(stage, f"not JSON ({e.msg})") from e
    try:
        return schema.model_validate(data)
    except pydantic.ValidationError as e:
        detail = ", ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        logger.warning(f"[llm] {stage} validation failed: {detail}")
        raise ValidationError(stage, detail) from e


def _translate(e: Exception) -> Exception:
    if isinstance(e, openai.RateLimitError) or any(m in str(e) for m in _QUOTA_MARKERS):
        return QuotaExceeded(str(e))
    return ServiceUnavailable(str(e))


async def _create(llm: AsyncOpenAI, **kwargs):
    try:
        return await llm.chat.completions.create(model=settings.llm_model, **kwargs)
    except openai.OpenAIError as e:
        logger.error(f"[llm] completion service error: {e}")
        raise _translate(e) from e


async def complete(
    system: str,
    user_text: str,
    schema: Type[T],
    knowledge: Iterable[str] = (),
    llm: Optional[AsyncOpenAI] = None,
) -> T:
    """Run one schema-constrained completion and return the validated result."""
    llm = llm or client()
    resp = await _create(
        llm,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": render_contents(knowledge, user_text)},
        ],
        response_format={
            "type": "json_schema",
            "json_schema": {
                "name": getattr(schema, "kind", schema.__name__),
                "schema": schema.model_json_schema(by_alias=True),
            },
        },
        temperature=0,
    )
    raw = resp.choices[0].message.content if resp.choices else None
    return parse_result(raw, schema)


async def complete_text(
    system: str, user_text: str, llm: Optional[AsyncOpenAI] = None
) -> str:
    llm = llm or client()
    resp = await _create(
        llm,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_text},
        ],
    )
    return (resp.choices[0].message.content or "").strip() if resp.choices else ""
