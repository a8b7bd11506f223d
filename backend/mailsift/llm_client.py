"""OpenAI structured-output wrapper: prompt + pydantic schema -> validated object."""
import logging
import re
from typing import Optional, Type, TypeVar

from openai import APIError, OpenAI
from pydantic import BaseModel, ValidationError

from .config import settings
from .errors import ConfigurationError, LLMSchemaError, LLMTransportError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_client: Optional[OpenAI] = None


def _get_openai_client() -> OpenAI:
    """Get OpenAI client instance."""
    global _client
    if _client is None:
        api_key = settings.openai_api_key
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY not set. Add to .env or environment.")
        _client = OpenAI(api_key=api_key)
    return _client


def _strip_code_fences(text: str) -> str:
    """Remove markdown code blocks if present."""
    text = re.sub(r"```json\s*", "", text)
    text = re.sub(r"```\s*", "", text)
    return text.strip()


def generate_structured(
    prompt: str,
    system_prompt: str,
    schema: Type[T],
    max_tokens: int = 1500,
) -> T:
    """
    Ask the model for a JSON object and validate it against `schema`.

    Raises LLMTransportError when the API call fails and LLMSchemaError when
    the reply is not valid JSON for the schema.
    """
    client = _get_openai_client()
    try:
        response = client.chat.completions.create(
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
        )
    except APIError as e:
        raise LLMTransportError(f"OpenAI request failed: {e}") from e

    text = _strip_code_fences(response.choices[0].message.content or "")
    try:
        return schema.model_validate_json(text)
    except ValidationError as e:
        logger.warning(f"Model reply failed {schema.__name__} validation: {e.error_count()} errors")
        raise LLMSchemaError(f"Reply does not match {schema.__name__}: {e}") from e
