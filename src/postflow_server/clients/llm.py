import json
import logging
from typing import Optional, Type, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from postflow_server.errors import TerminalAutomationError, TransientAutomationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class OpenAIContentGenerator:
    """Structured inference over the chat completions API in JSON mode."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        *,
        client: Optional[AsyncOpenAI] = None,
        timeout: float = 60.0,
    ) -> None:
        if client is None:
            if not api_key:
                raise TerminalAutomationError("OpenAI API key is not configured", code="MISSING_API_KEYS")
            client = AsyncOpenAI(api_key=api_key, timeout=timeout)
        self.client = client
        self.model = model

    async def infer(self, prompt: str, context: str, schema: Type[M]) -> M:
        system = (
            f"{prompt}\n\nRespond with a single JSON object matching this JSON schema:\n"
            f"{json.dumps(schema.model_json_schema(), ensure_ascii=False)}"
        )
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": context},
                ],
                response_format={"type": "json_object"},
            )
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise TransientAutomationError(f"LLM request failed: {e}", code="LLM_UNAVAILABLE") from e
        except openai.APIStatusError as e:
            raise TerminalAutomationError(f"LLM rejected the request: {e}", code="LLM_REJECTED") from e

        content = completion.choices[0].message.content or ""
        try:
            return schema.model_validate_json(content)
        except PydanticValidationError as e:
            logger.warning(f"LLM returned output not matching {schema.__name__}: {content[:200]}")
            raise TransientAutomationError(f"LLM output did not match {schema.__name__}", code="LLM_BAD_OUTPUT") from e
