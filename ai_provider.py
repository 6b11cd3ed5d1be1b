import httpx
import logging
from typing import Optional
from config import settings

llm_logger = logging.getLogger("llm_responses")


class GenerationError(RuntimeError):
    """The narrator could not be reached or returned nothing usable."""


class AIProvider:
    """Base class for AI interaction"""
    def __init__(self, url: str, model: str, timeout: float):
        self.url = url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.client = httpx.AsyncClient()

    async def generate_response(self, prompt: str, context: str = "") -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        await self.client.aclose()


class ChatCompletionsProvider(AIProvider):
    """Provider for OpenAI compatible chat completion APIs"""
    def __init__(self, url: Optional[str] = None, model: Optional[str] = None, timeout: Optional[float] = None,
                 api_key: Optional[str] = None):
        super().__init__(url or settings.llm_base_url, model or settings.llm_model, timeout or settings.llm_timeout)
        self.api_key = api_key if api_key is not None else settings.llm_api_key

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _extract_content(self, result) -> str:
        """Pull choices[0].message.content out of a completion body, or raise GenerationError."""
        choices = result.get("choices") if isinstance(result, dict) else None
        if not isinstance(choices, list):
            llm_logger.error(f"Malformed completion from {self.model}: {str(result)[:500]}")
            raise GenerationError("Malformed completion: no choices list")
        if not choices:
            llm_logger.error(f"Empty completion from {self.model}")
            raise GenerationError("Empty completion")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if content is None:
            llm_logger.error(f"Empty completion from {self.model}")
            raise GenerationError("Empty completion")
        if not isinstance(content, str):
            llm_logger.error(f"Malformed completion from {self.model}: content is {type(content).__name__}")
            raise GenerationError(f"Malformed completion: content is {type(content).__name__}")
        return content

    async def generate_response(self, prompt: str, context: str = "") -> str:
        messages = []
        if context:
            messages.append({"role": "system", "content": context})
        messages.append({"role": "user", "content": prompt})

        json_payload = {
            "model": self.model,
            "messages": messages,
            "temperature": settings.llm_temperature,
            "max_tokens": settings.llm_max_tokens,
            "stream": False,
        }
        if settings.llm_json_mode:
            json_payload["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.post(
                f"{self.url}/chat/completions", json=json_payload,
                headers=self._headers(), timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as e:
            error_msg = f"API Error: {e.response.status_code} - {e.response.text[:500]}"
            llm_logger.error(error_msg)
            raise GenerationError(error_msg) from e
        except httpx.RequestError as e:
            error_msg = f"AI Error: {type(e).__name__}: {e}"
            llm_logger.error(error_msg)
            raise GenerationError(error_msg) from e
        except ValueError as e:
            llm_logger.error(f"AI Error: response body is not JSON: {e}")
            raise GenerationError("Response body is not JSON") from e

        content = self._extract_content(result)
        if not content.strip():
            llm_logger.error(f"Empty completion from {self.model}")
            raise GenerationError("Empty completion")
        llm_logger.info(f"Raw response ({self.model}):\n{content}")
        return content
