"""Mistral chat-completions client."""

from typing import Optional

import httpx

from meeting_scheduler.config import settings
from meeting_scheduler.llm.errors import BackendError, INVALID_RESPONSE, AUTHENTICATION, classify_error


class MistralClient:
    """Client for the Mistral chat completions API."""

    name = "mistral"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key or settings.mistral_api_key
        self.base_url = (base_url or settings.mistral_base_url).rstrip("/")
        self.default_model = model or settings.mistral_model
        self._client = http_client or httpx.AsyncClient(timeout=60.0)

    async def invoke(
        self,
        operation: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.3,
        response_format: str = "text"
    ) -> str:
        """Send one chat completion request and return the message content."""
        if not self.api_key:
            raise BackendError("Mistral API key is not configured", AUTHENTICATION, backend=self.name)

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.default_model,
            "messages": messages,
            "temperature": temperature,
        }
        if response_format == "JSON":
            payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=payload,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_error(e, backend=self.name) from e

        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(f"Mistral returned a non-JSON body for {operation}", INVALID_RESPONSE, backend=self.name) from e

        choices = data.get("choices") or []
        if not choices:
            raise BackendError(
                f"Unexpected response format from Mistral for {operation}",
                INVALID_RESPONSE,
                backend=self.name,
            )
        content = (choices[0].get("message") or {}).get("content")
        if not content or not content.strip():
            raise BackendError(f"Empty response from Mistral for {operation}", INVALID_RESPONSE, backend=self.name)
        return content.strip()

    async def aclose(self) -> None:
        await self._client.aclose()
