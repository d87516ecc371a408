"""Gemini LLM client."""

from typing import Optional

import google.generativeai as genai

from meeting_scheduler.config import settings
from meeting_scheduler.llm.errors import BackendError, CONTENT_SAFETY, INVALID_RESPONSE, classify_error
from meeting_scheduler.utils.logging_utils import StructuredLogger


JSON_FORMAT_INSTRUCTION = (
    "\n\nRespond ONLY with valid JSON. Do not include any markdown formatting, code blocks, or explanatory text."
)


class GeminiClient:
    """Client for interacting with Google's Gemini API."""

    name = "gemini"

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        genai.configure(api_key=api_key or settings.gemini_api_key)
        self.model_name = model_name or settings.gemini_model
        self.model = genai.GenerativeModel(self.model_name)
        self.logger = StructuredLogger(__name__)
        self.logger.info("Gemini backend configured", model=self.model_name)

    async def invoke(
        self,
        operation: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.3,
        response_format: str = "text"
    ) -> str:
        """
        Single request to Gemini. Retries and fallback are the router's job.

        Args:
            operation: Logical operation name, used for logging only
            prompt: User prompt
            system_prompt: Optional system prompt
            temperature: Temperature for generation (0.0-1.0)
            response_format: "text" or "JSON"; JSON adds a format instruction

        Returns:
            Raw response text

        Raises:
            BackendError: categorized failure
        """
        full_prompt = prompt
        if response_format == "JSON":
            full_prompt = f"{prompt}{JSON_FORMAT_INSTRUCTION}"
        if system_prompt:
            full_prompt = f"{system_prompt}\n\n{full_prompt}"

        try:
            response = await self.model.generate_content_async(
                full_prompt,
                generation_config=genai.types.GenerationConfig(temperature=temperature)
            )
        except Exception as e:
            raise classify_error(e, backend=self.name) from e

        try:
            text = response.text
        except ValueError as e:
            # response.text raises when every candidate was blocked
            raise BackendError(
                f"Gemini returned no usable candidate for {operation}: {e}",
                CONTENT_SAFETY,
                backend=self.name,
            ) from e

        if not text or not text.strip():
            raise BackendError(f"Empty response from Gemini for {operation}", INVALID_RESPONSE, backend=self.name)
        return text.strip()
