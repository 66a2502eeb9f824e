"""
Chat-style generation client backed by Google Gemini.
"""

import asyncio
import logging
from typing import Optional, Tuple

import google.generativeai as genai
from google.generativeai.types import HarmBlockThreshold, HarmCategory

from ingestion.config import GENERATION_CONFIG, GOOGLE_API_KEY
from monitoring.metrics import inc as metrics_inc, timed as metrics_timed

logger = logging.getLogger(__name__)


class GenerationFailure(Exception):
    """Provider error during answer synthesis, after bounded retries"""
    def __init__(self, message: str, last_error: Optional[Exception] = None):
        self.last_error = last_error
        super().__init__(message if last_error is None else f"{message}: {last_error}")


_SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
}


class GeminiChatClient:
    """One system instruction + one user prompt per call; returns (text, tokens_used)"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: str = GENERATION_CONFIG['model'],
        temperature: float = GENERATION_CONFIG['temperature'],
        max_output_tokens: int = GENERATION_CONFIG['max_output_tokens'],
        max_attempts: int = GENERATION_CONFIG['max_attempts'],
        retry_delay: float = GENERATION_CONFIG['retry_delay'],
    ):
        api_key = api_key or GOOGLE_API_KEY
        if not api_key:
            raise ValueError("Missing API key: set GOOGLE_API_KEY or pass api_key param")
        genai.configure(api_key=api_key)

        self.model_name = model_name
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.generation_config = genai.types.GenerationConfig(
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            candidate_count=1
        )

    async def complete(self, system_prompt: str, user_prompt: str) -> Tuple[str, int]:
        """
        Run one generation call.

        Raises:
            GenerationFailure: When every attempt fails or the model returns no text
        """
        model = genai.GenerativeModel(
            model_name=self.model_name,
            system_instruction=system_prompt,
            safety_settings=_SAFETY_SETTINGS,
        )

        last_error: Optional[Exception] = None
        for attempt in range(self.max_attempts):
            try:
                async with metrics_timed("llm_request_ms", labels={"model": self.model_name}):
                    response = await asyncio.to_thread(
                        model.generate_content,
                        user_prompt,
                        generation_config=self.generation_config
                    )
            except Exception as e:
                last_error = e
                if attempt < self.max_attempts - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Gemini API call failed (attempt {attempt + 1}/{self.max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            text = self._extract_text(response)
            if not text:
                await metrics_inc("llm_api_errors_total", labels={"reason": "empty"})
                raise GenerationFailure("No valid response generated by Gemini API")
            return text, self._token_count(response)

        logger.error(f"Error calling Gemini API after retries: {last_error}")
        await metrics_inc("llm_api_errors_total", labels={"reason": "exhausted"})
        raise GenerationFailure(f"Generation failed after {self.max_attempts} attempts", last_error)

    @staticmethod
    def _extract_text(response) -> str:
        if response.candidates:
            candidate = response.candidates[0]
            if candidate.content and candidate.content.parts:
                return ''.join(part.text for part in candidate.content.parts if getattr(part, 'text', None)).strip()
        return ''

    @staticmethod
    def _token_count(response) -> int:
        usage = getattr(response, 'usage_metadata', None)
        return int(getattr(usage, 'total_token_count', 0) or 0)
