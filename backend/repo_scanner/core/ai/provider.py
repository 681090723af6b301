"""
Text-analysis provider: one instruction + content in, free text out
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import openai

from repo_scanner.config import settings
from ..error_handling.exceptions import AnalysisProviderException
from ..logging.structured_logger import get_logger

logger = get_logger(__name__)

PRIMING_REPLY = "I am ready to analyze your code and dependencies."


class AnalysisProvider(ABC):
    """Single request/response text completion"""

    @abstractmethod
    async def complete(self, instruction: str, prompt: str) -> str:
        """Return the provider's free-text answer or raise"""


class OpenAIAnalysisProvider(AnalysisProvider):
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        # retries happen only in RetryHandler
        self.client = openai.AsyncOpenAI(
            api_key=api_key or settings.openai_api_key or None,
            max_retries=0,
            http_client=http_client,
        )
        self.model = model or settings.openai_model
        self.max_output_tokens = max_output_tokens or settings.analysis_max_output_tokens

    async def complete(self, instruction: str, prompt: str) -> str:
        start_time = asyncio.get_running_loop().time()

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": instruction},
                    {"role": "assistant", "content": PRIMING_REPLY},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.3,
                max_tokens=self.max_output_tokens,
            )
        except (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise AnalysisProviderException(f"{type(e).__name__}: {e}", transient=True, cause=e) from e
        except openai.APIStatusError as e:
            transient = e.status_code in (429, 503, 529)
            raise AnalysisProviderException(
                f"[{e.status_code}] {e.message}", transient=transient, cause=e
            ) from e
        except openai.OpenAIError as e:
            raise AnalysisProviderException(str(e), transient=False, cause=e) from e

        duration_ms = (asyncio.get_running_loop().time() - start_time) * 1000
        logger.external_service_call(
            "openai", "chat.completions", duration_ms,
            metadata={
                "model": self.model,
                "prompt_tokens": response.usage.prompt_tokens if response.usage else 0,
                "completion_tokens": response.usage.completion_tokens if response.usage else 0,
            }
        )

        return response.choices[0].message.content or ""
