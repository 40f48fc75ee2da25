"""OpenRouter LLM client.

OpenRouter exposes models from several vendors behind one OpenAI-compatible
API, so the openai SDK is pointed at its base URL and the model is just a
string such as "google/gemini-2.0-flash-001".

Required environment variable:
    OPENROUTER_API_KEY: Your OpenRouter API key. Add to .env and never commit.
"""

import os

import openai
from dotenv import load_dotenv

from llm.base import LLMClient

load_dotenv()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# App name OpenRouter shows on its usage dashboard.
APP_HEADERS = {"X-Title": "Sift"}


class OpenRouterClient(LLMClient):
    """LLMClient backed by OpenRouter.

    SDK retries are off; LLMScorer bounds each call with its own timeout
    and falls back to the weighted score.

    Attributes:
        model: OpenRouter model id.
        client: Async OpenAI SDK client configured for OpenRouter.
    """

    def __init__(self, model: str, temperature: float = 0.0, max_tokens: int = 200, timeout: float = 30.0):
        """
        Raises:
            KeyError: OPENROUTER_API_KEY is not set in the environment or
                .env file. Raised here so a misconfigured scorer fails at
                startup, not on the first correlation.
        """
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = openai.AsyncOpenAI(
            base_url=OPENROUTER_BASE_URL,
            api_key=os.environ["OPENROUTER_API_KEY"],
            default_headers=APP_HEADERS,
            timeout=timeout,
            max_retries=0,
        )

    async def complete(self, system: str, user: str) -> str:
        """Raises openai.APIError on provider errors."""
        response = await self.client.chat.completions.create(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
