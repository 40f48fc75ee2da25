"""Provider-neutral LLM client interface.

LLMScorer talks to models only through LLMClient.complete(), so correlation
code never imports a vendor SDK. main.py picks the concrete provider.
"""

from abc import ABC, abstractmethod


class LLMClient(ABC):
    """One chat-style model endpoint.

    Implementations should raise the provider's own API errors rather than
    returning an empty string; LLMScorer treats openai.APIError, timeouts
    and unparseable text as "no opinion" and falls back to the weighted score.
    """

    @abstractmethod
    async def complete(self, system: str, user: str) -> str:
        """Return the model's reply to a single system + user exchange.

        Args:
            system: Instructions and the required JSON answer shape.
            user: The occurrence and incident members to compare, as JSON.
        """
        ...
