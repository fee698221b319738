"""Provider-neutral chat completion interface.

LLMReasoningProvider talks to models only through LLMClient, so tests can
hand it a canned client and deployments can pick any provider.
"""

from abc import ABC, abstractmethod


class LLMClient(ABC):
    """One system prompt and one user turn in, plain text out."""

    @abstractmethod
    async def complete(self, system: str, user: str) -> str:
        """Return the model's reply to a single-turn prompt.

        Args:
            system: Role and output format, loaded from prompts/.
            user: Incident context, prior analysis and failure logs.

        Raises:
            IntegrationError: The provider call failed or returned nothing.
        """
        ...
