"""OpenRouter client for RCA and patch generation.

OpenRouter speaks the OpenAI chat API for many vendors' models, so the
openai SDK is reused with a different base URL and model ids such as
"anthropic/claude-sonnet-4-6".

Environment:
    OPENROUTER_API_KEY  Required unless api_key is passed explicitly.
"""

import os

import openai
from dotenv import load_dotenv

from core.errors import IntegrationError
from llm.base import LLMClient

load_dotenv()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_TIMEOUT_SECONDS = 120.0

# Sent so requests are attributed to this app in the OpenRouter dashboard.
_APP_HEADERS = {"HTTP-Referer": "https://github.com/guardian-sre", "X-Title": "Guardian"}


class OpenRouterClient(LLMClient):
    """LLMClient over OpenRouter.

    Patches are full-file rewrites, so temperature defaults to 0 to keep a
    regenerated file close to the one it replaces.

    Example usage:
        reasoning = LLMReasoningProvider(OpenRouterClient(settings.reasoning_model))

    Attributes:
        model: OpenRouter model id sent with every request.
        temperature: Sampling temperature for every request.
        client: openai.AsyncOpenAI configured for OpenRouter.
    """

    def __init__(
        self,
        model: str,
        temperature: float = 0.0,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        api_key: str | None = None,
    ):
        """Initialize the client for a specific model.

        Args:
            model: OpenRouter model ID string. No default — always be explicit
                about which model the reasoning provider is using.
            temperature: Sampling temperature.
            timeout: Per-request timeout in seconds, enforced by the SDK.
            api_key: Overrides OPENROUTER_API_KEY.

        Raises:
            KeyError: If no api_key is given and OPENROUTER_API_KEY is not
                set. Fails immediately at construction rather than at the
                first API call.
        """
        self.model = model
        self.temperature = temperature
        self.client = openai.AsyncOpenAI(
            base_url=OPENROUTER_BASE_URL,
            api_key=api_key or os.environ["OPENROUTER_API_KEY"],
            timeout=timeout,
            default_headers=_APP_HEADERS,
        )

    async def complete(self, system: str, user: str) -> str:
        """Send a prompt to the configured model via OpenRouter.

        Args:
            system: System prompt defining the role and output format.
            user: User-turn content — the incident context to reason over.

        Returns:
            The model's response as a plain string with no SDK wrapper.

        Raises:
            IntegrationError: If the API call fails or the model returns no
                content.
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
        except openai.APIError as exc:
            raise IntegrationError("openrouter", f"{self.model}: {exc}") from exc

        if not response.choices or not response.choices[0].message.content:
            raise IntegrationError("openrouter", f"{self.model} returned an empty response")
        return response.choices[0].message.content
