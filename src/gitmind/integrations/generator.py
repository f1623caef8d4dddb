"""Chat-completion client used to generate patches and chat replies."""

import json
import logging
from typing import Protocol

import requests

from gitmind.errors import ConfigurationMissing, GeneratorError, GeneratorUnavailable

logger = logging.getLogger(__name__)

# Rate limit and exhausted quota
UNAVAILABLE_STATUS_CODES = frozenset({429, 402})


class Generator(Protocol):
    def generate(self, system_prompt: str, user_prompt: str) -> str:
        """Return the raw model output for one system/user exchange."""
        ...

    def chat(self, messages: list[dict], system_prompt: str) -> str:
        ...


class ChatCompletionGenerator:
    """OpenAI-compatible ``/chat/completions`` client with a single attempt per call."""

    _COMPLETIONS_PATH = "/chat/completions"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout: float = 30.0,
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        return self.complete(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ]
        )

    def chat(self, messages: list[dict], system_prompt: str) -> str:
        history = [{"role": m["role"], "content": m["content"]} for m in messages]
        return self.complete([{"role": "system", "content": system_prompt}, *history], max_tokens=2048)

    def complete(self, messages: list[dict], max_tokens: int | None = None) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature,
        }
        data = self._post(payload)
        try:
            content = data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise GeneratorError("Malformed completion response: missing choices[0].message") from e
        return content

    def _post(self, payload: dict) -> dict:
        url = f"{self.base_url}{self._COMPLETIONS_PATH}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(url, headers=headers, data=json.dumps(payload), timeout=self.timeout)
        except requests.Timeout as e:
            raise GeneratorUnavailable(f"Generator request timed out after {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise GeneratorUnavailable(f"Generator connection failed: {e}") from e
        except requests.RequestException as e:
            raise GeneratorError(f"Generator request failed: {e}") from e

        if response.status_code in UNAVAILABLE_STATUS_CODES:
            logger.warning("Generator refused request with HTTP %s", response.status_code)
            raise GeneratorUnavailable(
                "AI rate limit exceeded. Try again later.",
                status=response.status_code,
            )
        if response.status_code >= 400:
            logger.error("Generator error %s: %s", response.status_code, response.text[:500])
            raise GeneratorError(
                f"AI error: {response.status_code}",
                status=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GeneratorError("Invalid JSON response from generator") from e


def get_generator(config) -> ChatCompletionGenerator:
    """Build the configured generator. Raises ConfigurationMissing without an API key."""
    if not config.generator_api_key:
        raise ConfigurationMissing("AI not configured: GITMIND_AI_API_KEY not set")
    return ChatCompletionGenerator(
        api_key=config.generator_api_key,
        model=config.generator_model,
        base_url=config.generator_base_url,
        timeout=config.generator_timeout,
    )
