"""
LLM backends behind one capability interface.

Every provider exposes ``chat`` and ``translate``; how turns are encoded for
a particular SDK (role names, where the system prompt goes) stays inside the
provider class. Errors raised by the SDKs propagate unchanged; the request
handlers classify them.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from anthropic import AsyncAnthropic
from google import genai
from groq import AsyncGroq
from openai import AsyncOpenAI

from .config import PROVIDERS, AISettings, ProviderInfo
from .errors import MissingAPIKeyError, ProviderConfigError, UnsupportedProviderError
from .log import get_logger

logger = get_logger(__name__)

Turn = Dict[str, str]


def translate_instruction(target_language: str) -> str:
    return f"Translate from {target_language} to English. Be brief (1-2 sentences max)."


def merge_turns(messages: List[Turn]) -> List[Turn]:
    """Collapse consecutive turns with the same role into one turn."""
    merged: List[Turn] = []
    for msg in messages:
        role = "assistant" if msg["role"] == "assistant" else "user"
        if merged and merged[-1]["role"] == role:
            merged[-1] = {"role": role, "content": f"{merged[-1]['content']}\n\n{msg['content']}"}
        else:
            merged.append({"role": role, "content": msg["content"]})
    return merged


class AIProvider(ABC):
    """Interface every LLM backend implements."""

    info: ProviderInfo

    def __init__(self, api_key: str):
        self.api_key = api_key

    @abstractmethod
    async def chat(self, messages: List[Turn], system_prompt: str, language: str) -> str:
        """Generate the assistant's next turn.

        Parameters
        ----------
        messages : List[Turn]
            Conversation turns ``{"role": "user"|"assistant", "content": str}``,
            oldest first. The last turn is the one being answered.
        system_prompt : str
            Instructions for the model.
        language : str
            The language being practised.

        Returns
        -------
        str
            Raw assistant text, not parsed.
        """

    @abstractmethod
    async def translate(self, word: str, target_language: str) -> str:
        """Short English translation of ``word``, whitespace trimmed."""


class GeminiProvider(AIProvider):
    info = PROVIDERS["gemini"]

    def __init__(self, api_key: str, client: Optional[Any] = None):
        super().__init__(api_key)
        self.client = client or genai.Client(api_key=api_key)

    @staticmethod
    def _content(role: str, text: str) -> Dict[str, Any]:
        return {"role": "model" if role == "assistant" else "user", "parts": [{"text": text}]}

    async def chat(self, messages, system_prompt, language):
        turns = merge_turns(messages)
        *earlier, last = turns
        history = [
            self._content("user", system_prompt),
            self._content("assistant",
                          f"I understand. I will help you learn {language} by having conversations in {language}, "
                          f"correcting mistakes, and teaching grammar when appropriate."),
        ]
        if earlier and earlier[0]["role"] == "assistant":
            # primer already ends on a model turn
            history.append(self._content("user", "(continuing our conversation)"))
        history.extend(self._content(t["role"], t["content"]) for t in earlier)

        session = self.client.aio.chats.create(model=self.info.chat_model, history=history)
        response = await session.send_message(last["content"])
        return response.text

    async def translate(self, word, target_language):
        prompt = (f'Translate "{word}" from {target_language} to English. '
                  f'Provide a brief, clear translation (1-2 sentences max). Return only the translation.')
        response = await self.client.aio.models.generate_content(model=self.info.translate_model, contents=prompt)
        return response.text.strip()


class OpenAIProvider(AIProvider):
    info = PROVIDERS["openai"]

    def __init__(self, api_key: str, client: Optional[Any] = None):
        super().__init__(api_key)
        self.client = client or AsyncOpenAI(api_key=api_key)

    async def chat(self, messages, system_prompt, language):
        chat_messages = [{"role": "system", "content": system_prompt}]
        chat_messages.extend(
            {"role": "assistant" if m["role"] == "assistant" else "user", "content": m["content"]}
            for m in messages
        )
        response = await self.client.chat.completions.create(model=self.info.chat_model,
                                                              messages=chat_messages,
                                                              temperature=0.7,
                                                              max_tokens=1000)
        return response.choices[0].message.content or ""

    async def translate(self, word, target_language):
        response = await self.client.chat.completions.create(
            model=self.info.translate_model,
            messages=[
                {"role": "system", "content": translate_instruction(target_language)},
                {"role": "user", "content": word},
            ],
            temperature=0.3,
            max_tokens=100,
        )
        return (response.choices[0].message.content or "").strip()


class GroqProvider(OpenAIProvider):
    """Groq speaks the same chat-completions dialect as OpenAI."""

    info = PROVIDERS["groq"]

    def __init__(self, api_key: str, client: Optional[Any] = None):
        super().__init__(api_key, client=client or AsyncGroq(api_key=api_key))


class ClaudeProvider(AIProvider):
    info = PROVIDERS["claude"]

    def __init__(self, api_key: str, client: Optional[Any] = None):
        super().__init__(api_key)
        self.client = client or AsyncAnthropic(api_key=api_key)

    async def chat(self, messages, system_prompt, language):
        response = await self.client.messages.create(model=self.info.chat_model,
                                                      max_tokens=1000,
                                                      system=system_prompt,
                                                      messages=merge_turns(messages))
        return response.content[0].text

    async def translate(self, word, target_language):
        response = await self.client.messages.create(model=self.info.translate_model,
                                                      max_tokens=100,
                                                      system=translate_instruction(target_language),
                                                      messages=[{"role": "user", "content": word}])
        return response.content[0].text.strip()


_PROVIDER_CLASSES = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "claude": ClaudeProvider,
    "groq": GroqProvider,
}


def create_ai_provider(provider_id: str, api_key: Optional[str]) -> AIProvider:
    if not api_key:
        raise MissingAPIKeyError("API key is required")
    provider_class = _PROVIDER_CLASSES.get(provider_id)
    if provider_class is None:
        raise UnsupportedProviderError(f"Unknown AI provider: {provider_id}")
    return provider_class(api_key)


def resolve_provider(ai_settings: AISettings, user_settings=None) -> Tuple[str, str]:
    """Pick the (provider id, api key) pair for a request.

    A user who selected a provider and stored their own key for it uses that;
    everyone else gets the server default with the server key.
    """
    if user_settings is not None and user_settings.ai_provider in PROVIDERS:
        own_key = (user_settings.api_keys or {}).get(user_settings.ai_provider)
        if own_key:
            return user_settings.ai_provider, own_key

    provider_id = ai_settings.default_provider
    api_key = ai_settings.server_key(provider_id)
    if not api_key:
        info = PROVIDERS.get(provider_id)
        logger.error("Server API key is not configured", provider=provider_id,
                     env_var=info.key_env if info else None)
        raise ProviderConfigError()
    return provider_id, api_key
