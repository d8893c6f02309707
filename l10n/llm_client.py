"""Chat backends for the coordinator and translator roles.

OpenAI-compatible providers (``openai``, ``vertex`` and anything unknown)
go through the ``openai`` SDK, ``anthropic`` through the ``anthropic`` SDK.
Every call is rate limited and bounded by a timeout.
"""
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import anthropic
from aiolimiter import AsyncLimiter
from anthropic import AsyncAnthropic
from anthropic.types import Message
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
)
from openai.types.chat import ChatCompletion

from l10n.app_config import DEFAULT_REQUEST_TIMEOUT_SECONDS, DEFAULT_REQUESTS_PER_MINUTE
from l10n.descriptor import AgentConfig
from l10n.errors import (
    BackendConfigError,
    BackendStatusError,
    EmptyResponseError,
    GenerationError,
    UnsupportedRoleError,
)

logger = logging.getLogger(__name__)

PROVIDER_ANTHROPIC = "anthropic"
OPENAI_CHAT_COMPLETIONS_PATH = "/chat/completions"
ANTHROPIC_MESSAGES_PATH = "/v1/messages"
DEFAULT_ANTHROPIC_MAX_TOKENS = 1024
USER_AGENT = "l10n"

ENV_TEMPLATE_RE = re.compile(r'\{\{\s*env\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}')
ENV_PREFIX_RE = re.compile(r'env:([^/ \t]*)')


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


def expand_env(value: str) -> str:
    """
    Expand environment references in a header value or API key.

    Supports ``{{env.NAME}}`` anywhere, a whole value of ``env.NAME`` and
    ``env:NAME`` segments, where the name ends at ``/``, a space or a tab.
    Unset variables expand to the empty string.
    """
    expanded = ENV_TEMPLATE_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if expanded.startswith("env."):
        return os.environ.get(expanded[len("env."):], "")
    return ENV_PREFIX_RE.sub(lambda m: os.environ.get(m.group(1), ""), expanded)


def _has_header(headers: Dict[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


def resolve_api_key(agent: AgentConfig) -> str:
    key = expand_env(agent.api_key).strip()
    if not key and agent.api_key_env.strip():
        key = os.environ.get(agent.api_key_env.strip(), "")
    return key


def resolve_headers(agent: AgentConfig) -> Dict[str, str]:
    headers = {"User-Agent": USER_AGENT}
    headers.update({name: expand_env(value) for name, value in agent.headers.items()})
    return headers


def split_system_messages(messages: List[ChatMessage]) -> Tuple[str, List[Dict[str, str]]]:
    """
    Convert chat messages to the Anthropic shape.

    System messages are joined into one system prompt; only user and
    assistant turns remain in the message list.

    Raises:
        UnsupportedRoleError: For any other role.
        GenerationError: If no user or assistant message remains.
    """
    system_parts: List[str] = []
    converted: List[Dict[str, str]] = []
    for message in messages:
        role = message.role.strip().lower()
        if role == "system":
            if message.content.strip():
                system_parts.append(message.content)
        elif role in ("user", "assistant"):
            converted.append({"role": role, "content": message.content})
        else:
            raise UnsupportedRoleError(f"unsupported message role {message.role!r} for anthropic")
    if not converted:
        raise GenerationError("llm request requires user messages")
    return "\n\n".join(system_parts), converted


class LLMClient:
    """
    Sends chat requests on behalf of an agent configuration.

    Args:
        default_timeout_seconds: Used when the agent sets no ``timeout_seconds``.
        requests_per_minute: Request rate shared by all calls through this client.
        rate_limiter: An existing limiter to share instead of creating one.
    """

    def __init__(self, default_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
                 requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE,
                 rate_limiter: Optional[AsyncLimiter] = None):
        self.default_timeout_seconds = default_timeout_seconds
        self.rate_limiter = rate_limiter or AsyncLimiter(max_rate=max(requests_per_minute, 1), time_period=60)

    def _timeout(self, agent: AgentConfig) -> float:
        return float(agent.timeout_seconds or self.default_timeout_seconds)

    async def send(self, agent: AgentConfig, model: str, messages: List[ChatMessage]) -> str:
        """
        Send ``messages`` to ``model`` and return the reply text.

        Raises:
            BackendConfigError: If the base URL or model is missing.
            UnsupportedRoleError: If a message role is not supported by the provider.
            BackendStatusError: If the backend answers with an error status.
            EmptyResponseError: If the reply carries no text.
            GenerationError: For timeouts and connection failures.
        """
        if not agent.base_url.strip():
            raise BackendConfigError("llm base_url is required")
        if not model.strip():
            raise BackendConfigError("llm model is required")

        provider = agent.provider.strip().lower() or "openai"
        logger.debug("Sending %d message(s) to %s model '%s'.", len(messages), provider, model)
        async with self.rate_limiter:
            if provider == PROVIDER_ANTHROPIC:
                return await self._send_anthropic(agent, model, messages)
            return await self._send_openai(agent, model, messages)

    async def _send_openai(self, agent: AgentConfig, model: str, messages: List[ChatMessage]) -> str:
        headers = resolve_headers(agent)
        body: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": message.role, "content": message.content} for message in messages],
        }
        if agent.temperature is not None:
            body["temperature"] = agent.temperature
        if agent.max_tokens is not None:
            body["max_tokens"] = agent.max_tokens

        path = agent.chat_completions_path.strip() or OPENAI_CHAT_COMPLETIONS_PATH
        try:
            async with AsyncOpenAI(
                api_key=resolve_api_key(agent),
                base_url=agent.base_url.rstrip("/"),
                default_headers=headers,
                timeout=self._timeout(agent),
                max_retries=0,
            ) as client:
                if path == OPENAI_CHAT_COMPLETIONS_PATH:
                    response = await client.chat.completions.create(**body)
                else:
                    response = await client.post(path, cast_to=ChatCompletion, body=body)
        except APIStatusError as api_exc:
            raise BackendStatusError(f"llm error: {api_exc.message}", api_exc.status_code) from api_exc
        except (APITimeoutError, APIConnectionError) as api_exc:
            raise GenerationError(f"llm request failed: {api_exc.__class__.__name__} - {api_exc}") from api_exc
        except OpenAIError as api_exc:
            raise GenerationError(f"llm error: {api_exc}") from api_exc

        if not response.choices:
            raise EmptyResponseError("llm response missing choices")
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise EmptyResponseError("llm response empty")
        return content

    async def _send_anthropic(self, agent: AgentConfig, model: str, messages: List[ChatMessage]) -> str:
        system, converted = split_system_messages(messages)

        headers = resolve_headers(agent)
        api_key = resolve_api_key(agent)
        if not api_key and not _has_header(headers, "x-api-key"):
            raise BackendConfigError("anthropic api key is required")

        body: Dict[str, Any] = {
            "model": model,
            "max_tokens": agent.max_tokens if agent.max_tokens and agent.max_tokens > 0
            else DEFAULT_ANTHROPIC_MAX_TOKENS,
            "messages": converted,
        }
        if system:
            body["system"] = system
        if agent.temperature is not None:
            body["temperature"] = agent.temperature

        path = agent.chat_completions_path.strip() or ANTHROPIC_MESSAGES_PATH
        try:
            async with AsyncAnthropic(
                api_key=api_key or None,
                base_url=agent.base_url.rstrip("/"),
                default_headers=headers,
                timeout=self._timeout(agent),
                max_retries=0,
            ) as client:
                if path == ANTHROPIC_MESSAGES_PATH:
                    message = await client.messages.create(**body)
                else:
                    message = await client.post(path, cast_to=Message, body=body)
        except anthropic.APIStatusError as api_exc:
            raise BackendStatusError(f"llm error: {api_exc.message}", api_exc.status_code) from api_exc
        except (anthropic.APITimeoutError, anthropic.APIConnectionError) as api_exc:
            raise GenerationError(f"llm request failed: {api_exc.__class__.__name__} - {api_exc}") from api_exc
        except anthropic.AnthropicError as api_exc:
            raise GenerationError(f"llm error: {api_exc}") from api_exc

        text = "".join(block.text for block in message.content if getattr(block, "type", "") == "text")
        if not text.strip():
            raise EmptyResponseError("llm response empty")
        return text
