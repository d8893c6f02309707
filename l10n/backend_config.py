"""Layered merge of ``[llm]`` settings and coordinator/translator resolution.

Precedence, lowest to highest:

1. provider defaults (``apply_agent_defaults``),
2. the shared ``[llm]`` fields, merged root -> nearest descriptor,
3. the role's ``[[llm.agent]]`` entry,
4. for the translator only: fields still unset are inherited from the
   resolved coordinator. A translator naming a different provider keeps
   its own endpoint and credentials.

A string field is "set" when it is non-blank, numeric fields when not None
(``timeout_seconds`` when non-zero), headers merge per key.
"""
from dataclasses import replace
from typing import Dict, Iterable, Optional, Tuple

from l10n.descriptor import AgentConfig, LLMSettings
from l10n.errors import ConfigurationError

ROLE_COORDINATOR = "coordinator"
ROLE_TRANSLATOR = "translator"
ROLES = (ROLE_COORDINATOR, ROLE_TRANSLATOR)

# provider -> (chat completions path, base URL, API key env var)
PROVIDER_DEFAULTS: Dict[str, Tuple[str, str, str]] = {
    "openai": ("/chat/completions", "https://api.openai.com/v1", "OPENAI_API_KEY"),
    # OpenAI-compatible endpoint; base URL and credentials must be configured.
    "vertex": ("/chat/completions", "", ""),
    "anthropic": ("/v1/messages", "https://api.anthropic.com", "ANTHROPIC_API_KEY"),
}

_STRING_FIELDS = ("provider", "base_url", "chat_completions_path", "api_key", "api_key_env")
_OPTIONAL_FIELDS = ("temperature", "max_tokens")


def _is_set(value) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


def _role_key(role: str) -> str:
    return role.strip().lower()


def merge_headers(base: Optional[Dict[str, str]], override: Optional[Dict[str, str]]) -> Dict[str, str]:
    merged = dict(base or {})
    merged.update(override or {})
    return merged


def _overrides(override, fields: Iterable[str]) -> Dict[str, object]:
    return {name: getattr(override, name) for name in fields if _is_set(getattr(override, name))}


def merge_agents(base: Tuple[AgentConfig, ...], override: Tuple[AgentConfig, ...]) -> Tuple[AgentConfig, ...]:
    """Replace agents whose role matches an override, append the rest."""
    merged = list(base)
    for agent in override:
        role = _role_key(agent.role)
        for i, existing in enumerate(merged):
            if role and _role_key(existing.role) == role:
                merged[i] = agent
                break
        else:
            merged.append(agent)
    return tuple(merged)


def merge_llm(base: LLMSettings, override: LLMSettings) -> LLMSettings:
    """Overlay ``override`` on ``base`` field by field."""
    changes = _overrides(override, _STRING_FIELDS + ("coordinator_model", "translator_model") + _OPTIONAL_FIELDS)
    if override.timeout_seconds:
        changes["timeout_seconds"] = override.timeout_seconds
    if override.headers:
        changes["headers"] = merge_headers(base.headers, override.headers)
    changes["agents"] = merge_agents(base.agents, override.agents)
    return replace(base, **changes)


def merge_agent(base: AgentConfig, override: Optional[AgentConfig]) -> AgentConfig:
    if override is None:
        return base
    changes = _overrides(override, _STRING_FIELDS + ("model",) + _OPTIONAL_FIELDS)
    if override.timeout_seconds:
        changes["timeout_seconds"] = override.timeout_seconds
    if override.headers:
        changes["headers"] = merge_headers(base.headers, override.headers)
    return replace(base, **changes)


def apply_agent_defaults(agent: AgentConfig) -> AgentConfig:
    """Fill endpoint path, base URL and credential env var for known providers."""
    provider = agent.provider.strip() or "openai"
    changes: Dict[str, object] = {"provider": provider}
    defaults = PROVIDER_DEFAULTS.get(provider)
    if defaults:
        path, base_url, api_key_env = defaults
        if not agent.chat_completions_path.strip():
            changes["chat_completions_path"] = path
        if not agent.base_url.strip() and base_url:
            changes["base_url"] = base_url
        if not agent.api_key_env.strip() and api_key_env:
            changes["api_key_env"] = api_key_env
    return replace(agent, **changes)


def _agents_by_role(agents: Tuple[AgentConfig, ...]) -> Dict[str, AgentConfig]:
    by_role: Dict[str, AgentConfig] = {}
    for agent in agents:
        role = _role_key(agent.role)
        if not role:
            raise ConfigurationError("llm.agent requires role")
        if role not in ROLES:
            raise ConfigurationError(f"unknown llm.agent role {agent.role!r}")
        by_role[role] = agent
    return by_role


def _inherit_from(coordinator: AgentConfig, translator: AgentConfig) -> AgentConfig:
    fields = _STRING_FIELDS + _OPTIONAL_FIELDS
    provider = translator.provider.strip()
    if provider and provider != coordinator.provider:
        # Endpoint and credentials of another provider do not apply.
        fields = _OPTIONAL_FIELDS

    changes: Dict[str, object] = {}
    for name in fields:
        if not _is_set(getattr(translator, name)):
            changes[name] = getattr(coordinator, name)
    if not translator.timeout_seconds:
        changes["timeout_seconds"] = coordinator.timeout_seconds
    changes["headers"] = merge_headers(coordinator.headers, translator.headers)
    return replace(translator, **changes)


def resolve_agents(settings: LLMSettings) -> Tuple[AgentConfig, AgentConfig]:
    """
    Resolve the coordinator and translator configurations.

    Args:
        settings: The ``[llm]`` settings merged across the ancestor chain.

    Returns:
        ``(coordinator, translator)`` with provider defaults applied.

    Raises:
        ConfigurationError: If an agent entry has no role or an unknown role.
    """
    by_role = _agents_by_role(settings.agents)

    base = AgentConfig(
        provider=settings.provider,
        base_url=settings.base_url,
        chat_completions_path=settings.chat_completions_path,
        api_key=settings.api_key,
        api_key_env=settings.api_key_env,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        headers=dict(settings.headers),
        timeout_seconds=settings.timeout_seconds,
    )

    coordinator = merge_agent(base, by_role.get(ROLE_COORDINATOR))
    if not coordinator.model.strip():
        coordinator = replace(coordinator, model=settings.coordinator_model)
    coordinator = apply_agent_defaults(replace(coordinator, role=ROLE_COORDINATOR))

    translator = merge_agent(base, by_role.get(ROLE_TRANSLATOR))
    if not translator.model.strip():
        translator = replace(translator, model=settings.translator_model)
    translator = _inherit_from(coordinator, translator)
    translator = apply_agent_defaults(replace(translator, role=ROLE_TRANSLATOR))

    return coordinator, translator
