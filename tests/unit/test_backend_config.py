"""Unit tests for the layered [llm] merge and role resolution."""
import pytest

from l10n.backend_config import (
    apply_agent_defaults,
    merge_agents,
    merge_llm,
    resolve_agents,
)
from l10n.descriptor import AgentConfig, LLMSettings
from l10n.errors import ConfigurationError


class TestMergeLLM:

    def test_nearest_overrides_set_fields_only(self):
        root = LLMSettings(provider="openai", translator_model="a", temperature=0.1, timeout_seconds=30)
        nearer = LLMSettings(translator_model="b")

        merged = merge_llm(root, nearer)

        assert merged.provider == "openai"
        assert merged.translator_model == "b"
        assert merged.temperature == 0.1
        assert merged.timeout_seconds == 30

    def test_blank_strings_do_not_override(self):
        merged = merge_llm(LLMSettings(base_url="https://a"), LLMSettings(base_url="   "))
        assert merged.base_url == "https://a"

    def test_headers_merge_per_key(self):
        merged = merge_llm(
            LLMSettings(headers={"X-A": "1", "X-B": "1"}),
            LLMSettings(headers={"X-B": "2"}),
        )
        assert merged.headers == {"X-A": "1", "X-B": "2"}

    def test_agents_replace_by_role(self):
        base = (AgentConfig(role="coordinator", model="x"), AgentConfig(role="translator", model="t"))
        override = (AgentConfig(role="Coordinator", model="y"),)

        merged = merge_agents(base, override)

        assert [a.model for a in merged] == ["y", "t"]

    def test_agents_append_new_role(self):
        merged = merge_agents((AgentConfig(role="coordinator", model="x"),),
                              (AgentConfig(role="translator", model="t"),))
        assert [a.role for a in merged] == ["coordinator", "translator"]


class TestProviderDefaults:

    def test_openai_is_default_provider(self):
        agent = apply_agent_defaults(AgentConfig())
        assert agent.provider == "openai"
        assert agent.base_url == "https://api.openai.com/v1"
        assert agent.chat_completions_path == "/chat/completions"
        assert agent.api_key_env == "OPENAI_API_KEY"

    def test_anthropic_defaults(self):
        agent = apply_agent_defaults(AgentConfig(provider="anthropic"))
        assert agent.base_url == "https://api.anthropic.com"
        assert agent.chat_completions_path == "/v1/messages"
        assert agent.api_key_env == "ANTHROPIC_API_KEY"

    def test_vertex_only_sets_path(self):
        agent = apply_agent_defaults(AgentConfig(provider="vertex"))
        assert agent.chat_completions_path == "/chat/completions"
        assert agent.base_url == ""
        assert agent.api_key_env == ""

    def test_explicit_values_win(self):
        agent = apply_agent_defaults(AgentConfig(provider="openai", base_url="http://localhost:8080/v1"))
        assert agent.base_url == "http://localhost:8080/v1"

    def test_unknown_provider_kept_without_defaults(self):
        agent = apply_agent_defaults(AgentConfig(provider="local", base_url="http://llm"))
        assert agent.provider == "local"
        assert agent.chat_completions_path == ""


class TestResolveAgents:

    def test_shared_models(self):
        coordinator, translator = resolve_agents(
            LLMSettings(coordinator_model="big", translator_model="small")
        )
        assert coordinator.role == "coordinator"
        assert coordinator.model == "big"
        assert translator.role == "translator"
        assert translator.model == "small"
        assert translator.provider == "openai"

    def test_no_coordinator_model(self):
        coordinator, translator = resolve_agents(LLMSettings(translator_model="small"))
        assert coordinator.model == ""
        assert translator.model == "small"

    def test_agent_entry_overrides_shared_fields(self):
        settings = LLMSettings(
            translator_model="small",
            temperature=0.5,
            agents=(AgentConfig(role="translator", model="tuned", temperature=0.0),),
        )
        _, translator = resolve_agents(settings)
        assert translator.model == "tuned"
        assert translator.temperature == 0.0

    def test_translator_inherits_from_coordinator(self):
        settings = LLMSettings(
            translator_model="t",
            headers={"X-A": "1"},
            agents=(
                AgentConfig(role="coordinator", provider="anthropic", base_url="https://proxy",
                            model="c", headers={"X-C": "c"}),
            ),
        )
        coordinator, translator = resolve_agents(settings)

        assert coordinator.provider == "anthropic"
        assert translator.provider == "anthropic"
        assert translator.base_url == "https://proxy"
        assert translator.api_key_env == "ANTHROPIC_API_KEY"
        assert translator.chat_completions_path == "/v1/messages"
        assert translator.model == "t"
        assert translator.headers == {"X-A": "1", "X-C": "c"}

    def test_translator_own_provider_not_overridden(self):
        settings = LLMSettings(
            translator_model="t",
            agents=(
                AgentConfig(role="coordinator", provider="anthropic", model="c"),
                AgentConfig(role="translator", provider="openai"),
            ),
        )
        _, translator = resolve_agents(settings)
        assert translator.provider == "openai"
        assert translator.base_url == "https://api.openai.com/v1"

    def test_unknown_role(self):
        with pytest.raises(ConfigurationError, match="unknown llm.agent role"):
            resolve_agents(LLMSettings(agents=(AgentConfig(role="reviewer"),)))

    def test_missing_role(self):
        with pytest.raises(ConfigurationError, match="requires role"):
            resolve_agents(LLMSettings(agents=(AgentConfig(model="x"),)))
