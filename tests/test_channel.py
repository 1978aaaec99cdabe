"""Tests for provider routing and the LiteLLM-backed model channel."""

from unittest.mock import MagicMock, patch

import pytest

from stepwise.agent import LiteLLMChannel, call_llm, estimate_tokens, resolve_model
from stepwise.report import ChannelError, ConfigError


def _mock_response(content="ok"):
    choice = MagicMock()
    choice.message = MagicMock(content=content)
    choice.finish_reason = "stop"
    resp = MagicMock()
    resp.choices = [choice]
    return resp


# ---------------------------------------------------------------------------
# resolve_model
# ---------------------------------------------------------------------------


class TestResolveModel:
    def test_lmstudio_defaults(self):
        model_str, kwargs = resolve_model("lmstudio", "my-model", None, None)
        assert model_str == "openai/my-model"
        assert kwargs == {"api_base": "http://127.0.0.1:1234/v1", "api_key": "lm-studio"}

    def test_lmstudio_custom_url(self):
        _, kwargs = resolve_model("lmstudio", "m", "http://box:9000", "key")
        assert kwargs == {"api_base": "http://box:9000/v1", "api_key": "key"}

    def test_openai_prefix_not_doubled(self):
        assert resolve_model("openai", "gpt-4o", None, None) == ("openai/gpt-4o", {})
        assert resolve_model("openai", "openai/gpt-4o", None, None)[0] == "openai/gpt-4o"

    def test_anthropic_key(self):
        model_str, kwargs = resolve_model("anthropic", "claude-x", None, "sk-ant")
        assert model_str == "anthropic/claude-x"
        assert kwargs == {"api_key": "sk-ant"}

    def test_gemini(self):
        assert resolve_model("gemini", "gemini-2.0-flash", None, None)[0] == (
            "gemini/gemini-2.0-flash"
        )

    def test_ollama_default_base(self):
        model_str, kwargs = resolve_model("ollama", "qwen3", None, None)
        assert model_str == "ollama/qwen3"
        assert kwargs == {"api_base": "http://127.0.0.1:11434"}

    def test_openrouter_keeps_vendor_path(self):
        assert resolve_model("openrouter", "meta/llama-3", None, None)[0] == (
            "openrouter/meta/llama-3"
        )

    def test_generic_requires_base_url(self):
        with pytest.raises(ConfigError, match="base_url"):
            resolve_model("generic", "m", None, None)
        model_str, kwargs = resolve_model("generic", "m", "http://srv/v1", None)
        assert model_str == "openai/m"
        assert kwargs == {"api_base": "http://srv/v1", "api_key": "none"}

    def test_unknown_provider(self):
        with pytest.raises(ConfigError, match="unknown provider"):
            resolve_model("mystery", "m", None, None)

    def test_model_required(self):
        with pytest.raises(ConfigError, match="model is required"):
            resolve_model("openai", None, None, None)


# ---------------------------------------------------------------------------
# call_llm
# ---------------------------------------------------------------------------


class TestCallLlm:
    def test_passes_schema_as_response_format(self):
        schema = {"type": "object"}
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response('{"action": "Done"}')
            out = call_llm("openai/m", [{"role": "user", "content": "hi"}], response_schema=schema)
        assert out == '{"action": "Done"}'
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "openai/m"
        assert kwargs["response_format"] == {
            "type": "json_schema",
            "json_schema": {"name": "step", "schema": schema},
        }

    def test_no_schema_no_response_format(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            call_llm("openai/m", [], temperature=0.2, api_base="http://x")
        kwargs = mock_comp.call_args[1]
        assert "response_format" not in kwargs
        assert kwargs["temperature"] == 0.2
        assert kwargs["api_base"] == "http://x"

    def test_failure_becomes_channel_error(self):
        with patch("litellm.completion", side_effect=RuntimeError("connection refused")):
            with pytest.raises(ChannelError, match="connection refused"):
                call_llm("openai/m", [])

    def test_none_content_is_empty_string(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response(None)
            assert call_llm("openai/m", []) == ""

    def test_malformed_response(self):
        resp = MagicMock()
        resp.choices = []
        with patch("litellm.completion", return_value=resp):
            with pytest.raises(ChannelError, match="malformed"):
                call_llm("openai/m", [])


class TestLiteLLMChannel:
    def test_send_message_routes_through_provider(self):
        channel = LiteLLMChannel("lmstudio", "local-model", temperature=0.3)
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response("reply")
            assert channel.send_message([{"role": "user", "content": "q"}]) == "reply"
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "openai/local-model"
        assert kwargs["api_key"] == "lm-studio"
        assert kwargs["temperature"] == 0.3

    def test_bad_config_fails_early(self):
        with pytest.raises(ConfigError):
            LiteLLMChannel("generic", "m")


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert 0 < estimate_tokens("hello world") < 5
