"""Unit tests for the OpenAI image analyzer."""

from unittest.mock import MagicMock

import pytest
from openai import OpenAI

from errors import ConfigurationError, ExternalServiceError
from openai_client import OpenAIImageAnalyzer, build_prompt, parse_analysis, resolve_tag_style


def _reply(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


@pytest.fixture
def mock_openai_client():
    return MagicMock(spec=OpenAI)


class TestPromptHelpers:
    def test_unknown_style_falls_back_to_neutral(self):
        assert resolve_tag_style("SEO") == "seo"
        assert resolve_tag_style("sarcastic") == "neutral"
        assert resolve_tag_style(None) == "neutral"

    def test_prompt_embeds_style_instructions(self):
        assert "SEO-friendly" in build_prompt("seo")
        assert '"description"' in build_prompt("neutral")

    def test_parse_json_wrapped_in_prose(self):
        content = 'Sure!\n```json\n{"description": "A red bike.", "tags": ["bike", " red ", ""]}\n```'
        result = parse_analysis(content, "neutral")
        assert result.description == "A red bike."
        assert result.tags == ["bike", "red"]

    def test_parse_without_json_fails(self):
        with pytest.raises(ValueError):
            parse_analysis("I cannot help with that.", "neutral")

    def test_parse_without_description_fails(self):
        with pytest.raises(ValueError):
            parse_analysis('{"tags": ["a"]}', "neutral")


class TestOpenAIImageAnalyzer:
    def test_disabled_without_api_key(self):
        analyzer = OpenAIImageAnalyzer("")
        assert analyzer.enabled is False
        assert analyzer.health_snapshot() == {"openai_enabled": False, "model": "gpt-4o-mini"}

    @pytest.mark.asyncio
    async def test_analyze_sends_image_and_style(self, mock_openai_client):
        mock_openai_client.chat = MagicMock()
        mock_openai_client.chat.completions.create.return_value = _reply(
            '{"description": "Sunset over a lake.", "tags": ["sunset vibes"]}'
        )
        analyzer = OpenAIImageAnalyzer("", client=mock_openai_client, model="gpt-4o-mini")

        result = await analyzer.analyze("https://img.test/a.png", "playful")

        assert result.tag_style == "playful"
        assert result.tags == ["sunset vibes"]
        kwargs = mock_openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        content = kwargs["messages"][0]["content"]
        assert content[1] == {"type": "image_url", "image_url": {"url": "https://img.test/a.png"}}

    @pytest.mark.asyncio
    async def test_api_error_becomes_external_service_error(self, mock_openai_client):
        mock_openai_client.chat = MagicMock()
        mock_openai_client.chat.completions.create.side_effect = RuntimeError("rate limited")
        analyzer = OpenAIImageAnalyzer("", client=mock_openai_client)

        with pytest.raises(ExternalServiceError, match="AI: rate limited"):
            await analyzer.analyze("https://img.test/a.png")

    @pytest.mark.asyncio
    async def test_unconfigured_analyzer_raises(self):
        with pytest.raises(ConfigurationError):
            await OpenAIImageAnalyzer("").analyze("https://img.test/a.png")
