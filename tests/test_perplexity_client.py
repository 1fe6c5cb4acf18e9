import json

import pytest
import respx
from httpx import Response

from relay.errors import InvalidSearchMessages, ProviderUnavailable
from relay.perplexity import (
    PerplexityClient,
    SearchResult,
    format_with_citations,
    normalize_search_messages,
    validate_search_messages,
)
from relay.schemas import ChatMessage


BASE = "http://perplexity.test"


def test_normalize_merges_system_and_repeated_roles():
    messages = [
        ChatMessage(role="assistant", content="Welcome!"),
        ChatMessage(role="system", content="cite sources"),
        ChatMessage(role="user", content="first"),
        ChatMessage(role="user", content="second"),
        ChatMessage(role="assistant", content="reply"),
        ChatMessage(role="system", content="be brief"),
        ChatMessage(role="user", content="follow up"),
        ChatMessage(role="assistant", content="dangling"),
    ]
    assert normalize_search_messages(messages) == [
        {"role": "system", "content": "cite sources\n\nbe brief"},
        {"role": "user", "content": "first\n\nsecond"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "follow up"},
    ]


def test_validate_rejects_bad_sequences():
    with pytest.raises(InvalidSearchMessages):
        validate_search_messages([])
    with pytest.raises(InvalidSearchMessages):
        validate_search_messages([{"role": "system", "content": "only system"}])
    with pytest.raises(InvalidSearchMessages):
        validate_search_messages([{"role": "user", "content": "a"}, {"role": "user", "content": "b"}])
    validate_search_messages([{"role": "system", "content": "s"}, {"role": "user", "content": "q"}])


def test_format_with_citations_lists_sources_and_related_questions():
    result = SearchResult(
        answer="Paris is the capital.",
        citations=["https://a.example", "https://b.example"],
        related_questions=["What about Lyon?"],
    )
    assert format_with_citations(result) == (
        "Paris is the capital."
        "\n\n**Sources:**\n1. https://a.example\n2. https://b.example\n"
        "\n**Related Questions:**\n- What about Lyon?\n"
    )
    assert format_with_citations(SearchResult(answer="plain")) == "plain"


@pytest.mark.asyncio
async def test_search_payload_and_result():
    client = PerplexityClient("test-key", BASE)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(
                    200,
                    json={
                        "choices": [{"message": {"content": "answer"}}],
                        "citations": ["https://source.example"],
                        "related_questions": ["next?"],
                        "usage": {"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8},
                    },
                )

            respx_mock.post(f"{BASE}/chat/completions").mock(side_effect=handler)
            result = await client.search([ChatMessage(role="user", content="latest news")])
        assert result.answer == "answer"
        assert result.citations == ["https://source.example"]
        assert result.related_questions == ["next?"]
        assert result.usage["total_tokens"] == 8
        payload = captured["json"]
        assert payload["model"] == "sonar-pro"
        assert payload["temperature"] == 0.2
        assert payload["search_recency_filter"] == "month"
        assert payload["return_related_questions"] is True
        assert payload["stream"] is False
        assert captured["headers"]["Authorization"] == "Bearer test-key"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_http_error_is_provider_unavailable():
    client = PerplexityClient("test-key", BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(return_value=Response(500, json={"error": "boom"}))
            with pytest.raises(ProviderUnavailable) as excinfo:
                await client.search([ChatMessage(role="user", content="q")])
        assert excinfo.value.status_code == 500
        assert excinfo.value.message.startswith("Perplexity API error: 500")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_without_key():
    client = PerplexityClient(None, BASE)
    try:
        with pytest.raises(ProviderUnavailable, match="Perplexity API key not configured"):
            await client.search([ChatMessage(role="user", content="q")])
    finally:
        await client.close()
