import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import InvalidSearchMessages, ProviderUnavailable
from .schemas import ChatMessage
from .streaming import extract_error_detail


logger = logging.getLogger("uvicorn.error")

RECENCY_FILTERS = {"day", "week", "month", "year"}


@dataclass
class SearchResult:
    answer: str
    citations: List[str] = field(default_factory=list)
    related_questions: List[str] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)


def normalize_search_messages(messages: List[ChatMessage]) -> List[Dict[str, str]]:
    """Shape a chat history into what the search API accepts.

    System prompts are merged into one leading message, consecutive turns from the
    same role are merged, and the history is trimmed to start and end on a user turn.
    """
    system_parts = [m.content for m in messages if m.role == "system" and m.content.strip()]
    turns: List[Dict[str, str]] = []
    for msg in messages:
        if msg.role == "system" or not msg.content.strip():
            continue
        if turns and turns[-1]["role"] == msg.role:
            turns[-1]["content"] += "\n\n" + msg.content
            continue
        turns.append({"role": msg.role, "content": msg.content})
    while turns and turns[0]["role"] != "user":
        turns.pop(0)
    while turns and turns[-1]["role"] != "user":
        turns.pop()
    normalized: List[Dict[str, str]] = []
    if system_parts:
        normalized.append({"role": "system", "content": "\n\n".join(system_parts)})
    normalized.extend(turns)
    return normalized


def validate_search_messages(messages: List[Dict[str, str]]) -> None:
    """After an optional system message, roles alternate user/assistant ending on user."""
    if not messages:
        raise InvalidSearchMessages("Messages array cannot be empty")
    start = 1 if messages[0]["role"] == "system" else 0
    if start >= len(messages):
        raise InvalidSearchMessages("Search needs at least one user message")
    for idx in range(start, len(messages)):
        expected = "user" if (idx - start) % 2 == 0 else "assistant"
        if messages[idx]["role"] != expected:
            raise InvalidSearchMessages(
                f"Invalid message sequence: expected {expected} at position {idx}, got {messages[idx]['role']}"
            )
    if messages[-1]["role"] != "user":
        raise InvalidSearchMessages("Last message must be from user")


def format_with_citations(result: SearchResult) -> str:
    formatted = result.answer
    if result.citations:
        formatted += "\n\n**Sources:**\n"
        for idx, citation in enumerate(result.citations, start=1):
            formatted += f"{idx}. {citation}\n"
    if result.related_questions:
        formatted += "\n**Related Questions:**\n"
        for question in result.related_questions:
            formatted += f"- {question}\n"
    return formatted


class PerplexityClient:
    name = "Perplexity"

    def __init__(self, api_key: Optional[str], base_url: str = "https://api.perplexity.ai", timeout: float = 60.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    def available(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        messages: List[ChatMessage],
        model: str = "sonar-pro",
        temperature: float = 0.2,
        max_tokens: int = 2000,
        search_recency_filter: Optional[str] = "month",
        search_domain_filter: Optional[List[str]] = None,
        return_related_questions: bool = True,
    ) -> SearchResult:
        if not self.api_key:
            raise ProviderUnavailable(self.name)
        payload_messages = normalize_search_messages(messages)
        validate_search_messages(payload_messages)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": payload_messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "top_p": 0.9,
            "stream": False,
            "return_related_questions": return_related_questions,
        }
        if search_recency_filter in RECENCY_FILTERS:
            payload["search_recency_filter"] = search_recency_filter
        if search_domain_filter:
            payload["search_domain_filter"] = search_domain_filter
        data = await self._post(f"{self.base_url}/chat/completions", payload)
        choices = data.get("choices") or [{}]
        message = (choices[0] or {}).get("message") or {}
        usage = data.get("usage") or {}
        return SearchResult(
            answer=message.get("content") or "",
            citations=[str(c) for c in data.get("citations") or []],
            related_questions=[str(q) for q in data.get("related_questions") or []],
            usage={
                "prompt_tokens": int(usage.get("prompt_tokens") or 0),
                "completion_tokens": int(usage.get("completion_tokens") or 0),
                "total_tokens": int(usage.get("total_tokens") or 0),
            },
        )

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail = extract_error_detail(e.response)
            logger.warning("Perplexity API error %s: %.500s", e.response.status_code, detail)
            raise ProviderUnavailable(self.name, detail, status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            raise ProviderUnavailable(self.name, str(e) or e.__class__.__name__) from e

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
