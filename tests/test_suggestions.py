"""Tests for LLM providers and the suggestion service, using httpx.MockTransport."""
import json

import httpx
import pytest

from gapscan.config import Settings
from gapscan.models.domain import GapSeverity, GapType, KnowledgeGap
from gapscan.services.suggestions import (
    ClaudeProvider,
    GeminiProvider,
    GrokProvider,
    LLMSuggestionService,
    OllamaProvider,
    OpenAIProvider,
    ProviderType,
    build_exploration_context,
    build_suggestion_service,
    create_provider,
    extract_json,
    fallback_exploration_suggestions,
)


def _transport(payload, status_code=200, seen=None):
    """MockTransport answering every request with *payload*; requests go into *seen*."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if isinstance(payload, Exception):
            raise payload
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler)


MESSAGES = [
    {"role": "system", "content": "Be brief."},
    {"role": "user", "content": "Hello"},
]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ollama_request_and_response():
    seen = []
    provider = OllamaProvider(
        base_url="http://ollama:11434",
        transport=_transport({"response": "hi", "prompt_eval_count": 3, "eval_count": 2}, seen=seen),
    )
    result = await provider.generate(MESSAGES, max_tokens=50)

    assert result.success and result.content == "hi"
    assert result.usage == {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
    request = seen[0]
    assert str(request.url) == "http://ollama:11434/api/generate"
    body = json.loads(request.content)
    assert body["system"] == "Be brief."
    assert body["prompt"] == "Hello"
    assert body["stream"] is False
    assert body["options"]["num_predict"] == 50


@pytest.mark.asyncio
async def test_openai_request_and_response():
    seen = []
    provider = OpenAIProvider(
        api_key="sk-test",
        transport=_transport(
            {
                "choices": [{"message": {"content": "answer"}}],
                "usage": {"prompt_tokens": 4, "completion_tokens": 1, "total_tokens": 5},
            },
            seen=seen,
        ),
    )
    result = await provider.generate(MESSAGES)

    assert result.success and result.content == "answer"
    assert result.usage["total_tokens"] == 5
    request = seen[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert json.loads(request.content)["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_grok_uses_openai_protocol_at_xai():
    seen = []
    provider = GrokProvider(
        api_key="xai", transport=_transport({"choices": [{"message": {"content": "ok"}}]}, seen=seen)
    )
    result = await provider.generate(MESSAGES)
    assert result.content == "ok"
    assert str(seen[0].url) == "https://api.x.ai/v1/chat/completions"


@pytest.mark.asyncio
async def test_claude_request_and_response():
    seen = []
    provider = ClaudeProvider(
        api_key="ak",
        transport=_transport(
            {
                "content": [{"type": "text", "text": "part one "}, {"type": "text", "text": "two"}],
                "usage": {"input_tokens": 7, "output_tokens": 3},
            },
            seen=seen,
        ),
    )
    result = await provider.generate(MESSAGES)

    assert result.content == "part one two"
    assert result.usage == {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}
    request = seen[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "ak"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["system"] == "Be brief."
    assert body["messages"] == [{"role": "user", "content": "Hello"}]


@pytest.mark.asyncio
async def test_gemini_folds_system_into_first_turn():
    seen = []
    provider = GeminiProvider(
        api_key="gk",
        model="gemini-test",
        transport=_transport(
            {
                "candidates": [{"content": {"parts": [{"text": "gem"}]}}],
                "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 1, "totalTokenCount": 3},
            },
            seen=seen,
        ),
    )
    result = await provider.generate(MESSAGES)

    assert result.content == "gem"
    assert result.usage["total_tokens"] == 3
    request = seen[0]
    assert request.url.path.endswith("/models/gemini-test:generateContent")
    assert request.url.params["key"] == "gk"
    body = json.loads(request.content)
    assert body["contents"][0]["parts"][0]["text"] == "Be brief.\n\nHello"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, message",
    [
        (429, "Rate limit exceeded. Please try again later."),
        (401, "Invalid API key or unauthorized access."),
        (500, "HTTP 500"),
    ],
)
async def test_http_errors_become_failed_responses(status_code, message):
    provider = OpenAIProvider(api_key="k", transport=_transport({"detail": "x"}, status_code=status_code))
    result = await provider.generate(MESSAGES)
    assert result.success is False
    assert result.error == message


@pytest.mark.asyncio
async def test_transport_errors_become_failed_responses():
    provider = OllamaProvider(transport=_transport(httpx.ConnectError("refused")))
    result = await provider.generate(MESSAGES)
    assert result.success is False
    assert "refused" in result.error

    provider = OllamaProvider(transport=_transport(httpx.ReadTimeout("slow")))
    result = await provider.generate(MESSAGES)
    assert result.success is False
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_error_field_in_body():
    provider = ClaudeProvider(api_key="k", transport=_transport({"error": {"message": "overloaded"}}))
    result = await provider.generate(MESSAGES)
    assert result.success is False
    assert result.error == "overloaded"


def test_availability_and_factory():
    assert OllamaProvider().is_available() is True
    assert OpenAIProvider().is_available() is False
    assert OpenAIProvider(api_key="k").is_available() is True

    provider = create_provider(ProviderType.CLAUDE, api_key="k", model="m")
    assert isinstance(provider, ClaudeProvider)
    assert provider.model == "m"
    assert create_provider(ProviderType.GROK).model == "grok-4-1-fast"


def test_build_suggestion_service_from_settings():
    assert build_suggestion_service(Settings(LLM_ENABLED=False)) is None
    assert build_suggestion_service(Settings(LLM_ENABLED=True, LLM_PROVIDER="bogus")) is None
    assert build_suggestion_service(Settings(LLM_ENABLED=True, LLM_PROVIDER="openai", LLM_API_KEY="")) is None

    service = build_suggestion_service(
        Settings(LLM_ENABLED=True, LLM_PROVIDER="ollama", OLLAMA_BASE_URL="http://box:11434")
    )
    assert isinstance(service.provider, OllamaProvider)
    assert service.provider.base_url == "http://box:11434"

    service = build_suggestion_service(
        Settings(LLM_ENABLED=True, LLM_PROVIDER="Claude", LLM_API_KEY="k", LLM_MAX_TOKENS=256)
    )
    assert isinstance(service.provider, ClaudeProvider)
    assert service.max_tokens == 256


# ---------------------------------------------------------------------------
# Suggestion service
# ---------------------------------------------------------------------------

def _service(payload, status_code=200):
    return LLMSuggestionService(OllamaProvider(transport=_transport(payload, status_code)))


def test_extract_json_object_and_array():
    assert extract_json('Here you go:\n```json\n{"a": [1, 2,],}\n```') == {"a": [1, 2]}
    assert extract_json('Topics: [{"topic": "X"}] done', "[") == [{"topic": "X"}]
    assert extract_json("no json here") is None
    assert extract_json("{broken", "{") is None
    assert extract_json('{"a": 1', "{") is None


@pytest.mark.asyncio
async def test_infer_topic_parses_fenced_json():
    reply = '```json\n{"topic": "Distributed Systems", "confidence": 0.9, "reasoning": "all about consensus",}\n```'
    inference = await _service({"response": reply}).infer_topic(["Raft", "Paxos"])
    assert inference.topic == "Distributed Systems"
    assert inference.confidence == pytest.approx(0.9)
    assert inference.reasoning == "all about consensus"


@pytest.mark.asyncio
async def test_infer_topic_clamps_confidence_and_handles_prose():
    reply = 'Sure! {"topic": "Cooking", "confidence": 7} hope that helps'
    inference = await _service({"response": reply}).infer_topic(["Bread"])
    assert inference.topic == "Cooking"
    assert inference.confidence == 1.0


@pytest.mark.asyncio
async def test_infer_topic_unparseable_reply_uses_text():
    inference = await _service({"response": "Gardening basics"}).infer_topic(["Soil"])
    assert inference.topic == "Gardening basics"
    assert inference.confidence == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_infer_topic_failure_is_unknown_with_zero_confidence():
    inference = await _service({}, status_code=500).infer_topic(["Soil"])
    assert inference.topic == "Unknown"
    assert inference.confidence == 0.0


@pytest.mark.asyncio
async def test_describe_concept():
    service = _service({"response": "  A protocol for agreement.  "})
    assert await service.describe_concept("Raft", ["a.md"]) == "A protocol for agreement."

    failing = _service({}, status_code=503)
    assert await failing.describe_concept("Raft", ["a.md"]) is None


@pytest.mark.asyncio
async def test_generate_exploration_suggestions():
    reply = json.dumps(
        [
            {"topic": "Consensus", "questions": ["What is quorum?"], "subtopics": ["Raft"], "rationale": "core"},
            {"questions": ["missing topic is dropped"]},
        ]
    )
    suggestions = await _service({"response": reply}).generate_exploration_suggestions(
        "gap", ["a.md"], "context"
    )
    assert len(suggestions) == 1
    assert suggestions[0].topic == "Consensus"
    assert suggestions[0].subtopics == ["Raft"]

    assert await _service({"response": "no json here"}).generate_exploration_suggestions("gap", []) == []


# ---------------------------------------------------------------------------
# Templated fallbacks
# ---------------------------------------------------------------------------

def _gap(gap_type, **kwargs):
    defaults = dict(
        id="g1",
        type=gap_type,
        title="Topology",
        description="desc",
        severity=GapSeverity.MODERATE,
        suggested_topics=["Open Sets", "Compactness", "Continuity", "Extra"],
        related_notes=["math/Open Sets.md"],
    )
    defaults.update(kwargs)
    return KnowledgeGap(**defaults)


def test_fallback_for_sparse_region():
    [suggestion] = fallback_exploration_suggestions(_gap(GapType.SPARSE_REGION))
    assert suggestion.topic == "Topology"
    assert suggestion.subtopics == ["Open Sets", "Compactness", "Continuity"]
    assert len(suggestion.questions) == 3


def test_fallback_for_undefined_concept():
    [suggestion] = fallback_exploration_suggestions(_gap(GapType.UNDEFINED_CONCEPT))
    assert suggestion.questions[0] == "What is Topology?"
    assert suggestion.subtopics == []


def test_fallback_for_weak_connection():
    [suggestion] = fallback_exploration_suggestions(_gap(GapType.WEAK_CONNECTION))
    assert suggestion.subtopics == ["Open Sets", "Compactness", "Continuity", "Extra"]


def test_build_exploration_context():
    context = build_exploration_context(_gap(GapType.SPARSE_REGION))
    assert "Gap Type: sparse_region" in context
    assert "Severity: moderate" in context
    assert "Related Notes: math/Open Sets.md" in context
