"""
Suggestion service: optional LLM enrichment of gap reports.

Providers
---------
One adapter class per backend, all exposing the same coroutine::

    await provider.generate(messages, max_tokens) -> LLMResponse

``messages`` is a list of ``{"role": "system" | "user" | "assistant",
"content": str}`` dicts.  Each adapter translates them to its own wire
format (Ollama /api/generate, OpenAI-compatible /chat/completions, Anthropic
/messages, Gemini :generateContent).  Transport and HTTP failures never raise;
they come back as ``LLMResponse(success=False, error=...)``.

Service
-------
LLMSuggestionService.infer_topic(titles)                      -> TopicInference
LLMSuggestionService.describe_concept(name, context_docs)     -> Optional[str]
LLMSuggestionService.generate_exploration_suggestions(...)    -> List[ExplorationSuggestion]

``fallback_exploration_suggestions(gap)`` produces the templated suggestions
used when no service is configured.
"""
from __future__ import annotations

import dataclasses
import enum
import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Type, runtime_checkable

import httpx

from gapscan.config import Settings, settings
from gapscan.models.domain import (
    ExplorationSuggestion,
    GapType,
    KnowledgeGap,
    TopicInference,
)

logger = logging.getLogger(__name__)

ChatMessage = Dict[str, str]


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------

class ProviderType(str, enum.Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    GROK = "grok"


@dataclasses.dataclass(frozen=True)
class ProviderInfo:
    display_name: str
    endpoint: str
    default_model: str
    requires_api_key: bool = True


PROVIDERS: Dict[ProviderType, ProviderInfo] = {
    ProviderType.OLLAMA: ProviderInfo("Ollama", "http://localhost:11434", "qwen2.5:3b", requires_api_key=False),
    ProviderType.OPENAI: ProviderInfo("OpenAI GPT", "https://api.openai.com/v1", "gpt-5.2"),
    ProviderType.CLAUDE: ProviderInfo("Anthropic Claude", "https://api.anthropic.com/v1", "claude-sonnet-4-5-20250929"),
    ProviderType.GEMINI: ProviderInfo("Google Gemini", "https://generativelanguage.googleapis.com/v1beta", "gemini-3-flash-preview"),
    ProviderType.GROK: ProviderInfo("xAI Grok", "https://api.x.ai/v1", "grok-4-1-fast"),
}


@dataclasses.dataclass
class LLMResponse:
    success: bool
    content: str = ""
    error: Optional[str] = None
    usage: Optional[Dict[str, int]] = None


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------

class LLMProvider:
    """Base adapter: builds a request, posts it with httpx, parses the reply."""

    provider_type: ProviderType = ProviderType.OLLAMA

    def __init__(
        self,
        api_key: str = "",
        model: str = "",
        base_url: str = "",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        info = PROVIDERS[self.provider_type]
        self.api_key = api_key
        self.model = model or info.default_model
        self.base_url = (base_url or info.endpoint).rstrip("/")
        self.timeout = httpx.Timeout(timeout, connect=10.0)
        self._transport = transport

    def is_available(self) -> bool:
        if not PROVIDERS[self.provider_type].requires_api_key:
            return True
        return bool(self.api_key)

    async def generate(self, messages: Sequence[ChatMessage], max_tokens: int = 1024) -> LLMResponse:
        url, headers, body = self.build_request(messages, max_tokens)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, headers=headers, json=body)
        except httpx.TimeoutException:
            logger.error("%s: request timed out", self.provider_type.value)
            return LLMResponse(success=False, error="Request timed out. Please try again.")
        except httpx.HTTPError as exc:
            logger.error("%s: connection error; %s", self.provider_type.value, exc)
            return LLMResponse(success=False, error=str(exc) or exc.__class__.__name__)

        if resp.status_code != 200:
            logger.error(
                "%s: HTTP %d: %s", self.provider_type.value, resp.status_code, resp.text[:300]
            )
            return LLMResponse(success=False, error=self._status_error(resp))

        try:
            data = resp.json()
        except ValueError:
            return LLMResponse(success=False, error="Response was not valid JSON")

        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            return LLMResponse(success=False, error=message or "Unknown provider error")

        try:
            content, usage = self.parse_response(data)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            logger.warning("%s: unexpected response shape; %s", self.provider_type.value, exc)
            return LLMResponse(success=False, error="Unexpected response format")
        return LLMResponse(success=True, content=content, usage=usage)

    def build_request(
        self, messages: Sequence[ChatMessage], max_tokens: int
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        raise NotImplementedError

    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, int]]]:
        raise NotImplementedError

    @staticmethod
    def _status_error(resp: httpx.Response) -> str:
        if resp.status_code == 429:
            return "Rate limit exceeded. Please try again later."
        if resp.status_code in (401, 403):
            return "Invalid API key or unauthorized access."
        return f"HTTP {resp.status_code}"

    @staticmethod
    def _split_system(messages: Sequence[ChatMessage]) -> Tuple[Optional[str], List[ChatMessage]]:
        system: Optional[str] = None
        rest: List[ChatMessage] = []
        for msg in messages:
            if msg["role"] == "system":
                system = msg["content"]
            else:
                rest.append({"role": msg["role"], "content": msg["content"]})
        return system, rest


class OllamaProvider(LLMProvider):
    provider_type = ProviderType.OLLAMA

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("base_url", settings.OLLAMA_BASE_URL)
        super().__init__(*args, **kwargs)

    def build_request(self, messages, max_tokens):
        system, rest = self._split_system(messages)
        body: Dict[str, Any] = {
            "model": self.model,
            "prompt": "\n\n".join(m["content"] for m in rest),
            "stream": False,
            "options": {"num_predict": max_tokens, "temperature": 0.1},
        }
        if system:
            body["system"] = system
        return f"{self.base_url}/api/generate", {}, body

    def parse_response(self, data):
        usage = None
        if "prompt_eval_count" in data or "eval_count" in data:
            prompt_tokens = int(data.get("prompt_eval_count") or 0)
            completion_tokens = int(data.get("eval_count") or 0)
            usage = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            }
        return data.get("response", ""), usage


class OpenAIProvider(LLMProvider):
    provider_type = ProviderType.OPENAI

    def build_request(self, messages, max_tokens):
        headers = {"Authorization": f"Bearer {self.api_key}"}
        body = {
            "model": self.model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "max_tokens": max_tokens,
        }
        return f"{self.base_url}/chat/completions", headers, body

    def parse_response(self, data):
        choices = data.get("choices") or []
        content = ""
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        usage = None
        if data.get("usage"):
            u = data["usage"]
            usage = {
                "prompt_tokens": u.get("prompt_tokens", 0),
                "completion_tokens": u.get("completion_tokens", 0),
                "total_tokens": u.get("total_tokens", 0),
            }
        return content, usage


class GrokProvider(OpenAIProvider):
    """xAI speaks the OpenAI chat-completions protocol."""

    provider_type = ProviderType.GROK


class ClaudeProvider(LLMProvider):
    provider_type = ProviderType.CLAUDE
    API_VERSION = "2023-06-01"

    def build_request(self, messages, max_tokens):
        system, rest = self._split_system(messages)
        headers = {"x-api-key": self.api_key, "anthropic-version": self.API_VERSION}
        body: Dict[str, Any] = {"model": self.model, "messages": rest, "max_tokens": max_tokens}
        if system:
            body["system"] = system
        return f"{self.base_url}/messages", headers, body

    def parse_response(self, data):
        content = "".join(
            block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"
        )
        usage = None
        if data.get("usage"):
            u = data["usage"]
            prompt_tokens = u.get("input_tokens", 0)
            completion_tokens = u.get("output_tokens", 0)
            usage = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            }
        return content, usage


class GeminiProvider(LLMProvider):
    provider_type = ProviderType.GEMINI

    def build_request(self, messages, max_tokens):
        system, rest = self._split_system(messages)
        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in rest
        ]
        # no system role: fold it into the first turn
        if system and contents:
            first = contents[0]["parts"][0]
            first["text"] = f"{system}\n\n{first['text']}"
        url = f"{self.base_url}/models/{self.model}:generateContent?key={self.api_key}"
        body = {"contents": contents, "generationConfig": {"maxOutputTokens": max_tokens}}
        return url, {}, body

    def parse_response(self, data):
        candidates = data.get("candidates") or []
        content = ""
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            if parts:
                content = parts[0].get("text", "")
        usage = None
        meta = data.get("usageMetadata")
        if meta:
            usage = {
                "prompt_tokens": meta.get("promptTokenCount", 0),
                "completion_tokens": meta.get("candidatesTokenCount", 0),
                "total_tokens": meta.get("totalTokenCount", 0),
            }
        return content, usage


PROVIDER_CLASSES: Dict[ProviderType, Type[LLMProvider]] = {
    ProviderType.OLLAMA: OllamaProvider,
    ProviderType.OPENAI: OpenAIProvider,
    ProviderType.CLAUDE: ClaudeProvider,
    ProviderType.GEMINI: GeminiProvider,
    ProviderType.GROK: GrokProvider,
}


def create_provider(
    provider: ProviderType,
    api_key: str = "",
    model: str = "",
    base_url: str = "",
    timeout: float = 60.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LLMProvider:
    cls = PROVIDER_CLASSES[ProviderType(provider)]
    kwargs: Dict[str, Any] = {"api_key": api_key, "model": model, "timeout": timeout, "transport": transport}
    if base_url:
        kwargs["base_url"] = base_url
    return cls(**kwargs)


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


def extract_json(reply: str, opener: str = "{") -> Any:
    """
    The JSON object (``opener="{"``) or array (``"["``) in an LLM reply.

    Code fences and surrounding prose are ignored and trailing commas are
    dropped.  Returns ``None`` when no parseable block is found.
    """
    closer = "}" if opener == "{" else "]"
    fenced = _FENCE_RE.search(reply)
    body = fenced.group(1) if fenced else reply
    start, end = body.find(opener), body.rfind(closer)
    if start == -1 or end < start:
        return None
    fragment = _TRAILING_COMMA_RE.sub(r"\1", body[start : end + 1])
    try:
        return json.loads(fragment)
    except ValueError:
        logger.debug("No JSON %s in reply: %s", opener, reply[:200])
        return None


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

_TOPIC_SYSTEM = "You are a knowledge analyst. Respond only with valid JSON."

_TOPIC_PROMPT = """\
Based on these note titles from a knowledge base, infer the main topic or theme that connects them:

Note titles:
{titles}{excerpts}

Respond with a JSON object:
{{
  "topic": "inferred topic name",
  "confidence": 0.0-1.0,
  "reasoning": "brief explanation"
}}\
"""

_CONCEPT_SYSTEM = "You are a knowledge curator. Be concise."

_CONCEPT_PROMPT = """\
The concept "[[{name}]]" is referenced in a knowledge base but has no dedicated note.

It appears in these notes:
{notes}

Provide a brief description (2-3 sentences) of what this concept likely refers to \
and why it might be worth creating a dedicated note for it.\
"""

_EXPLORATION_SYSTEM = "You are a learning advisor. Respond only with valid JSON array."

_EXPLORATION_PROMPT = """\
A knowledge gap has been detected in a personal knowledge base:

Gap description: {description}

Related existing notes:
{notes}{context}

Suggest 3-5 specific topics or questions to explore to fill this knowledge gap.

Respond with a JSON array:
[
  {{
    "topic": "topic to explore",
    "questions": ["question 1", "question 2"],
    "subtopics": ["subtopic 1", "subtopic 2"],
    "rationale": "why this would help"
  }}
]\
"""


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

@runtime_checkable
class SuggestionService(Protocol):
    def is_available(self) -> bool:
        ...

    async def infer_topic(self, titles: Sequence[str]) -> TopicInference:
        ...

    async def describe_concept(self, name: str, context_docs: Sequence[str]) -> Optional[str]:
        ...

    async def generate_exploration_suggestions(
        self, description: str, related_notes: Sequence[str], context: Optional[str] = None
    ) -> List[ExplorationSuggestion]:
        ...


class LLMSuggestionService:
    """Prompting and response parsing on top of a single :class:`LLMProvider`."""

    MAX_TITLES: int = 10
    MAX_CONTEXT_NOTES: int = 5

    TOPIC_PROMPT = _TOPIC_PROMPT
    CONCEPT_PROMPT = _CONCEPT_PROMPT
    EXPLORATION_PROMPT = _EXPLORATION_PROMPT

    def __init__(self, provider: LLMProvider, max_tokens: int = 1024) -> None:
        self.provider = provider
        self.max_tokens = max_tokens

    def is_available(self) -> bool:
        return self.provider.is_available()

    async def _generate(self, prompt: str, system: Optional[str] = None) -> LLMResponse:
        messages: List[ChatMessage] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return await self.provider.generate(messages, self.max_tokens)

    async def infer_topic(
        self, titles: Sequence[str], excerpts: Optional[Sequence[str]] = None
    ) -> TopicInference:
        excerpt_block = ""
        if excerpts:
            excerpt_block = "\n\nNote excerpts:\n" + "\n---\n".join(list(excerpts)[:5])
        prompt = self.TOPIC_PROMPT.format(
            titles="\n".join(list(titles)[: self.MAX_TITLES]), excerpts=excerpt_block
        )
        response = await self._generate(prompt, _TOPIC_SYSTEM)
        if not response.success or not response.content:
            return TopicInference(
                topic="Unknown", confidence=0.0, reasoning=response.error or "Failed to infer topic"
            )

        parsed = extract_json(response.content, "{")
        if not isinstance(parsed, dict):
            return TopicInference(
                topic=response.content.strip()[:50], confidence=0.3, reasoning="Could not parse response"
            )
        return TopicInference(
            topic=str(parsed.get("topic") or "Unknown"),
            confidence=self._clamp(parsed.get("confidence", 0.5)),
            reasoning=str(parsed.get("reasoning") or ""),
        )

    async def describe_concept(self, name: str, context_docs: Sequence[str]) -> Optional[str]:
        """Short description of an undefined concept, or ``None`` when the call fails."""
        prompt = self.CONCEPT_PROMPT.format(
            name=name,
            notes="\n".join(f"- {n}" for n in list(context_docs)[: self.MAX_CONTEXT_NOTES]),
        )
        response = await self._generate(prompt, _CONCEPT_SYSTEM)
        if response.success and response.content.strip():
            return response.content.strip()
        logger.warning("describe_concept(%r) failed: %s", name, response.error)
        return None

    async def generate_exploration_suggestions(
        self,
        description: str,
        related_notes: Sequence[str],
        context: Optional[str] = None,
    ) -> List[ExplorationSuggestion]:
        prompt = self.EXPLORATION_PROMPT.format(
            description=description,
            notes="\n".join(f"- {n}" for n in list(related_notes)[: self.MAX_CONTEXT_NOTES]),
            context=f"\n\nAdditional context: {context}" if context else "",
        )
        response = await self._generate(prompt, _EXPLORATION_SYSTEM)
        if not response.success or not response.content:
            return []

        parsed = extract_json(response.content, "[")
        if not isinstance(parsed, list):
            return []

        suggestions: List[ExplorationSuggestion] = []
        for item in parsed:
            if not isinstance(item, dict) or not item.get("topic"):
                continue
            suggestions.append(
                ExplorationSuggestion(
                    topic=str(item["topic"]),
                    questions=[str(q) for q in item.get("questions") or []],
                    subtopics=[str(s) for s in item.get("subtopics") or []],
                    rationale=str(item.get("rationale") or ""),
                )
            )
        return suggestions

    @staticmethod
    def _clamp(value: Any, lo: float = 0.0, hi: float = 1.0) -> float:
        try:
            return max(lo, min(hi, float(value)))
        except (TypeError, ValueError):
            return (lo + hi) / 2.0


# ---------------------------------------------------------------------------
# Templated fallbacks
# ---------------------------------------------------------------------------

def fallback_exploration_suggestions(gap: KnowledgeGap) -> List[ExplorationSuggestion]:
    """Suggestions built from the gap alone, one per gap."""
    if gap.type == GapType.SPARSE_REGION:
        return [
            ExplorationSuggestion(
                topic=gap.title,
                questions=[
                    "What are the key concepts in this area?",
                    "How does this relate to your existing knowledge?",
                    "What resources could help you learn more?",
                ],
                subtopics=gap.suggested_topics[:3],
                rationale="This area has fewer notes compared to other parts of your knowledge base.",
            )
        ]
    if gap.type == GapType.UNDEFINED_CONCEPT:
        return [
            ExplorationSuggestion(
                topic=gap.title,
                questions=[
                    f"What is {gap.title}?",
                    f"Why is {gap.title} mentioned in your notes?",
                    f"How does {gap.title} connect to your existing knowledge?",
                ],
                subtopics=[],
                rationale="This concept is frequently referenced but not yet documented.",
            )
        ]
    return [
        ExplorationSuggestion(
            topic=gap.title,
            questions=[
                "What bridges these isolated concepts?",
                "Are there hidden relationships to explore?",
            ],
            subtopics=list(gap.suggested_topics),
            rationale="This area could benefit from better connections to other knowledge.",
        )
    ]


def build_exploration_context(gap: KnowledgeGap) -> str:
    parts = [f"Gap Type: {gap.type.value}", f"Severity: {gap.severity.value}"]
    if gap.related_notes:
        parts.append(f"Related Notes: {', '.join(gap.related_notes[:5])}")
    if gap.suggested_topics:
        parts.append(f"Initial Suggestions: {', '.join(gap.suggested_topics)}")
    return "\n".join(parts)


def build_suggestion_service(
    config: Settings = settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[LLMSuggestionService]:
    """
    Service for the configured provider, or ``None`` when enrichment is
    disabled, the provider name is unknown, or a required API key is missing.
    """
    if not config.LLM_ENABLED:
        return None
    try:
        provider_type = ProviderType(config.LLM_PROVIDER.lower())
    except ValueError:
        logger.warning("Unknown LLM_PROVIDER %r; suggestions disabled", config.LLM_PROVIDER)
        return None

    if PROVIDERS[provider_type].requires_api_key and not config.LLM_API_KEY:
        logger.info("No API key for %s; suggestions disabled", provider_type.value)
        return None

    base_url = config.LLM_BASE_URL
    if provider_type == ProviderType.OLLAMA and not base_url:
        base_url = config.OLLAMA_BASE_URL

    provider = create_provider(
        provider_type,
        api_key=config.LLM_API_KEY,
        model=config.LLM_MODEL,
        base_url=base_url,
        timeout=float(config.LLM_TIMEOUT),
        transport=transport,
    )
    return LLMSuggestionService(provider, max_tokens=config.LLM_MAX_TOKENS)
