"""
generator.py — Structured, cited answers from an LLM
=====================================================

This is where the RAG loop closes:
  Question → Retrieve chunks → Feed to LLM → Answer with page citations

Structured output:
  The model is asked for ONE JSON object matching the Answer schema:

    {"answer": "...", "source_pages": [12, 13],
     "confidence": "high" | "medium" | "low",
     "suggested_follow_ups": ["..."] | null}

  parse_answer() turns raw model text into a validated Answer or raises
  SchemaParseError. It is a pure function: no model, no network, so it is
  tested directly.

Provider-agnostic:
  Same adapter pattern for every LLM: system prompt + user message → text.
  - Anthropic Claude (native SDK)
  - OpenAI-compatible APIs (GPT, OpenRouter, DeepSeek, etc.)
  - Ollama (local models, no API key needed)

Availability:
  Each backend can probe() whether it is ready to answer, reported as an
  AvailabilityState. The orchestrator keeps the current state and only
  re-probes when asked to.

API keys:
  ANTHROPIC_API_KEY, OPENAI_API_KEY, OPENROUTER_API_KEY, DEEPSEEK_API_KEY
"""

import enum
import json
import logging
import os
import re
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field, ValidationError, field_validator

from manual_rag.errors import GeneratorFailed, SchemaParseError

logger = logging.getLogger(__name__)


# ==================== ANSWER SCHEMA ====================

class Confidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Answer(BaseModel):
    """What the model must return for a document question."""

    answer: str = Field(
        min_length=1,
        description="A clear, accurate answer to the user's question based on the manual",
    )
    source_pages: list[int] = Field(
        default_factory=list,
        description="Page numbers from the manual that support this answer",
    )
    confidence: Confidence = Field(
        description="Level of confidence in the answer: high, medium, or low",
    )
    suggested_follow_ups: list[str] | None = Field(
        default=None,
        description="Follow-up questions the user might want to ask, if any",
    )

    @field_validator("confidence", mode="before")
    @classmethod
    def _lowercase_confidence(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("source_pages")
    @classmethod
    def _sorted_pages(cls, pages: list[int]) -> list[int]:
        return sorted({p for p in pages if p > 0})


ANSWER_SCHEMA = Answer.model_json_schema()

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_answer(raw: str) -> Answer:
    """
    Validate raw model output against the Answer schema.

    Accepts bare JSON, JSON inside a ```json fence, or JSON surrounded by
    chatter; the first '{' to the last '}' is taken as the object.
    """
    if not raw or not raw.strip():
        raise SchemaParseError("empty response", raw=raw or "")

    text = raw.strip()
    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise SchemaParseError("no JSON object in response", raw=raw)

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise SchemaParseError(f"invalid JSON: {e.msg}", raw=raw) from e
    if not isinstance(data, dict):
        raise SchemaParseError("response is not a JSON object", raw=raw)

    try:
        return Answer.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "?" for err in e.errors())
        raise SchemaParseError(f"answer does not match schema ({fields})", raw=raw) from e


# ==================== AVAILABILITY ====================

class AvailabilityState(str, enum.Enum):
    CHECKING = "checking"
    AVAILABLE = "available"
    DOWNLOADING = "downloading"
    DISABLED = "disabled"
    DEVICE_UNSUPPORTED = "device_unsupported"
    UNAVAILABLE = "unavailable"

    @property
    def is_available(self) -> bool:
        return self is AvailabilityState.AVAILABLE

    @property
    def message(self) -> str:
        return _AVAILABILITY_MESSAGES[self][0]

    @property
    def remediation(self) -> str:
        return _AVAILABILITY_MESSAGES[self][1]


_AVAILABILITY_MESSAGES = {
    AvailabilityState.CHECKING: (
        "Checking model availability...",
        "Wait for the availability check to finish."),
    AvailabilityState.AVAILABLE: ("", ""),
    AvailabilityState.DOWNLOADING: (
        "The model is still downloading. Please wait and try again.",
        "Pull the model (e.g. `ollama pull <model>`), then re-check availability."),
    AvailabilityState.DISABLED: (
        "Answer generation is disabled: no API key is configured.",
        "Set the provider's API key in your environment, then re-check availability."),
    AvailabilityState.DEVICE_UNSUPPORTED: (
        "The configured model is not offered by this provider or account.",
        "Choose another model preset."),
    AvailabilityState.UNAVAILABLE: (
        "The AI model is currently unavailable.",
        "Check your connection or the model server, then re-check availability."),
}


# ==================== PROMPTS ====================

SYSTEM_PROMPT = """You are an expert automotive assistant answering questions about a vehicle owner's manual.

Rules:
1. Answer ONLY from the provided manual excerpts. Do not use outside knowledge.
2. Cite the page numbers the answer comes from in source_pages.
3. If the excerpts do not contain the answer, say so honestly and set confidence to "low".
4. Be concise but thorough. Don't repeat the question.
5. Suggest 1-2 helpful follow-up questions when appropriate."""

GENERAL_SYSTEM_PROMPT = """You are a helpful automotive assistant specializing in car maintenance and care.
Answer from general automotive knowledge. If the answer depends on the specific vehicle,
suggest uploading the owner's manual. Keep your response concise and actionable."""


def build_context_block(results: list) -> str:
    """Format ranked search results into numbered, delimited excerpts."""
    blocks = []
    for i, r in enumerate(results, 1):
        chunk = r.chunk
        lines = [f"--- Excerpt [{i}] ---"]
        if chunk.heading:
            lines.append(f"Section: {chunk.heading}")
        if chunk.page_numbers:
            lines.append(f"Pages: {', '.join(str(p) for p in chunk.page_numbers)}")
        lines.append(chunk.content.strip())
        blocks.append("\n".join(lines))
    return "Relevant excerpts from the manual:\n\n" + "\n\n".join(blocks)


def build_user_message(document_name: str, query: str, context_block: str) -> str:
    """Build the document question prompt. Question comes after the context (recency bias)."""
    return f"""Manual: "{document_name}"

{context_block}

---

The user asked: "{query}"

Based ONLY on the excerpts above, answer the question accurately and clearly.
If the excerpts don't contain the answer, say so honestly.
Include the page numbers where the information was found.
Rate your confidence as "high", "medium", or "low"."""


def schema_instructions() -> str:
    return ("Respond with a single JSON object and nothing else. "
            "It must conform to this JSON schema:\n" + json.dumps(ANSWER_SCHEMA, indent=2))


# ==================== LLM BACKENDS ====================

class LLMBackend(ABC):
    """
    Abstract base for LLM providers.

    call() takes system prompt + user message and returns (text, usage).
    probe() reports whether call() can be expected to work right now.
    """

    @abstractmethod
    def call(self, system: str, user: str) -> tuple[str, dict]:
        ...

    @abstractmethod
    def probe(self) -> AvailabilityState:
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        ...


class ClaudeBackend(LLMBackend):
    """Anthropic Claude via native SDK."""

    def __init__(self, model: str, max_tokens: int, temperature: float,
                 api_key: str | None = None):
        try:
            import anthropic
        except ImportError:
            raise ImportError("pip install anthropic")

        self._sdk = anthropic
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = None

    @property
    def name(self) -> str:
        return "claude"

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise ValueError("ANTHROPIC_API_KEY not set")
            self._client = self._sdk.Anthropic(api_key=self.api_key)
        return self._client

    def probe(self) -> AvailabilityState:
        if not self.api_key:
            return AvailabilityState.DISABLED
        try:
            self.client.models.retrieve(self.model)
        except self._sdk.AuthenticationError:
            return AvailabilityState.DISABLED
        except self._sdk.NotFoundError:
            return AvailabilityState.DEVICE_UNSUPPORTED
        except self._sdk.APIError as e:
            logger.warning("Claude availability probe failed: %s", e)
            return AvailabilityState.UNAVAILABLE
        return AvailabilityState.AVAILABLE

    def call(self, system: str, user: str) -> tuple[str, dict]:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        text = "".join(block.text for block in response.content if block.type == "text")
        usage = {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        }
        return text, usage


class OpenAIBackend(LLMBackend):
    """
    OpenAI-compatible API — covers GPT, DeepSeek, OpenRouter, vLLM, etc.

    Any provider that speaks /v1/chat/completions works here.
    """

    def __init__(self, model: str, max_tokens: int, temperature: float,
                 base_url: str | None = None, api_key: str | None = None):
        try:
            import openai
        except ImportError:
            raise ImportError("pip install openai")

        # Smart API key resolution
        if api_key is None:
            if base_url and "openrouter" in base_url:
                api_key = os.environ.get("OPENROUTER_API_KEY")
            elif base_url and "deepseek" in base_url:
                api_key = os.environ.get("DEEPSEEK_API_KEY")
            if not api_key:
                api_key = os.environ.get("OPENAI_API_KEY")

        self._sdk = openai
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = None

    @property
    def name(self) -> str:
        for keyword in ["openrouter", "deepseek", "together"]:
            if self.base_url and keyword in self.base_url:
                return keyword
        return "openai"

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise ValueError("No API key found for an OpenAI-compatible provider")
            kwargs = {"api_key": self.api_key}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = self._sdk.OpenAI(**kwargs)
        return self._client

    def probe(self) -> AvailabilityState:
        if not self.api_key:
            return AvailabilityState.DISABLED
        try:
            self.client.models.retrieve(self.model)
        except self._sdk.AuthenticationError:
            return AvailabilityState.DISABLED
        except self._sdk.NotFoundError:
            return AvailabilityState.DEVICE_UNSUPPORTED
        except self._sdk.APIError as e:
            logger.warning("%s availability probe failed: %s", self.name, e)
            return AvailabilityState.UNAVAILABLE
        return AvailabilityState.AVAILABLE

    def call(self, system: str, user: str) -> tuple[str, dict]:
        response = self.client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        text = response.choices[0].message.content or ""
        usage = {}
        if response.usage:
            usage = {
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens,
            }
        return text, usage


class OllamaBackend(OpenAIBackend):
    """
    Ollama for local models — no API key, no cost, full privacy.

    A model that has not been pulled yet reports DOWNLOADING.
    """

    def __init__(self, model: str, max_tokens: int, temperature: float,
                 host: str = "http://localhost:11434"):
        # Ollama ignores the key but the SDK requires one
        super().__init__(model, max_tokens, temperature,
                         base_url=f"{host}/v1", api_key="ollama")

    @property
    def name(self) -> str:
        return "ollama"

    def probe(self) -> AvailabilityState:
        try:
            installed = {m.id for m in self.client.models.list()}
        except self._sdk.APIError as e:
            logger.warning("Ollama availability probe failed: %s", e)
            return AvailabilityState.UNAVAILABLE
        if self.model in installed or f"{self.model}:latest" in installed:
            return AvailabilityState.AVAILABLE
        return AvailabilityState.DOWNLOADING


# ==================== PRESETS ====================

PRESETS = {
    # --- Anthropic ---
    "claude":       {"provider": "claude",  "model": "claude-sonnet-4-20250514"},
    "claude-haiku": {"provider": "claude",  "model": "claude-haiku-4-5-20251001"},

    # --- DeepSeek ---
    "deepseek":     {"provider": "openai",  "model": "deepseek-chat",
                     "base_url": "https://api.deepseek.com/v1"},

    # --- OpenAI ---
    "gpt4o":        {"provider": "openai",  "model": "gpt-4o"},
    "gpt4o-mini":   {"provider": "openai",  "model": "gpt-4o-mini"},

    # --- Local (Ollama) ---
    "llama3":       {"provider": "ollama",  "model": "llama3.1"},
    "mistral":      {"provider": "ollama",  "model": "mistral"},
    "qwen":         {"provider": "ollama",  "model": "qwen2.5"},
}


def list_presets() -> str:
    """List available model presets."""
    lines = ["Available presets:"]
    for name, cfg in PRESETS.items():
        url = cfg.get("base_url", "")
        extra = f"  ({url})" if url else ""
        lines.append(f"  {name:<16} {cfg['provider']:<8} {cfg['model']}{extra}")
    return "\n".join(lines)


def create_backend(
    provider: str,
    model: str,
    max_tokens: int = 1024,
    temperature: float = 0.0,
    base_url: str | None = None,
    api_key: str | None = None,
) -> LLMBackend:
    """Factory — create the right backend from provider string."""
    if provider == "claude":
        return ClaudeBackend(model, max_tokens, temperature, api_key)
    elif provider == "openai":
        return OpenAIBackend(model, max_tokens, temperature, base_url, api_key)
    elif provider == "ollama":
        return OllamaBackend(model, max_tokens, temperature)
    else:
        raise ValueError(f"Unknown provider: {provider!r}. Use: claude, openai, ollama")


def backend_from_preset(preset: str, max_tokens: int = 1024, temperature: float = 0.0) -> LLMBackend:
    if preset not in PRESETS:
        raise ValueError(f"Unknown preset: {preset!r}\n{list_presets()}")
    cfg = PRESETS[preset]
    return create_backend(
        provider=cfg["provider"], model=cfg["model"],
        max_tokens=max_tokens, temperature=temperature,
        base_url=cfg.get("base_url"),
    )


# ==================== GENERATOR ====================

class AnswerGenerator:
    """
    The two generation modes the orchestrator needs, on top of any backend.

      generate_answer(prompt) -> Answer   document questions, schema-validated
      generate_text(prompt)   -> str      document-free questions, free text

    Every failure (provider error, unparseable output) comes out as
    GeneratorFailed. Nothing is retried here; retrying is the caller's call.
    """

    def __init__(self, backend: LLMBackend,
                 system_prompt: str = SYSTEM_PROMPT,
                 general_system_prompt: str = GENERAL_SYSTEM_PROMPT):
        self.backend = backend
        self.system_prompt = system_prompt
        self.general_system_prompt = general_system_prompt

    @property
    def name(self) -> str:
        return self.backend.name

    def probe(self) -> AvailabilityState:
        return self.backend.probe()

    def _call(self, system: str, user: str) -> str:
        try:
            text, usage = self.backend.call(system, user)
        except Exception as e:
            logger.error("Generation failed on %s: %s", self.backend.name, e)
            raise GeneratorFailed(str(e)) from e
        if usage:
            logger.info("Generated with %s (%s in, %s out tokens)", self.backend.name,
                        usage.get("input_tokens", "?"), usage.get("output_tokens", "?"))
        return text

    def generate_answer(self, prompt: str) -> Answer:
        raw = self._call(self.system_prompt, f"{prompt}\n\n{schema_instructions()}")
        try:
            return parse_answer(raw)
        except SchemaParseError as e:
            logger.error("Unparseable answer from %s: %s", self.backend.name, e)
            raise GeneratorFailed(f"unparseable answer: {e}") from e

    def generate_text(self, prompt: str) -> str:
        text = self._call(self.general_system_prompt, prompt).strip()
        if not text:
            raise GeneratorFailed("empty response")
        return text
