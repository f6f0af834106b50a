"""Chat model providers, model-output decoding and the search-request stream protocol."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator
from typing import Any, Literal, Protocol

import httpx
from claude_agent_sdk import (
    AssistantMessage,
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ClaudeAgentOptions,
    ProcessError,
    ResultMessage,
    TextBlock,
    query,
)
from pydantic import BaseModel, Field

from clinical_rag.models.providers import ConfigurationError, ProviderConfig

logger = logging.getLogger(__name__)


class ChatProviderError(Exception):
    """Raised when a chat provider call fails (network, HTTP, CLI)."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    system: str = ""
    messages: list[ChatMessage] = Field(default_factory=list)
    temperature: float | None = None


class ChatProvider(Protocol):
    config: ProviderConfig

    async def complete(self, request: ChatRequest) -> str: ...

    async def complete_structured(
        self, request: ChatRequest, schema: dict[str, Any]
    ) -> Any: ...

    def stream_complete(self, request: ChatRequest) -> AsyncIterator[str]: ...


# --- Claude (Agent SDK) ---


def _render_transcript(messages: list[ChatMessage]) -> str:
    """Flatten a message history into one prompt for a single-turn query."""
    if len(messages) == 1:
        return messages[0].content
    parts = []
    for message in messages:
        speaker = "User" if message.role == "user" else "Assistant"
        parts.append(f"{speaker}: {message.content}")
    return "\n\n".join(parts)


class ClaudeChatProvider:
    """Single-turn Claude calls through the Claude Agent SDK, no tools."""

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config

    def _options(
        self, request: ChatRequest, schema: dict[str, Any] | None = None
    ) -> ClaudeAgentOptions:
        kwargs: dict[str, Any] = {
            "system_prompt": request.system or None,
            "model": self.config.model,
            "allowed_tools": [],
            "max_turns": 1 if schema is None else 2,
            "permission_mode": "bypassPermissions",
        }
        if schema is not None:
            kwargs["output_format"] = {"type": "json_schema", "schema": schema}
        return ClaudeAgentOptions(**kwargs)

    async def _messages(
        self, request: ChatRequest, schema: dict[str, Any] | None = None
    ) -> AsyncIterator[Any]:
        prompt = _render_transcript(request.messages)
        options = self._options(request, schema)
        logger.debug(
            "Claude query: model=%s prompt=%d chars structured=%s",
            self.config.model,
            len(prompt),
            schema is not None,
        )
        try:
            async for message in query(prompt=prompt, options=options):
                yield message
        except CLINotFoundError:
            raise ChatProviderError(
                code="CLI_NOT_FOUND",
                message="Claude Code CLI not found. Ensure it is installed.",
            )
        except CLIConnectionError as e:
            raise ChatProviderError(
                code="CLI_CONNECTION_ERROR",
                message=f"Failed to connect to Claude CLI: {e}",
            )
        except ProcessError as e:
            raise ChatProviderError(
                code="PROCESS_ERROR",
                message=f"Agent process failed: {e}",
            )
        except CLIJSONDecodeError as e:
            raise ChatProviderError(
                code="JSON_DECODE_ERROR",
                message=f"Failed to parse agent response: {e}",
            )

    @staticmethod
    def _check_result(message: ResultMessage) -> None:
        logger.debug(
            "ResultMessage: subtype=%s duration=%dms is_error=%s",
            message.subtype,
            message.duration_ms,
            message.is_error,
        )
        if message.is_error:
            raise ChatProviderError(
                code="AGENT_ERROR",
                message=message.result or "Model returned an error",
            )

    async def complete(self, request: ChatRequest) -> str:
        texts: list[str] = []
        async for text in self.stream_complete(request):
            texts.append(text)
        return "".join(texts)

    async def complete_structured(
        self, request: ChatRequest, schema: dict[str, Any]
    ) -> Any:
        """Structured output when the SDK provides it, otherwise the raw text."""
        texts: list[str] = []
        async for message in self._messages(request, schema):
            if isinstance(message, AssistantMessage):
                texts.extend(b.text for b in message.content if isinstance(b, TextBlock))
            elif isinstance(message, ResultMessage):
                self._check_result(message)
                if message.structured_output is not None:
                    return message.structured_output
                if message.result:
                    return message.result
        return "".join(texts)

    async def stream_complete(self, request: ChatRequest) -> AsyncIterator[str]:
        async for message in self._messages(request):
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock) and block.text:
                        yield block.text
            elif isinstance(message, ResultMessage):
                self._check_result(message)


# --- Ollama (HTTP) ---


class OllamaChatProvider:
    """Local Ollama models over its ``/api/chat`` endpoint."""

    def __init__(
        self, config: ProviderConfig, client: httpx.AsyncClient | None = None
    ) -> None:
        self.config = config
        self.client = client or httpx.AsyncClient(
            base_url=config.ollama_endpoint, timeout=120
        )

    def _body(
        self, request: ChatRequest, stream: bool, schema: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(m.model_dump() for m in request.messages)
        temperature = (
            request.temperature
            if request.temperature is not None
            else self.config.temperature
        )
        body: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "stream": stream,
            "options": {"temperature": temperature},
        }
        if schema is not None:
            body["format"] = schema
        return body

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self.client.post("/api/chat", json=body)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ChatProviderError(code="HTTP_ERROR", message=f"Ollama request failed: {e}")
        return resp.json()

    async def complete(self, request: ChatRequest) -> str:
        data = await self._post(self._body(request, stream=False))
        return data.get("message", {}).get("content", "")

    async def complete_structured(
        self, request: ChatRequest, schema: dict[str, Any]
    ) -> Any:
        data = await self._post(self._body(request, stream=False, schema=schema))
        return data.get("message", {}).get("content", "")

    async def stream_complete(self, request: ChatRequest) -> AsyncIterator[str]:
        """Yield content deltas; the stream must end with a ``done`` record."""
        done = False
        try:
            async with self.client.stream(
                "POST", "/api/chat", json=self._body(request, stream=True)
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise ChatProviderError(
                            code="JSON_DECODE_ERROR",
                            message=f"Malformed Ollama stream record: {e}",
                        )
                    content = record.get("message", {}).get("content", "")
                    if content:
                        yield content
                    if record.get("done"):
                        done = True
                        break
        except httpx.HTTPError as e:
            raise ChatProviderError(code="HTTP_ERROR", message=f"Ollama stream failed: {e}")
        if not done:
            raise ChatProviderError(
                code="STREAM_INCOMPLETE",
                message="Ollama stream ended without a done record",
            )


def get_chat_provider(config: ProviderConfig) -> ChatProvider:
    """Build the provider for a config, failing before any network call if unusable."""
    config.validate_ready()
    if config.provider == "claude":
        return ClaudeChatProvider(config)
    if config.provider == "ollama":
        return OllamaChatProvider(config)
    raise ConfigurationError(
        code="UNKNOWN_PROVIDER", message=f"Unknown chat provider {config.provider!r}"
    )


# --- Model-output decoding ---


class DecodedResponse(BaseModel):
    """Outcome of decoding a model response into a JSON object."""

    status: Literal["parsed", "extracted", "failed"]
    data: dict[str, Any] | None = None
    error: str | None = None


_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_BARE_JSON = re.compile(r"\{.*\}", re.DOTALL)


def decode_model_json(response: Any) -> DecodedResponse:
    """Normalize a model response (object, JSON text or prose) into one outcome."""
    if isinstance(response, dict):
        return DecodedResponse(status="parsed", data=response)
    if not isinstance(response, str):
        return DecodedResponse(
            status="failed",
            error=f"Unexpected response type {type(response).__name__}",
        )

    text = response.strip()
    candidates = [text]
    candidates.extend(m.group(1) for m in _FENCED_JSON.finditer(text))
    bare = _BARE_JSON.search(text)
    if bare:
        candidates.append(bare.group(0))

    for i, candidate in enumerate(candidates):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return DecodedResponse(status="parsed" if i == 0 else "extracted", data=data)

    preview = text[:200] + ("..." if len(text) > 200 else "")
    return DecodedResponse(status="failed", error=f"No JSON object in response: {preview!r}")


# --- Search-request stream protocol ---

SEARCH_OPEN = "<search_request>"
SEARCH_CLOSE = "</search_request>"


class ModelTurn(BaseModel):
    """A fully received model reply, split into answer text and search requests."""

    text: str
    search_queries: list[str] = Field(default_factory=list)
    incomplete: bool = False


def _parse_queries(body: str) -> list[str] | None:
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict):
        data = data.get("queries", data.get("query"))
    if isinstance(data, str):
        data = [data]
    if not isinstance(data, list):
        return None
    queries = [str(q).strip() for q in data if str(q).strip()]
    return queries or None


class SearchRequestParser:
    """Incremental parser for streamed model output.

    ``feed`` returns only text that is safe to show the user: anything that
    could be the start of a search-request marker is held back until it can
    be decided. A search request counts only once its closing marker arrives.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._visible: list[str] = []
        self._in_request = False
        self._request = ""
        self._queries: list[str] = []
        self._malformed = False

    def feed(self, chunk: str) -> str:
        self._pending += chunk
        out: list[str] = []
        while self._pending:
            if self._in_request:
                # the closing marker may straddle two chunks
                buffer = self._request + self._pending
                end = buffer.find(SEARCH_CLOSE)
                if end < 0:
                    self._request = buffer
                    self._pending = ""
                    break
                self._request = buffer[:end]
                self._pending = buffer[end + len(SEARCH_CLOSE) :]
                self._close_request()
                continue

            start = self._pending.find(SEARCH_OPEN)
            if start >= 0:
                out.append(self._pending[:start])
                self._pending = self._pending[start + len(SEARCH_OPEN) :]
                self._in_request = True
                continue

            # Hold back a suffix that may be the start of the opening marker
            keep = 0
            for size in range(min(len(SEARCH_OPEN) - 1, len(self._pending)), 0, -1):
                if SEARCH_OPEN.startswith(self._pending[-size:]):
                    keep = size
                    break
            out.append(self._pending[: len(self._pending) - keep])
            self._pending = self._pending[len(self._pending) - keep :]
            break

        visible = "".join(out)
        self._visible.append(visible)
        return visible

    def _close_request(self) -> None:
        queries = _parse_queries(self._request.strip())
        if queries is None:
            logger.warning("Unparseable search request: %r", self._request[:200])
            self._malformed = True
        else:
            self._queries.extend(queries)
        self._request = ""
        self._in_request = False

    def finish(self) -> ModelTurn:
        """Flush held-back text and report the completed turn."""
        tail = "" if self._in_request else self._pending
        self._visible.append(tail)
        self._pending = ""
        return ModelTurn(
            text="".join(self._visible).strip(),
            search_queries=self._queries,
            incomplete=self._in_request or self._malformed,
        )

    @property
    def tail(self) -> str:
        """Text released by ``finish`` that ``feed`` had held back."""
        return "" if self._in_request else self._pending

