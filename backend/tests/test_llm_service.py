"""Unit tests for chat providers, JSON decoding and the search-request parser."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from claude_agent_sdk import AssistantMessage, CLINotFoundError, ProcessError, TextBlock

from clinical_rag.models.providers import ConfigurationError, ProviderConfig
from clinical_rag.services.llm_service import (
    ChatMessage,
    ChatProviderError,
    ChatRequest,
    ClaudeChatProvider,
    OllamaChatProvider,
    SearchRequestParser,
    decode_model_json,
    get_chat_provider,
)

CLAUDE = ProviderConfig(provider="claude", model="claude-test")
OLLAMA = ProviderConfig(provider="ollama", model="llama3.1", ollama_endpoint="http://ollama")


def _request(*contents: str, system: str = "Be helpful.") -> ChatRequest:
    roles = ["user", "assistant"]
    return ChatRequest(
        system=system,
        messages=[
            ChatMessage(role=roles[i % 2], content=c) for i, c in enumerate(contents)
        ],
    )


# --- Helpers ---


def _make_result_message(*, structured_output=None, is_error=False, result=None):
    """Create a mock ResultMessage."""
    from claude_agent_sdk import ResultMessage

    msg = AsyncMock()
    msg.structured_output = structured_output
    msg.is_error = is_error
    msg.result = result
    msg.subtype = "error" if is_error else "success"
    msg.duration_ms = 10
    msg.__class__ = ResultMessage
    return msg


def _assistant(*texts: str) -> AssistantMessage:
    return AssistantMessage(content=[TextBlock(text=t) for t in texts], model="claude-test")


async def _async_iter(items):
    for item in items:
        yield item


def _options(mock_query):
    return mock_query.call_args.kwargs["options"]


# --- Decoding ---


class TestDecodeModelJson:
    def test_object_passes_through(self) -> None:
        decoded = decode_model_json({"1": 8})
        assert decoded.status == "parsed"
        assert decoded.data == {"1": 8}

    def test_json_text(self) -> None:
        decoded = decode_model_json(' {"1": 8} ')
        assert decoded.status == "parsed"
        assert decoded.data == {"1": 8}

    def test_fenced_block(self) -> None:
        decoded = decode_model_json('Scores:\n```json\n{"1": 4, "2": 6}\n```\nDone.')
        assert decoded.status == "extracted"
        assert decoded.data == {"1": 4, "2": 6}

    def test_object_inside_prose(self) -> None:
        decoded = decode_model_json('Here you go: {"1": 3} hope that helps')
        assert decoded.status == "extracted"
        assert decoded.data == {"1": 3}

    @pytest.mark.parametrize("response", ["no json here", "[1, 2]", 42, None])
    def test_failures(self, response) -> None:
        decoded = decode_model_json(response)
        assert decoded.status == "failed"
        assert decoded.data is None
        assert decoded.error


# --- Search-request parser ---


class TestSearchRequestParser:
    def test_plain_answer(self) -> None:
        parser = SearchRequestParser()
        assert parser.feed("Your A1c was ") == "Your A1c was "
        assert parser.feed("7.2%.") == "7.2%."
        turn = parser.finish()
        assert turn.text == "Your A1c was 7.2%."
        assert turn.search_queries == []
        assert turn.incomplete is False

    def test_marker_split_across_chunks(self) -> None:
        parser = SearchRequestParser()
        shown = [
            parser.feed("Let me look. <sea"),
            parser.feed('rch_request>{"queries": ["hemoglobin a1c", '),
            parser.feed('"CBC"]}</search_'),
            parser.feed("request>"),
        ]
        turn = parser.finish()

        assert "".join(shown) == "Let me look. "
        assert turn.search_queries == ["hemoglobin a1c", "CBC"]
        assert turn.text == "Let me look."
        assert turn.incomplete is False

    def test_held_back_prefix_is_released(self) -> None:
        parser = SearchRequestParser()
        assert parser.feed("a < b and c <") == "a < b and c "
        assert parser.tail == "<"
        assert parser.finish().text == "a < b and c <"

    def test_false_prefix_released_on_next_chunk(self) -> None:
        parser = SearchRequestParser()
        assert parser.feed("x <se") == "x "
        assert parser.feed("t>") == "<set>"

    def test_unclosed_request_is_incomplete(self) -> None:
        parser = SearchRequestParser()
        parser.feed('<search_request>{"queries": ["lipid')
        turn = parser.finish()
        assert turn.incomplete is True
        assert turn.search_queries == []
        assert turn.text == ""

    def test_malformed_request_is_incomplete(self) -> None:
        parser = SearchRequestParser()
        parser.feed("<search_request>lipid panel</search_request>")
        assert parser.finish().incomplete is True

    def test_single_query_string(self) -> None:
        parser = SearchRequestParser()
        parser.feed('<search_request>{"query": "LDL"}</search_request>')
        assert parser.finish().search_queries == ["LDL"]


# --- Provider selection ---


class TestGetChatProvider:
    def test_claude(self) -> None:
        assert isinstance(get_chat_provider(CLAUDE), ClaudeChatProvider)

    def test_ollama(self) -> None:
        assert isinstance(get_chat_provider(OLLAMA), OllamaChatProvider)

    def test_missing_model(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            get_chat_provider(ProviderConfig(provider="claude", model=""))
        assert exc_info.value.code == "MISSING_MODEL"

    def test_ollama_without_endpoint(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            get_chat_provider(ProviderConfig(provider="ollama", model="llama3.1"))
        assert exc_info.value.code == "MISSING_ENDPOINT"


# --- Claude ---


@patch("clinical_rag.services.llm_service.query")
async def test_claude_complete_joins_text(mock_query) -> None:
    mock_query.return_value = _async_iter(
        [_assistant("Your A1c ", "was 7.2%."), _make_result_message(result="done")]
    )

    text = await ClaudeChatProvider(CLAUDE).complete(_request("What was my A1c?"))

    assert text == "Your A1c was 7.2%."
    options = _options(mock_query)
    assert options.model == "claude-test"
    assert options.system_prompt == "Be helpful."
    assert options.allowed_tools == []
    assert options.max_turns == 1
    assert mock_query.call_args.kwargs["prompt"] == "What was my A1c?"


@patch("clinical_rag.services.llm_service.query")
async def test_claude_renders_history_into_prompt(mock_query) -> None:
    mock_query.return_value = _async_iter([_make_result_message(result="")])

    await ClaudeChatProvider(CLAUDE).complete(_request("Hi", "Hello!", "My A1c?"))

    assert mock_query.call_args.kwargs["prompt"] == (
        "User: Hi\n\nAssistant: Hello!\n\nUser: My A1c?"
    )


@patch("clinical_rag.services.llm_service.query")
async def test_claude_structured_output(mock_query) -> None:
    mock_query.return_value = _async_iter(
        [_make_result_message(structured_output={"1": 9})]
    )
    schema = {"type": "object"}

    result = await ClaudeChatProvider(CLAUDE).complete_structured(_request("rate"), schema)

    assert result == {"1": 9}
    options = _options(mock_query)
    assert options.output_format == {"type": "json_schema", "schema": schema}
    assert options.max_turns == 2


@patch("clinical_rag.services.llm_service.query")
async def test_claude_structured_falls_back_to_text(mock_query) -> None:
    mock_query.return_value = _async_iter([_make_result_message(result='{"1": 4}')])

    result = await ClaudeChatProvider(CLAUDE).complete_structured(_request("rate"), {})

    assert result == '{"1": 4}'


@patch("clinical_rag.services.llm_service.query")
async def test_claude_agent_error(mock_query) -> None:
    mock_query.return_value = _async_iter(
        [_make_result_message(is_error=True, result="Overloaded")]
    )

    with pytest.raises(ChatProviderError) as exc_info:
        await ClaudeChatProvider(CLAUDE).complete(_request("hi"))

    assert exc_info.value.code == "AGENT_ERROR"
    assert exc_info.value.message == "Overloaded"


@patch("clinical_rag.services.llm_service.query")
async def test_claude_cli_not_found(mock_query) -> None:
    mock_query.side_effect = CLINotFoundError()

    with pytest.raises(ChatProviderError) as exc_info:
        await ClaudeChatProvider(CLAUDE).complete(_request("hi"))

    assert exc_info.value.code == "CLI_NOT_FOUND"


@patch("clinical_rag.services.llm_service.query")
async def test_claude_process_error(mock_query) -> None:
    mock_query.side_effect = ProcessError("exit 1", exit_code=1)

    with pytest.raises(ChatProviderError) as exc_info:
        await ClaudeChatProvider(CLAUDE).complete(_request("hi"))

    assert exc_info.value.code == "PROCESS_ERROR"


# --- Ollama ---


def _ollama(handler) -> OllamaChatProvider:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://ollama"
    )
    return OllamaChatProvider(OLLAMA, client=client)


def _ndjson(*records: dict) -> bytes:
    return "\n".join(json.dumps(r) for r in records).encode()


class TestOllamaChatProvider:
    async def test_complete_sends_chat_body(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"message": {"content": "Hello"}, "done": True})

        request = _request("Hi")
        request.temperature = 0.1
        text = await _ollama(handler).complete(request)

        assert text == "Hello"
        assert seen["path"] == "/api/chat"
        assert seen["body"]["model"] == "llama3.1"
        assert seen["body"]["stream"] is False
        assert seen["body"]["options"] == {"temperature": 0.1}
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "Be helpful."},
            {"role": "user", "content": "Hi"},
        ]

    async def test_structured_sends_format(self) -> None:
        schema = {"type": "object"}

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["format"] == schema
            assert body["options"]["temperature"] == 0.2
            return httpx.Response(200, json={"message": {"content": '{"1": 7}'}})

        result = await _ollama(handler).complete_structured(_request("rate"), schema)

        assert decode_model_json(result).data == {"1": 7}

    async def test_stream_yields_deltas(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                content=_ndjson(
                    {"message": {"content": "Your "}, "done": False},
                    {"message": {"content": "A1c"}, "done": False},
                    {"message": {"content": ""}, "done": True},
                ),
            )

        chunks = [c async for c in _ollama(handler).stream_complete(_request("q"))]

        assert chunks == ["Your ", "A1c"]

    async def test_stream_without_done_is_incomplete(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=_ndjson({"message": {"content": "Your "}}))

        with pytest.raises(ChatProviderError) as exc_info:
            async for _ in _ollama(handler).stream_complete(_request("q")):
                pass

        assert exc_info.value.code == "STREAM_INCOMPLETE"

    async def test_stream_bad_record(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b'{"message": {"content": "a"}}\nnot json\n')

        with pytest.raises(ChatProviderError) as exc_info:
            async for _ in _ollama(handler).stream_complete(_request("q")):
                pass

        assert exc_info.value.code == "JSON_DECODE_ERROR"

    async def test_http_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": "model not found"})

        with pytest.raises(ChatProviderError) as exc_info:
            await _ollama(handler).complete(_request("q"))

        assert exc_info.value.code == "HTTP_ERROR"
