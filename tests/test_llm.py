import json

import httpx
import pytest

from common.config import LLMSettings
from common.errors import CompletionError, ConfigurationError
from common.schemas import EnrichmentResult, InputKind, LLMResponseMessage
from llm_service.dispatcher import ConversationHistory, EnrichmentDispatcher
from llm_service.openai_client import ChatCompletionClient
from llm_service.parser import parse_response, strip_emphasis
from llm_service.prompts import TEXT_PROMPT, VOICE_PROMPT, build_contextual_prompt, build_messages


class TestParser:
    def test_answers_section(self):
        result = parse_response("Answers:\n- The capital of India is New Delhi.")
        assert result.questions == []
        assert result.answers == ["The capital of India is New Delhi."]
        assert result.suggestions == []
        assert not result.skip

    def test_direct_answer_fallback(self):
        result = parse_response("It will reduce latency significantly.")
        assert result.answers == ["It will reduce latency significantly."]

    def test_multiline_direct_answer_is_joined(self):
        result = parse_response("It will reduce latency\nsignificantly.")
        assert result.answers == ["It will reduce latency significantly."]

    def test_direct_answer_ignored_when_answers_present(self):
        result = parse_response("Sure thing.\nAnswers:\n- Forty two.")
        assert result.answers == ["Forty two."]

    def test_voice_skip_signal(self):
        result = parse_response('{"skip": true}', InputKind.voice)
        assert result.skip
        assert result.questions == [] and result.answers == [] and result.suggestions == []

    def test_typed_input_never_skips(self):
        result = parse_response('{"skip": true}', InputKind.text)
        assert not result.skip
        assert result.answers == ['{"skip": true}']

    def test_skip_false_is_parsed_as_content(self):
        result = parse_response('{"skip": false}', InputKind.voice)
        assert not result.skip

    def test_all_sections_with_markdown(self):
        content = (
            "**Questions:**\n"
            "- What is the budget?\n"
            "\n"
            "**Answers:**\n"
            "• The launch is in May.\n"
            "*Suggestions:*\n"
            "- Book a review\n"
            "- \n"
        )
        result = parse_response(content)
        assert result.questions == ["What is the budget?"]
        assert result.answers == ["The launch is in May."]
        assert result.suggestions == ["Book a review"]

    def test_continuation_lines_extend_last_item(self):
        result = parse_response("Suggestions:\n- Schedule a review\nwith the backend team\n- Ship it")
        assert result.suggestions == ["Schedule a review with the backend team", "Ship it"]

    def test_unbulleted_line_starts_item_in_empty_section(self):
        result = parse_response("Answers:\nNew Delhi.")
        assert result.answers == ["New Delhi."]

    def test_strip_emphasis(self):
        assert strip_emphasis("**bold** _it_ *x*") == "bold it x"


class TestConversationHistory:
    def test_fifo_eviction(self):
        history = ConversationHistory(max_entries=20)
        for i in range(21):
            history.append(f"message {i}")
        assert len(history) == 20
        assert history.items()[0] == "message 1"
        assert history.items()[-1] == "message 20"

    def test_clear(self):
        history = ConversationHistory()
        history.append("a")
        history.clear()
        assert len(history) == 0


class TestPrompts:
    def test_single_entry_has_no_context(self):
        assert build_contextual_prompt(["hello"], "hello") == "hello"

    def test_context_lists_previous_turns(self):
        prompt = build_contextual_prompt(["a", "b", "c"], "c")
        assert prompt == "Previous conversation:\na\nb\n\nCurrent message:\nc"

    def test_prompt_selected_by_input_kind(self):
        assert build_messages(InputKind.voice, ["x"], "x")[0]["content"] == VOICE_PROMPT
        assert build_messages(InputKind.text, ["x"], "x")[0]["content"] == TEXT_PROMPT
        assert '"skip": true' in VOICE_PROMPT
        assert "Never skip" in TEXT_PROMPT


class TestEnrichmentDispatcher:
    @pytest.mark.asyncio
    async def test_process_text_builds_context(self, completion, llm_settings):
        dispatcher = EnrichmentDispatcher(completion, llm_settings)
        await dispatcher.process_text("first", InputKind.voice)
        result = await dispatcher.process_text("second", InputKind.text)

        assert result.answers == ["ok"]
        messages = completion.calls[-1]
        assert messages[0]["content"] == TEXT_PROMPT
        assert messages[1]["content"].endswith("Current message:\nsecond")
        assert dispatcher.history.items() == ["first", "second"]

    @pytest.mark.asyncio
    async def test_failure_becomes_explanation(self, completion, llm_settings):
        completion.responder = lambda messages: CompletionError("rate limited")
        dispatcher = EnrichmentDispatcher(completion, llm_settings)

        result = await dispatcher.process_text("hello", InputKind.voice)
        assert result.failed
        assert result.questions == [] and result.answers == []
        assert "rate limited" in result.suggestions[0]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, completion, llm_settings):
        dispatcher = EnrichmentDispatcher(completion, llm_settings)
        for i in range(25):
            await dispatcher.process_text(f"t{i}")
        assert len(dispatcher.history) == 20

    @pytest.mark.asyncio
    async def test_clear_history(self, completion, llm_settings):
        dispatcher = EnrichmentDispatcher(completion, llm_settings)
        await dispatcher.process_text("hello")
        dispatcher.clear_history()
        assert len(dispatcher.history) == 0


def _completion_body(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestChatCompletionClient:
    def test_missing_key_fails_fast(self):
        with pytest.raises(ConfigurationError):
            ChatCompletionClient(LLMSettings(api_key=""))

    @pytest.mark.asyncio
    async def test_returns_message_content(self, llm_settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_completion_body("Answers:\n- yes"))

        client = ChatCompletionClient(llm_settings, transport=httpx.MockTransport(handler))
        content = await client.complete([{"role": "user", "content": "hi"}])

        assert content == "Answers:\n- yes"
        assert seen[0].url.path.endswith("/chat/completions")
        assert seen[0].headers["Authorization"] == "Bearer sk-test"
        payload = json.loads(seen[0].content)
        assert payload["model"] == llm_settings.model_name
        assert payload["max_tokens"] == 500

    @pytest.mark.asyncio
    async def test_retries_rate_limit_once(self, llm_settings):
        responses = [httpx.Response(429), httpx.Response(200, json=_completion_body("done"))]

        def handler(request):
            return responses.pop(0)

        client = ChatCompletionClient(llm_settings, transport=httpx.MockTransport(handler))
        assert await client.complete([]) == "done"
        assert responses == []

    @pytest.mark.asyncio
    async def test_gives_up_after_retry(self, llm_settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        client = ChatCompletionClient(llm_settings, transport=httpx.MockTransport(handler))
        with pytest.raises(CompletionError):
            await client.complete([])
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, llm_settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        client = ChatCompletionClient(llm_settings, transport=httpx.MockTransport(handler))
        with pytest.raises(CompletionError):
            await client.complete([])
        assert len(calls) == 1


class TestEnrichmentResult:
    def test_wire_shape(self):
        message = LLMResponseMessage(data=EnrichmentResult.failure("boom"), transcript_id="abc")
        data = json.loads(message.to_json())
        assert data == {
            "type": "llm_response",
            "data": {"questions": [], "answers": [], "suggestions": ["boom"], "skip": False},
            "transcriptId": "abc",
        }

    def test_skipped(self):
        result = EnrichmentResult.skipped()
        assert result.skip and not result.failed
