"""Tests for streaming response handling.

Tests cover:
- SSE event parsing (parse_sse_event pure function)
- FinalMessageBuilder: the authoritative FinalizedTurn
- StreamClassifier: live preview of chat text, offer payload and tools
- FinalizedTurn.followup_content filtering
"""

import pytest

from offerbot.api.stream import (
    BlockStart,
    BlockStop,
    FinalizedTurn,
    FinalMessageBuilder,
    MessageDelta,
    MessageStart,
    MessageStop,
    SignatureDelta,
    StreamClassifier,
    StreamError,
    TextDelta,
    ThinkingDelta,
    ToolInputDelta,
    ToolStart,
    chat_preview_text,
    parse_sse_event,
)
from offerbot.errors import ApiError


def _feed(builder: FinalMessageBuilder, events) -> FinalizedTurn:
    for event in events:
        builder.feed(event)
    return builder.finalize()


def _tool_round(partials: list[str], tool_id: str = "toolu_1", name: str = "get_prices") -> list:
    return [
        MessageStart(message={"usage": {"input_tokens": 100}}),
        BlockStart(index=0, block={"type": "text", "text": ""}),
        TextDelta(index=0, text="Tikrinu kainas."),
        BlockStop(index=0),
        ToolStart(index=1, tool_id=tool_id, name=name),
        *(ToolInputDelta(index=1, partial_json=p) for p in partials),
        BlockStop(index=1),
        MessageDelta(stop_reason="tool_use", usage={"output_tokens": 20}),
        MessageStop(),
    ]


# ---------------------------------------------------------------------------
# TestParseSSEEvent
# ---------------------------------------------------------------------------


class TestParseSSEEvent:
    """Tests for parse_sse_event() -- the pure function."""

    def test_text_delta(self):
        event = parse_sse_event({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": "Sveiki"},
        })
        assert event == TextDelta(index=0, text="Sveiki")

    def test_tool_use_start(self):
        """content_block_start with tool_use returns ToolStart."""
        event = parse_sse_event({
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_abc123", "name": "get_products"},
        })
        assert event == ToolStart(index=1, tool_id="toolu_abc123", name="get_products")

    def test_text_block_start(self):
        event = parse_sse_event({
            "type": "content_block_start",
            "index": 0,
            "content_block": {"type": "text", "text": ""},
        })
        assert isinstance(event, BlockStart)
        assert event.block["type"] == "text"

    def test_thinking_and_signature(self):
        thinking = parse_sse_event({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "thinking_delta", "thinking": "Reikia kainos"},
        })
        signature = parse_sse_event({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "signature_delta", "signature": "sig"},
        })
        assert thinking == ThinkingDelta(index=0, text="Reikia kainos")
        assert signature == SignatureDelta(index=0, signature="sig")

    def test_input_json_delta(self):
        event = parse_sse_event({
            "type": "content_block_delta",
            "index": 2,
            "delta": {"type": "input_json_delta", "partial_json": '{"id":'},
        })
        assert event == ToolInputDelta(index=2, partial_json='{"id":')

    def test_message_delta_carries_stop_reason(self):
        """stop_reason is read from message_delta.delta."""
        event = parse_sse_event({
            "type": "message_delta",
            "delta": {"stop_reason": "end_turn"},
            "usage": {"output_tokens": 42},
        })
        assert event == MessageDelta(stop_reason="end_turn", usage={"output_tokens": 42})

    def test_message_stop_and_block_stop(self):
        assert parse_sse_event({"type": "message_stop"}) == MessageStop()
        assert parse_sse_event({"type": "content_block_stop", "index": 3}) == BlockStop(index=3)

    def test_error_event(self):
        event = parse_sse_event({
            "type": "error",
            "error": {"type": "overloaded_error", "message": "Overloaded"},
        })
        assert event == StreamError(message="overloaded_error: Overloaded")

    def test_ping_and_unknown_ignored(self):
        assert parse_sse_event({"type": "ping"}) is None
        assert parse_sse_event({"type": "something_new"}) is None
        assert parse_sse_event({
            "type": "content_block_delta",
            "delta": {"type": "citations_delta"},
        }) is None


# ---------------------------------------------------------------------------
# TestFinalMessageBuilder
# ---------------------------------------------------------------------------


class TestFinalMessageBuilder:
    def test_tool_input_reassembled(self):
        """Fragmented input_json_delta chunks join into the tool input."""
        turn = _feed(FinalMessageBuilder(), _tool_round(['{"id"', ": 4", "2}"]))
        assert turn.stop_reason == "tool_use"
        assert turn.text == "Tikrinu kainas."
        assert len(turn.tool_invocations) == 1
        invocation = turn.tool_invocations[0]
        assert invocation.id == "toolu_1"
        assert invocation.input == {"id": 42}

    def test_usage_merged(self):
        turn = _feed(FinalMessageBuilder(), _tool_round(["{}"]))
        assert turn.usage == {"input_tokens": 100, "output_tokens": 20}

    def test_invalid_json_gives_empty_input(self):
        turn = _feed(FinalMessageBuilder(), _tool_round(['{"id": ']))
        assert turn.tool_invocations[0].input == {}

    def test_no_input_fragments(self):
        turn = _feed(FinalMessageBuilder(), _tool_round([]))
        assert turn.tool_invocations[0].input == {}

    def test_multiple_tools_in_index_order(self):
        builder = FinalMessageBuilder()
        events = [
            MessageStart(message={}),
            ToolStart(index=0, tool_id="toolu_a", name="get_products"),
            ToolInputDelta(index=0, partial_json='{"q": "HNV"}'),
            BlockStop(index=0),
            ToolStart(index=1, tool_id="toolu_b", name="get_multiplier"),
            BlockStop(index=1),
            MessageDelta(stop_reason="tool_use"),
            MessageStop(),
        ]
        turn = _feed(builder, events)
        assert [i.name for i in turn.tool_invocations] == ["get_products", "get_multiplier"]

    def test_thinking_collected(self):
        events = [
            MessageStart(message={}),
            BlockStart(index=0, block={"type": "thinking", "thinking": ""}),
            ThinkingDelta(index=0, text="Pirma "),
            ThinkingDelta(index=0, text="mintis"),
            SignatureDelta(index=0, signature="abc"),
            BlockStop(index=0),
            BlockStart(index=1, block={"type": "text", "text": ""}),
            TextDelta(index=1, text="Atsakymas"),
            BlockStop(index=1),
            MessageDelta(stop_reason="end_turn"),
            MessageStop(),
        ]
        turn = _feed(FinalMessageBuilder(), events)
        assert turn.thinking == "Pirma mintis"
        assert turn.content[0]["signature"] == "abc"
        assert turn.tool_invocations == []

    def test_incomplete_stream_raises(self):
        builder = FinalMessageBuilder()
        builder.feed(MessageStart(message={}))
        builder.feed(TextDelta(index=0, text="pus"))
        with pytest.raises(ApiError, match="before the message was complete"):
            builder.finalize()

    def test_stream_error_raises(self):
        with pytest.raises(ApiError, match="overloaded"):
            FinalMessageBuilder().feed(StreamError(message="overloaded_error: busy"))

    def test_unclosed_tool_block_closed_on_finalize(self):
        builder = FinalMessageBuilder()
        for event in [
            ToolStart(index=0, tool_id="toolu_x", name="get_prices"),
            ToolInputDelta(index=0, partial_json='{"id": 1}'),
            MessageDelta(stop_reason="max_tokens"),
        ]:
            builder.feed(event)
        turn = builder.finalize()
        assert turn.tool_invocations[0].input == {"id": 1}


class TestFollowupContent:
    def test_empty_blocks_filtered(self):
        turn = FinalizedTurn(
            content=[
                {"type": "thinking", "thinking": "", "signature": "s"},
                {"type": "text", "text": ""},
                {"type": "text", "text": "Tikrinu."},
                {"type": "tool_use", "id": "toolu_1", "name": "get_prices", "input": {}},
            ],
            stop_reason="tool_use",
        )
        blocks = turn.followup_content()
        assert [b["type"] for b in blocks] == ["text", "tool_use"]

    def test_thinking_with_text_kept(self):
        turn = FinalizedTurn(
            content=[{"type": "thinking", "thinking": "x", "signature": "s"}],
            stop_reason="tool_use",
        )
        assert turn.followup_content() == turn.content


# ---------------------------------------------------------------------------
# TestStreamClassifier
# ---------------------------------------------------------------------------


class TestStreamClassifier:
    def test_offer_split_from_chat(self):
        """An offer tag split across deltas never leaks into chat text."""
        classifier = StreamClassifier()
        updates = []
        for text in ["Price: <comm", 'ercial_offer artifact_id="new">key', ': "v"</commercial_offer>']:
            updates.extend(classifier.feed(TextDelta(index=0, text=text)))

        preview = classifier.preview
        assert preview.chat_text == "Price: "
        assert preview.artifact_content == 'key: "v"'
        assert preview.artifact_started is True
        assert preview.in_artifact is False
        chat_updates = [u.text for u in updates if u.type == "chat_preview"]
        assert all("<" not in t for t in chat_updates)
        assert [u.type for u in updates].count("artifact_started") == 1

    def test_in_artifact_while_open(self):
        classifier = StreamClassifier()
        classifier.feed(TextDelta(index=0, text='<commercial_offer artifact_id="new">a: 1'))
        assert classifier.preview.in_artifact is True
        assert classifier.preview.artifact_content == "a: 1"

    def test_text_after_offer_is_chat(self):
        classifier = StreamClassifier()
        classifier.feed(TextDelta(index=0, text='A <commercial_offer artifact_id="new">a: 1</commercial_offer>'))
        classifier.feed(TextDelta(index=0, text=" B"))
        assert classifier.preview.chat_text == "A  B"

    def test_tool_activity(self):
        classifier = StreamClassifier(round_index=2)
        started = classifier.feed(ToolStart(index=1, tool_id="toolu_1", name="get_prices"))
        assert classifier.preview.tool_active is True
        classifier.feed(ToolInputDelta(index=1, partial_json='{"id": 7}'))
        stopped = classifier.feed(BlockStop(index=1))

        assert started[0].type == "tool_active"
        assert started[0].round == 2
        assert stopped[0].type == "tool_inactive"
        assert classifier.preview.tool_active is False
        assert classifier.preview.open_tool is None

    def test_malformed_tool_input_logged(self, caplog):
        classifier = StreamClassifier()
        classifier.feed(ToolStart(index=0, tool_id="toolu_1", name="get_prices"))
        classifier.feed(ToolInputDelta(index=0, partial_json='{"id": '))
        with caplog.at_level("WARNING", logger="offerbot.api.stream"):
            stopped = classifier.feed(BlockStop(index=0))
        assert "malformed input" in caplog.text
        assert stopped[0].type == "tool_inactive"
        assert classifier.preview.open_tool is None

    def test_thinking_not_in_chat(self):
        classifier = StreamClassifier()
        assert classifier.feed(ThinkingDelta(index=0, text="hmm")) == []
        assert classifier.preview.thinking == "hmm"
        assert classifier.preview.chat_text == ""

    def test_other_events_ignored(self):
        classifier = StreamClassifier()
        for event in [MessageStart(message={}), MessageDelta(stop_reason="end_turn"), MessageStop()]:
            assert classifier.feed(event) == []


class TestChatPreviewText:
    @pytest.mark.parametrize("text,expected", [
        ("Sveiki", "Sveiki"),
        ("Kaina <", "Kaina "),
        ("Kaina <commercial_offer artifact_id=", "Kaina "),
        ("a <b> c", "a <b> c"),
    ])
    def test_partial_tag_held_back(self, text, expected):
        assert chat_preview_text(text) == expected
