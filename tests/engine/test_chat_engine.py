import asyncio

from chatbridge.engine.channel import RequestChannel
from chatbridge.engine.chat_engine import (
    DONE_MARKER,
    aggregate_chat,
    astream_chunks,
    build_generate_request,
    dispatch,
)
from chatbridge.engine.chat_types import ChatRecord, ChatRequest, ChunkChatResponse, OptionArray, Role
from chatbridge.engine.types import (
    CutOff,
    EndOfText,
    FinishReason,
    GenerateRequest,
    PromptTokenCount,
    RequestKind,
    SamplerConfig,
    Stop,
    TokenText,
)


async def _replay(tokens):
    for token in tokens:
        yield token


def _chat(*records: ChatRecord, **kwargs) -> ChatRequest:
    return ChatRequest(messages=OptionArray(array=tuple(records)), **kwargs)


# -----------------------------------------------------------------------------
# Normalization
# -----------------------------------------------------------------------------


def test_prompt_renders_roles_in_order_with_assistant_cue():
    req = _chat(
        ChatRecord(role=Role.SYSTEM, content="  Be brief.\n"),
        ChatRecord(role=Role.USER, content="Hi"),
        ChatRecord(role=Role.ASSISTANT, content="Hello!  "),
        ChatRecord(role=Role.USER, content="\tHow are you?"),
    )
    gen = build_generate_request(req)
    assert gen.prompt == (
        "System: Be brief.\n\n"
        "User: Hi\n\n"
        "Assistant: Hello!\n\n"
        "User: How are you?\n\n"
        "Assistant:"
    )


def test_single_message_item_is_canonicalized():
    req = ChatRequest(messages=OptionArray(item=ChatRecord(content="ping")))
    gen = build_generate_request(req)
    assert gen.prompt == "User: ping\n\nAssistant:"


def test_no_messages_still_cues_assistant():
    gen = build_generate_request(ChatRequest())
    assert gen.prompt == "\n\nAssistant:"


def test_max_tokens_is_clamped_to_ceiling():
    assert build_generate_request(_chat(max_tokens=999999), max_tokens=4096).max_tokens == 4096
    assert build_generate_request(_chat(max_tokens=100), max_tokens=4096).max_tokens == 100


def test_defaults():
    gen = build_generate_request(ChatRequest())
    assert gen.stop == ("\n\n",)
    assert gen.max_tokens == 256
    assert gen.sampler == SamplerConfig(
        temperature=1.0,
        top_p=1.0,
        presence_penalty=0.0,
        frequency_penalty=0.0,
    )
    assert gen.occurrences == {}


def test_stop_and_sampler_are_forwarded():
    req = _chat(
        ChatRecord(content="x"),
        stop=OptionArray(array=("User:", "\n\n")),
        temperature=0.7,
        top_p=0.9,
        presence_penalty=0.2,
        frequency_penalty=0.4,
    )
    gen = build_generate_request(req)
    assert gen.stop == ("User:", "\n\n")
    assert gen.sampler == SamplerConfig(temperature=0.7, top_p=0.9, presence_penalty=0.2, frequency_penalty=0.4)


def test_normalization_is_deterministic():
    req = _chat(ChatRecord(role=Role.SYSTEM, content="s"), ChatRecord(content="u"), max_tokens=12)
    assert build_generate_request(req) == build_generate_request(req)


def test_occurrences_are_not_shared_between_requests():
    req = _chat(ChatRecord(content="u"))
    a = build_generate_request(req)
    b = build_generate_request(req)
    a.occurrences[5] = 1
    assert b.occurrences == {}


def test_role_parse_and_display():
    assert Role.parse("assistant") is Role.ASSISTANT
    assert Role.parse("System") is Role.SYSTEM
    assert str(Role.USER) == "User"
    assert Role.ASSISTANT.value == "assistant"


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------


def test_aggregate_stop():
    stream = [PromptTokenCount(10), TokenText("Hi"), TokenText(" there"), Stop()]
    resp = asyncio.run(aggregate_chat(_replay(stream)))

    data = resp.to_dict()
    assert data["object"] == "chat.completion"
    assert len(data["choices"]) == 1
    choice = data["choices"][0]
    assert choice["index"] == 0
    assert choice["message"] == {"role": "assistant", "content": "Hi there"}
    assert choice["finish_reason"] == "stop"
    assert data["usage"] == {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12}


def test_aggregate_cutoff_reports_length():
    stream = [PromptTokenCount(10), TokenText("Hi"), TokenText(" there"), CutOff()]
    resp = asyncio.run(aggregate_chat(_replay(stream)))
    assert resp.choices[0].finish_reason is FinishReason.LENGTH
    assert resp.choices[0].message.content == "Hi there"
    assert resp.counter.total_tokens == 12


def test_aggregate_end_of_text_reports_length():
    stream = [PromptTokenCount(3), TokenText("a"), EndOfText()]
    resp = asyncio.run(aggregate_chat(_replay(stream)))
    assert resp.choices[0].finish_reason is FinishReason.LENGTH


def test_aggregate_stops_at_first_terminal_event():
    stream = [PromptTokenCount(1), TokenText("a"), Stop(), TokenText("b"), EndOfText()]
    resp = asyncio.run(aggregate_chat(_replay(stream)))
    assert resp.choices[0].message.content == "a"
    assert resp.counter.completion_tokens == 1


def test_aggregate_channel_closed_without_terminal_event():
    stream = [PromptTokenCount(4), TokenText("partial")]
    resp = asyncio.run(aggregate_chat(_replay(stream)))
    data = resp.to_dict()
    assert data["choices"][0]["finish_reason"] is None
    assert data["choices"][0]["message"]["content"] == "partial"
    assert data["usage"] == {"prompt_tokens": 4, "completion_tokens": 1, "total_tokens": 5}


# -----------------------------------------------------------------------------
# Streaming
# -----------------------------------------------------------------------------


async def _collect_chunks(tokens):
    return [event async for event in astream_chunks(_replay(tokens))]


def test_stream_maps_each_event_in_order():
    stream = [PromptTokenCount(10), TokenText("Hi"), TokenText(" there")]
    events = asyncio.run(_collect_chunks(stream))

    assert len(events) == 3
    dicts = [e.to_dict() for e in events]
    for d in dicts:
        assert d["object"] == "chat.completion.chunk"
        assert len(d["choices"]) == 1
        assert d["choices"][0]["index"] == 0
        assert d["choices"][0]["finish_reason"] is None
    assert dicts[0]["choices"][0]["delta"] == {"role": "assistant"}
    assert dicts[1]["choices"][0]["delta"] == {"content": "Hi"}
    assert dicts[2]["choices"][0]["delta"] == {"content": " there"}


def test_stream_terminal_chunks_have_empty_delta():
    events = asyncio.run(_collect_chunks([Stop(), CutOff()]))
    assert events[0].to_dict()["choices"][0] == {"delta": {}, "index": 0, "finish_reason": "stop"}
    assert events[1].to_dict()["choices"][0] == {"delta": {}, "index": 0, "finish_reason": "length"}


def test_stream_end_of_text_yields_only_done_marker():
    events = asyncio.run(_collect_chunks([EndOfText(), TokenText("after")]))
    assert events == [DONE_MARKER]


def test_stream_full_sequence():
    stream = [PromptTokenCount(2), TokenText("ok"), Stop(), EndOfText()]
    events = asyncio.run(_collect_chunks(stream))
    assert [isinstance(e, ChunkChatResponse) for e in events] == [True, True, True, False]
    assert events[-1] == DONE_MARKER


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------


def test_dispatch_submits_chat_envelope():
    requests = RequestChannel()
    gen = GenerateRequest(prompt="User: hi\n\nAssistant:")

    async def _run():
        receiver = dispatch(requests, gen)
        envelope = requests.receive(timeout=0)
        assert envelope is not None
        assert envelope.kind is RequestKind.CHAT
        assert envelope.request is gen

        envelope.token_sender.send(PromptTokenCount(5))
        envelope.token_sender.send(TokenText("yo"))
        envelope.token_sender.send(Stop())
        envelope.token_sender.close()
        return await aggregate_chat(receiver)

    resp = asyncio.run(_run())
    assert resp.choices[0].message.content == "yo"
    assert resp.counter.total_tokens == 6


def test_each_dispatch_gets_its_own_channel():
    requests = RequestChannel()

    async def _run():
        r1 = dispatch(requests, GenerateRequest(prompt="a"))
        r2 = dispatch(requests, GenerateRequest(prompt="b"))
        e1 = requests.receive(timeout=0)
        e2 = requests.receive(timeout=0)
        assert e1.token_sender is not e2.token_sender

        e2.token_sender.send(TokenText("two"))
        e2.token_sender.close()
        e1.token_sender.send(TokenText("one"))
        e1.token_sender.close()
        return await aggregate_chat(r1), await aggregate_chat(r2)

    one, two = asyncio.run(_run())
    assert one.choices[0].message.content == "one"
    assert two.choices[0].message.content == "two"


def test_dispatch_to_closed_engine_yields_empty_stream():
    requests = RequestChannel()
    requests.close()

    async def _run():
        receiver = dispatch(requests, GenerateRequest(prompt="x"))
        return await aggregate_chat(receiver)

    resp = asyncio.run(_run())
    data = resp.to_dict()
    assert data["choices"][0]["message"]["content"] == ""
    assert data["choices"][0]["finish_reason"] is None
    assert data["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
