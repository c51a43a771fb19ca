import json

from chat_core.domain.exceptions import (
    AuthenticationError,
    PersistenceError,
    PreconditionViolation,
    StreamCancelledError,
    TransportError,
)
from chat_core.domain.models import ChatMessage
from chat_core.session.cancel import CancelToken
from chat_core.session.engine import SessionEngine, SessionListener, SessionState


class SettingsStub:
    system_prompt = "你是 AI 人工智能助手。"


class MemoryCredentials:
    def __init__(self, value="sk-test-123456"):
        self.value = value

    def load(self):
        return self.value

    def save(self, value):
        self.value = value

    def clear(self):
        self.value = None


class MemoryHistory:
    def __init__(self, records=None, fail_save=False):
        self.records = list(records or [])
        self.saves = []
        self.fail_save = fail_save

    def load(self):
        return list(self.records)

    def save(self, value):
        if self.fail_save:
            raise PersistenceError(code="STORE_WRITE_ERROR", message="disk full")
        self.records = [ChatMessage(role=m.role, content=m.content) for m in value]
        self.saves.append([(m.role, m.content) for m in value])

    def clear(self):
        self.records = []


class FakeReader:
    def __init__(self, chunks, error=None):
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def iter_text(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, reader=None, error=None):
        self.reader = reader
        self.error = error
        self.calls = []

    def send(self, messages, cancel_token=None):
        self.calls.append([(m.role, m.content) for m in messages])
        if self.error is not None:
            raise self.error
        return self.reader


def _line(content):
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}) + "\n"


def _engine(transport, credentials=None, history=None):
    return SessionEngine(
        transport=transport,
        credentials=credentials or MemoryCredentials(),
        history_store=history or MemoryHistory(),
        cfg=SettingsStub(),
    )


def test_successful_turn():
    reader = FakeReader([_line("Hel"), _line("lo") + "data: [DONE]\n"])
    transport = FakeTransport(reader=reader)
    history = MemoryHistory()
    engine = _engine(transport, history=history)

    events = list(engine.submit("  hi  "))

    assert [e.kind for e in events] == ["user_message", "assistant_partial", "assistant_partial", "assistant_final"]
    assert [e.text for e in events[1:3]] == ["Hel", "Hello"]
    assert events[1].message_id == events[3].message_id
    assert events[3].message == ChatMessage(role="assistant", content="Hello")
    assert engine.state is SessionState.IDLE
    assert engine.history == [ChatMessage(role="user", content="hi"), ChatMessage(role="assistant", content="Hello")]
    assert transport.calls == [[("system", SettingsStub.system_prompt), ("user", "hi")]]
    assert history.saves == [[("user", "hi")], [("user", "hi"), ("assistant", "Hello")]]
    assert reader.closed


def test_user_message_persisted_before_send():
    history = MemoryHistory()
    engine = _engine(FakeTransport(reader=FakeReader([])), history=history)
    events = engine.submit("hi")
    assert history.saves == [[("user", "hi")]]
    assert engine.state is SessionState.SENDING
    list(events)
    assert engine.state is SessionState.IDLE


def test_partial_text_not_persisted_mid_stream():
    history = MemoryHistory()
    engine = _engine(FakeTransport(reader=FakeReader([_line("a"), _line("b")])), history=history)
    events = engine.submit("hi")
    next(events)
    partial = next(events)
    assert partial.kind == "assistant_partial"
    assert engine.state is SessionState.STREAMING
    assert engine.pending_reply == "a"
    assert history.saves == [[("user", "hi")]]
    list(events)
    assert engine.pending_reply is None


def test_submit_while_streaming_is_rejected():
    transport = FakeTransport(reader=FakeReader([_line("a"), _line("b")]))
    engine = _engine(transport)
    events = engine.submit("first")
    next(events)
    next(events)
    assert engine.state is SessionState.STREAMING
    before = engine.history
    try:
        engine.submit("second")
    except PreconditionViolation as e:
        assert e.code == "REQUEST_IN_FLIGHT"
    else:
        raise AssertionError("expected PreconditionViolation")
    assert engine.history == before
    assert len(transport.calls) == 1
    list(events)
    assert [m.content for m in engine.history] == ["first", "ab"]


def test_submit_while_sending_is_rejected():
    engine = _engine(FakeTransport(reader=FakeReader([])))
    events = engine.submit("first")
    try:
        engine.submit("second")
    except PreconditionViolation:
        pass
    else:
        raise AssertionError("expected PreconditionViolation")
    list(events)


def test_empty_input_and_missing_credential_rejected():
    history = MemoryHistory()
    transport = FakeTransport(reader=FakeReader([]))
    engine = _engine(transport, history=history)
    for text in ("", "   \n\t"):
        try:
            engine.submit(text)
        except PreconditionViolation as e:
            assert e.code == "EMPTY_MESSAGE"
        else:
            raise AssertionError("expected PreconditionViolation")

    no_key = _engine(transport, credentials=MemoryCredentials(value=None), history=history)
    try:
        no_key.submit("hi")
    except PreconditionViolation as e:
        assert e.code == "MISSING_API_KEY"
    else:
        raise AssertionError("expected PreconditionViolation")
    assert history.saves == []
    assert transport.calls == []
    assert engine.state is SessionState.IDLE


def test_auth_failure_on_send_clears_credential():
    credentials = MemoryCredentials()
    history = MemoryHistory()
    engine = _engine(FakeTransport(error=AuthenticationError()), credentials=credentials, history=history)

    events = list(engine.submit("hi"))

    assert [e.kind for e in events] == ["user_message", "auth_required"]
    assert credentials.load() is None
    assert not engine.has_credential
    assert engine.history == [ChatMessage(role="user", content="hi")]
    assert history.records == [ChatMessage(role="user", content="hi")]
    assert engine.state is SessionState.IDLE


def test_auth_failure_mid_stream_discards_partial():
    credentials = MemoryCredentials()
    reader = FakeReader([_line("partial")], error=AuthenticationError())
    engine = _engine(FakeTransport(reader=reader), credentials=credentials)

    events = list(engine.submit("hi"))

    assert [e.kind for e in events] == ["user_message", "assistant_partial", "auth_required"]
    assert credentials.load() is None
    assert engine.history == [ChatMessage(role="user", content="hi")]
    assert engine.pending_reply is None
    assert reader.closed


def test_transport_error_keeps_credential_and_user_message():
    credentials = MemoryCredentials()
    history = MemoryHistory()
    error = TransportError(code="API_ERROR", message="API Error: 500", status=500)
    engine = _engine(FakeTransport(error=error), credentials=credentials, history=history)

    last = engine.send("hi")

    assert last.kind == "error"
    assert last.text == "API Error: 500"
    assert last.error is error
    assert credentials.load() == "sk-test-123456"
    assert history.records == [ChatMessage(role="user", content="hi")]
    assert engine.state is SessionState.IDLE


def test_engine_ready_after_failure():
    transport = FakeTransport(error=TransportError(code="API_ERROR", message="boom", status=502))
    engine = _engine(transport)
    assert engine.send("one").kind == "error"
    transport.error = None
    transport.reader = FakeReader([_line("ok")])
    assert engine.send("two").kind == "assistant_final"
    assert [m.content for m in engine.history] == ["one", "two", "ok"]
    assert transport.calls[1][1:] == [("user", "one"), ("user", "two")]


def test_cancel_mid_stream():
    credentials = MemoryCredentials()
    reader = FakeReader([_line("a"), _line("b"), _line("c")])
    engine = _engine(FakeTransport(reader=reader), credentials=credentials)
    token = CancelToken()
    kinds = []
    for event in engine.submit("hi", cancel_token=token):
        kinds.append(event.kind)
        if event.kind == "assistant_partial":
            assert engine.cancel("stopped by user")
    assert kinds == ["user_message", "assistant_partial", "error"]
    assert token.cancelled
    assert credentials.load() == "sk-test-123456"
    assert engine.history == [ChatMessage(role="user", content="hi")]
    assert reader.closed
    assert not engine.cancel()


def test_cancellation_error_event_carries_reason():
    reader = FakeReader([_line("a")])
    engine = _engine(FakeTransport(reader=reader))
    token = CancelToken()
    token.cancel("gone")
    last = engine.send("hi", cancel_token=token)
    assert last.kind == "error"
    assert isinstance(last.error, StreamCancelledError)
    assert last.text == "gone"


def test_closing_iterator_abandons_turn():
    errors = []

    class Recorder(SessionListener):
        def on_error(self, message):
            errors.append(message)

    reader = FakeReader([_line("a"), _line("b")])
    engine = _engine(FakeTransport(reader=reader))
    engine.add_listener(Recorder())
    events = engine.submit("hi")
    next(events)
    next(events)
    events.close()
    assert engine.state is SessionState.IDLE
    assert reader.closed
    assert engine.history == [ChatMessage(role="user", content="hi")]
    assert errors == ["Turn abandoned"]


def test_closing_unstarted_turn_returns_to_idle():
    errors = []

    class Recorder(SessionListener):
        def on_error(self, message):
            errors.append(message)

    transport = FakeTransport(reader=FakeReader([_line("ok")]))
    engine = _engine(transport)
    engine.add_listener(Recorder())
    events = engine.submit("hi")
    events.close()
    assert engine.state is SessionState.IDLE
    assert not engine.cancel()
    assert errors == ["Turn abandoned"]
    assert transport.calls == []
    assert list(events) == []
    assert engine.send("again").kind == "assistant_final"
    assert [m.content for m in engine.history] == ["hi", "again", "ok"]


def test_dropping_unstarted_turn_returns_to_idle():
    engine = _engine(FakeTransport(reader=FakeReader([])))
    events = engine.submit("hi")
    del events
    assert engine.state is SessionState.IDLE
    engine.clear_history()
    assert engine.history == []


def test_malformed_line_does_not_break_turn():
    reader = FakeReader([_line("a") + "data: {oops\n" + _line("b")])
    last = _engine(FakeTransport(reader=reader)).send("hi")
    assert last.kind == "assistant_final"
    assert last.text == "ab"


def test_unterminated_final_line_is_flushed():
    reader = FakeReader([_line("a") + _line("b").rstrip("\n")])
    events = list(_engine(FakeTransport(reader=reader)).submit("hi"))
    assert [e.text for e in events if e.kind == "assistant_partial"] == ["a", "ab"]
    assert events[-1].text == "ab"


def test_persistence_failure_keeps_in_memory_state():
    engine = _engine(FakeTransport(reader=FakeReader([_line("ok")])), history=MemoryHistory(fail_save=True))
    last = engine.send("hi")
    assert last.kind == "assistant_final"
    assert [m.content for m in engine.history] == ["hi", "ok"]


def test_history_loaded_at_construction():
    history = MemoryHistory(records=[ChatMessage(role="user", content="old"), ChatMessage(role="assistant", content="reply")])
    transport = FakeTransport(reader=FakeReader([_line("new reply")]))
    engine = _engine(transport, history=history)
    engine.send("new")
    assert transport.calls[0] == [
        ("system", SettingsStub.system_prompt),
        ("user", "old"),
        ("assistant", "reply"),
        ("user", "new"),
    ]
    assert len(history.records) == 4


def test_listeners_receive_events_in_order():
    calls = []

    class Recorder(SessionListener):
        def on_user_message_appended(self, message):
            calls.append(("user", message.content))

        def on_assistant_partial(self, message_id, text):
            calls.append(("partial", text))

        def on_assistant_finalized(self, message):
            calls.append(("final", message.content))

        def on_auth_required(self):
            calls.append(("auth",))

        def on_error(self, message):
            calls.append(("error", message))

    transport = FakeTransport(reader=FakeReader([_line("x"), _line("y")]))
    engine = _engine(transport)
    engine.add_listener(Recorder())
    engine.send("hi")
    transport.error = AuthenticationError()
    engine.set_credential("sk-test-123456")
    engine.send("again")
    assert calls == [
        ("user", "hi"),
        ("partial", "x"),
        ("partial", "xy"),
        ("final", "xy"),
        ("user", "again"),
        ("auth",),
    ]


def test_credential_and_history_management():
    credentials = MemoryCredentials(value=None)
    history = MemoryHistory(records=[ChatMessage(role="user", content="old")])
    engine = _engine(FakeTransport(reader=FakeReader([])), credentials=credentials, history=history)
    try:
        engine.set_credential("   ")
    except PreconditionViolation as e:
        assert e.code == "EMPTY_API_KEY"
    else:
        raise AssertionError("expected PreconditionViolation")
    engine.set_credential("  sk-test-123456 ")
    assert credentials.load() == "sk-test-123456"
    engine.clear_history()
    assert engine.history == []
    assert history.records == []
    engine.clear_credential()
    assert not engine.has_credential
