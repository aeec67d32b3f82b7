from termpilot.mcp.transports.framing import SSEDecoder


def feed(decoder: SSEDecoder, text: str):
    events = []
    for line in text.split("\n"):
        event = decoder.feed_line(line)
        if event is not None:
            events.append(event)
    return events


def test_events_are_split_on_blank_lines():
    events = feed(SSEDecoder(), 'data: {"a": 1}\n\nevent: endpoint\ndata: /messages\n\n')

    assert [(e.event, e.data) for e in events] == [("message", '{"a": 1}'), ("endpoint", "/messages")]


def test_multiline_data_and_comments():
    events = feed(SSEDecoder(), ": keepalive\ndata: first\ndata: second\nretry: 1000\n\n")

    assert len(events) == 1
    assert events[0].data == "first\nsecond"


def test_ids_persist_and_crlf_is_tolerated():
    decoder = SSEDecoder()
    events = feed(decoder, "id: 7\r\ndata: x\r\n\r\ndata: y\r\n\r\n")

    assert [e.id for e in events] == ["7", "7"]
    assert [e.data for e in events] == ["x", "y"]


def test_flush_returns_trailing_event_once():
    decoder = SSEDecoder()
    assert decoder.feed_line("data:no-space") is None

    event = decoder.flush()
    assert event is not None
    assert event.data == "no-space"
    assert decoder.flush() is None
