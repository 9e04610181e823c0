"""
Unit tests for the text/event-stream decoder.
Run: pytest tests/unit/test_sse.py -v
"""
from lineops.stream.sse import SSEDecoder, iter_sse


def feed(lines):
    decoder = SSEDecoder()
    frames = []
    for line in lines:
        frame = decoder.decode(line)
        if frame is not None:
            frames.append(frame)
    return frames


class TestSSEDecoder:
    """Tests for SSEDecoder."""

    def test_named_event_with_data(self):
        frames = feed(["event: line.status", 'data: {"id": "a"}', ""])

        assert len(frames) == 1
        assert frames[0].event == "line.status"
        assert frames[0].data == '{"id": "a"}'

    def test_default_event_name_is_message(self):
        frames = feed(["data: hello", ""])

        assert frames[0].event == "message"

    def test_multiline_data_is_joined(self):
        frames = feed(["data: first", "data: second", ""])

        assert frames[0].data == "first\nsecond"

    def test_comments_and_unknown_fields_are_ignored(self):
        frames = feed([": keep-alive", "foo: bar", "data: x", ""])

        assert frames[0].data == "x"

    def test_blank_line_without_fields_dispatches_nothing(self):
        assert feed(["", "", ": ping", ""]) == []

    def test_id_and_retry(self):
        frames = feed(["id: 7", "retry: 5000", "data: x", ""])

        assert frames[0].id == "7"
        assert frames[0].retry == 5000

    def test_invalid_retry_and_id_are_ignored(self):
        frames = feed(["id: a\0b", "retry: soon", "data: x", ""])

        assert frames[0].id is None
        assert frames[0].retry is None

    def test_value_without_space_after_colon(self):
        frames = feed(["event:connected", "data:{}", ""])

        assert frames[0].event == "connected"
        assert frames[0].data == "{}"

    def test_state_resets_between_frames(self):
        frames = feed(["event: a", "id: 1", "data: 1", "", "data: 2", ""])

        assert frames[1].event == "message"
        assert frames[1].id is None


class TestIterSSE:
    """Tests for iter_sse."""

    async def test_decodes_async_line_stream(self):
        async def lines():
            for line in ["event: connected\r", "data: {}\r", "\r", "data: x", ""]:
                yield line

        frames = [frame async for frame in iter_sse(lines())]

        assert [f.event for f in frames] == ["connected", "message"]
