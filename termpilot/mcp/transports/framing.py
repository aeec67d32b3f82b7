"""Server-Sent Events framing shared by the HTTP transports."""

from dataclasses import dataclass


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None


class SSEDecoder:
    """Incremental decoder fed one line at a time (without line endings)."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._last_id: str | None = None

    def feed_line(self, line: str) -> ServerSentEvent | None:
        """Consume a line; return a complete event on the blank separator."""
        line = line.rstrip("\r")
        if not line:
            return self._flush()
        if line.startswith(":"):
            return None

        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field_name == "event":
            self._event = value
        elif field_name == "data":
            self._data.append(value)
        elif field_name == "id":
            self._last_id = value
        # "retry" and unknown fields are ignored
        return None

    def flush(self) -> ServerSentEvent | None:
        """Emit a trailing event when the stream ends without a blank line."""
        return self._flush()

    def _flush(self) -> ServerSentEvent | None:
        if not self._data and not self._event:
            return None
        event = ServerSentEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._last_id,
        )
        self._event = ""
        self._data = []
        return event
