"""Line-delimited event stream decoding.

Every endpoint of the pipeline service answers with blocks separated by a
blank line, each holding an ``event: <name>`` line and a ``data: <json>``
line. Bytes arrive in arbitrary chunks, so a partial trailing block is kept
in the buffer until its boundary shows up. Blocks that cannot be decoded are
dropped rather than treated as protocol errors.
"""

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass, field

FRAME_DELIMITER = "\n\n"


@dataclass(frozen=True)
class StreamEvent:
    name: str
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class EventVocabulary:
    """The closed set of event names one endpoint may send."""

    endpoint: str
    names: frozenset[str]

    def __contains__(self, name: str) -> bool:
        return name in self.names


def _vocabulary(endpoint: str, *names: str) -> EventVocabulary:
    # Every endpoint can log, finish, or fail
    return EventVocabulary(endpoint, frozenset({"log", "progress", "complete", "error", *names}))


ANALYZE_EVENTS = _vocabulary(
    "/api/analyze", "meeting-info", "requirements", "epic-created", "gap-started", "gap"
)
ANALYZE_GAPS_EVENTS = _vocabulary("/api/analyze-gaps", "gap-started", "gap")
CREATE_ISSUES_EVENTS = _vocabulary("/api/create-issues", "issue")
ASSIGN_AGENT_EVENTS = _vocabulary("/api/assign-coding-agent", "result", "assignment")
LOCAL_AGENT_EVENTS = _vocabulary(
    "/api/execute-local-agent", "item-start", "item-progress", "item-complete"
)
DEPLOY_EVENTS = _vocabulary("/api/deploy", "deploy-url")
VALIDATE_EVENTS = _vocabulary("/api/validate", "validation-start", "result")


def parse_frame(frame: str) -> StreamEvent | None:
    """Decode one block. Returns None when the name or JSON payload is missing or invalid."""
    name = ""
    data_lines = []
    for line in frame.split("\n"):
        if line.startswith("event:"):
            name = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].lstrip(" "))
    if not name or not data_lines:
        return None
    try:
        payload = json.loads("\n".join(data_lines))
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        payload = {"value": payload}
    return StreamEvent(name, payload)


def split_frames(buffer: str) -> tuple[list[str], str]:
    """Split ``buffer`` into complete blocks and the unfinished remainder."""
    *complete, remainder = buffer.split(FRAME_DELIMITER)
    return [frame for frame in complete if frame.strip()], remainder


def _filter(events: Iterable[StreamEvent | None], vocabulary: EventVocabulary | None) -> list[StreamEvent]:
    return [
        event for event in events
        if event is not None and (vocabulary is None or event.name in vocabulary)
    ]


async def iter_events(
    chunks: AsyncIterable[bytes],
    vocabulary: EventVocabulary | None = None,
) -> AsyncIterator[StreamEvent]:
    """Yield decoded events from a raw byte stream as soon as each block completes.

    Events outside ``vocabulary`` are dropped. A well-formed final block that
    the server did not terminate with a blank line is still delivered.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for chunk in chunks:
        buffer += decoder.decode(chunk).replace("\r\n", "\n")
        frames, buffer = split_frames(buffer)
        for event in _filter((parse_frame(f) for f in frames), vocabulary):
            yield event

    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        for event in _filter([parse_frame(buffer.strip("\n"))], vocabulary):
            yield event


def encode_event(name: str, data: dict) -> bytes:
    """Serialize one block the way the service writes it."""
    return f"event: {name}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n".encode("utf-8")
