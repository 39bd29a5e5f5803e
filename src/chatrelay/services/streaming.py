import json
from typing import Any, AsyncIterator, Dict, Iterable

STREAM_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def iter_as_async(it: Iterable[str]) -> AsyncIterator[str]:
    async def gen() -> AsyncIterator[str]:
        for x in it:
            yield x

    return gen()


def sse_event(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def parse_sse_block(block: str) -> tuple[str, Dict[str, Any]]:
    """Split one ``event:``/``data:`` block back into its name and payload."""
    event = "message"
    data_lines = []
    for line in block.splitlines():
        if line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    payload = json.loads("\n".join(data_lines)) if data_lines else {}
    return event, payload
