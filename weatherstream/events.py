import asyncio
import json
from typing import Any, AsyncIterator, Dict, Protocol


CONNECTION_MESSAGE = "Connection established. Generating response..."


class SinkClosed(Exception):
    """The client side of the event channel has gone away."""


def text_event(text: str) -> Dict[str, Any]:
    return {"text": text}


def tool_call_event(name: str, args: Any) -> Dict[str, Any]:
    return {"toolCall": name, "toolArgs": json.dumps(args)}


def tool_response_event(result: Any) -> Dict[str, Any]:
    return {"toolResponse": result}


def error_event(message: str) -> Dict[str, Any]:
    return {"error": message}


def done_event() -> Dict[str, Any]:
    return {"done": True}


def is_terminal(event: Dict[str, Any]) -> bool:
    return "error" in event or bool(event.get("done"))


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


class EventSink(Protocol):
    async def send(self, event: Dict[str, Any]) -> None:
        ...


class ChannelSink:
    """Queue-backed sink drained by an SSE response generator.

    The producer (a turn task) calls ``send``; the response generator iterates
    ``events()`` until a terminal event arrives. With a ``maxsize`` the producer
    waits on a full queue until the reader catches up. Closing the channel makes every
    later ``send`` raise ``SinkClosed`` so the producer stops writing.
    """

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def send(self, event: Dict[str, Any]) -> None:
        if self.closed:
            raise SinkClosed("client disconnected")
        await self.queue.put(event)

    def close(self) -> None:
        self.closed = True

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            ev = await self.queue.get()
            yield ev
            if is_terminal(ev):
                return


async def send_if_open(sink: EventSink, event: Dict[str, Any]) -> bool:
    """Best-effort write used for terminal error reporting."""
    try:
        await sink.send(event)
    except SinkClosed:
        return False
    return True
