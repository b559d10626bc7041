import codecs
import logging
from typing import Any, AsyncIterable, Callable, Optional, Union

from .events import EventSink, SinkClosed, done_event, error_event, send_if_open, text_event
from .scanner import SentinelScanner

logger = logging.getLogger("uvicorn.error")

Increment = Union[str, bytes]
PayloadHandler = Callable[[Optional[Any]], bool]


def stop_on_location(payload: Optional[Any]) -> bool:
    return isinstance(payload, dict) and bool(payload.get("location"))


def never_stop(payload: Optional[Any]) -> bool:
    return False


async def _aclose(source: Any) -> None:
    closer = getattr(source, "aclose", None)
    if callable(closer):
        await closer()


class StreamConsumer:
    """Drives one token source through a scanner and forwards safe text to a sink.

    One consumer run owns one buffer; nothing carries over between passes.
    """

    def __init__(self, scanner: SentinelScanner):
        self.scanner = scanner

    async def consume(
        self,
        source: AsyncIterable[Increment],
        sink: EventSink,
        on_payload: PayloadHandler,
    ) -> Optional[Any]:
        buffer = ""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            async for increment in source:
                if isinstance(increment, (bytes, bytearray)):
                    increment = decoder.decode(bytes(increment))
                if not increment:
                    continue
                buffer += increment
                while True:
                    result = self.scanner.scan(buffer)
                    buffer = result.retained
                    if result.emitted:
                        await sink.send(text_event(result.emitted))
                    if not result.matched:
                        break
                    if on_payload(result.payload):
                        return result.payload
            buffer += decoder.decode(b"", final=True)
            visible, pending = self.scanner.split_pending(buffer)
            if pending:
                logger.warning("Discarding unterminated call span (%d chars)", len(pending))
            if visible:
                await sink.send(text_event(visible))
            return None
        finally:
            await _aclose(source)


async def relay_plain(source: AsyncIterable[Increment], sink: EventSink) -> None:
    """Forward a token source verbatim, without marker scanning."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        async for increment in source:
            if isinstance(increment, (bytes, bytearray)):
                increment = decoder.decode(bytes(increment))
            if increment:
                await sink.send(text_event(increment))
        await sink.send(done_event())
    except SinkClosed:
        logger.info("Client disconnected during plain stream")
    except Exception as exc:
        logger.exception("Plain stream failed")
        await send_if_open(sink, error_event(f"Failed to generate response: {exc}"))
    finally:
        await _aclose(source)
