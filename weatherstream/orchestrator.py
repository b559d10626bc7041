import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, Awaitable, Callable, Dict, List, Optional

from .events import (
    EventSink,
    SinkClosed,
    done_event,
    error_event,
    send_if_open,
    tool_call_event,
    tool_response_event,
)
from .markers import DEFAULT_MARKERS, MarkerSet
from .prompts import build_stage1_prompt, build_stage2_prompt
from .scanner import SentinelScanner
from .streaming import Increment, StreamConsumer, never_stop, stop_on_location

logger = logging.getLogger("uvicorn.error")

OpenStream = Callable[[str], AsyncIterable[Increment]]
Lookup = Callable[[str, str], Awaitable[Dict[str, Any]]]


class TurnState(str, Enum):
    STAGE1_STREAMING = "stage1_streaming"
    TOOL_EXECUTING = "tool_executing"
    STAGE2_STREAMING = "stage2_streaming"
    DONE = "done"
    ERROR = "error"


@dataclass
class ConversationTurn:
    request: str
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: TurnState = TurnState.STAGE1_STREAMING
    payload: Optional[Dict[str, Any]] = None
    tool_result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    history: List[TurnState] = field(default_factory=list)

    def advance(self, state: TurnState) -> None:
        self.history.append(self.state)
        self.state = state


class ToolOrchestrator:
    """Runs the two-stage streaming tool-use protocol for one turn at a time.

    Stage 1 streams the model's answer and stops at the first call with a
    location. The tool result is injected between result markers and stage 2
    streams the final answer; any call it emits is stripped but never honored.
    The orchestrator itself holds only configuration, so concurrent turns
    share nothing mutable.
    """

    def __init__(
        self,
        open_stream: OpenStream,
        lookup: Lookup,
        *,
        markers: MarkerSet = DEFAULT_MARKERS,
        default_unit: str = "fahrenheit",
        tool_name: str = "weather",
        max_pending_chars: Optional[int] = None,
    ):
        self.open_stream = open_stream
        self.lookup = lookup
        self.markers = markers
        self.default_unit = default_unit
        self.tool_name = tool_name
        self.max_pending_chars = max_pending_chars

    def _consumer(self) -> StreamConsumer:
        return StreamConsumer(SentinelScanner(self.markers, max_pending_chars=self.max_pending_chars))

    async def run_turn(self, request: str, sink: EventSink) -> ConversationTurn:
        turn = ConversationTurn(request=request)
        try:
            await self._run(turn, sink)
        except SinkClosed:
            logger.info("Turn %s: client disconnected during %s", turn.turn_id, turn.state.value)
            turn.error = "client disconnected"
            turn.advance(TurnState.ERROR)
        except Exception as exc:
            logger.exception("Turn %s failed during %s", turn.turn_id, turn.state.value)
            turn.error = f"Failed to generate response: {exc}"
            turn.advance(TurnState.ERROR)
            await send_if_open(sink, error_event(turn.error))
        return turn

    async def _run(self, turn: ConversationTurn, sink: EventSink) -> None:
        payload = await self._consumer().consume(
            self.open_stream(build_stage1_prompt(self.markers, turn.request)),
            sink,
            stop_on_location,
        )
        if payload is None:
            turn.advance(TurnState.DONE)
            await sink.send(done_event())
            return

        turn.payload = payload
        turn.advance(TurnState.TOOL_EXECUTING)
        await sink.send(tool_call_event(self.tool_name, payload))
        unit = payload.get("unit") or self.default_unit
        turn.tool_result = await self.lookup(str(payload["location"]), unit)
        await sink.send(tool_response_event(turn.tool_result))

        turn.advance(TurnState.STAGE2_STREAMING)
        await self._consumer().consume(
            self.open_stream(build_stage2_prompt(self.markers, turn.request, turn.tool_result)),
            sink,
            never_stop,
        )
        turn.advance(TurnState.DONE)
        await sink.send(done_event())
