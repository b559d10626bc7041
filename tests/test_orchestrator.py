import asyncio
import json

import pytest

from weatherstream.orchestrator import ToolOrchestrator, TurnState
from tests.fakes import FakeLMStudioClient, FakeWeatherClient, ListSink, span

AUSTIN = '{"location":"Austin, TX"}'


def make_orchestrator(lm: FakeLMStudioClient, weather: FakeWeatherClient, **kwargs) -> ToolOrchestrator:
    return ToolOrchestrator(
        lambda prompt: lm.stream_prompt(prompt, model="test-model"),
        weather.lookup,
        **kwargs,
    )


def event_kinds(events):
    kinds = []
    for ev in events:
        if "text" in ev:
            kind = "text"
        elif "toolCall" in ev:
            kind = "toolCall"
        elif "toolResponse" in ev:
            kind = "toolResponse"
        elif "error" in ev:
            kind = "error"
        else:
            kind = "done"
        if not kinds or kinds[-1] != kind or kind != "text":
            kinds.append(kind)
    return kinds


@pytest.mark.asyncio
async def test_turn_without_call_finishes_after_stage_one():
    lm = FakeLMStudioClient(scripts=[["Hello ", "world, no call here."]])
    weather = FakeWeatherClient()
    sink = ListSink()
    turn = await make_orchestrator(lm, weather).run_turn("Say hello", sink)
    assert turn.state == TurnState.DONE
    assert turn.history == [TurnState.STAGE1_STREAMING]
    assert sink.texts() == "Hello world, no call here."
    assert sink.events[-1] == {"done": True}
    assert weather.calls == []
    assert len(lm.prompts) == 1


@pytest.mark.asyncio
async def test_detected_call_runs_tool_and_second_stage():
    lm = FakeLMStudioClient(
        scripts=[
            ['<CALL_WEATHER>{"location":"Austin, TX"}', "</CALL_WEATHER>", "ignored tail"],
            ["It is 72 degrees ", "and sunny in Austin."],
        ]
    )
    weather = FakeWeatherClient()
    sink = ListSink()
    turn = await make_orchestrator(lm, weather).run_turn("Weather in Austin?", sink)

    assert turn.state == TurnState.DONE
    assert turn.history == [TurnState.STAGE1_STREAMING, TurnState.TOOL_EXECUTING, TurnState.STAGE2_STREAMING]
    assert event_kinds(sink.events) == ["toolCall", "toolResponse", "text", "done"]
    call = sink.events[0]
    assert call["toolCall"] == "weather"
    assert json.loads(call["toolArgs"]) == {"location": "Austin, TX"}
    assert sink.events[1]["toolResponse"]["condition"] == "Sunny"
    assert weather.calls == [("Austin, TX", "fahrenheit")]
    assert sink.texts() == "It is 72 degrees and sunny in Austin."
    assert "ignored tail" not in sink.texts()
    # Stage one was abandoned as soon as the call appeared.
    assert lm.closed == 2
    assert lm.completed == 1


@pytest.mark.asyncio
async def test_stage_prompts_embed_markers_and_result():
    lm = FakeLMStudioClient(scripts=[[span(AUSTIN)], ["Answer."]])
    weather = FakeWeatherClient(result={"temperature": 70, "unit": "fahrenheit"})
    await make_orchestrator(lm, weather).run_turn("Weather in Austin?", ListSink())

    first, second = lm.prompts
    for marker in ("<CALL_WEATHER>", "</CALL_WEATHER>", "<WEATHER_RESULT>", "</WEATHER_RESULT>"):
        assert marker in first
    assert first.startswith("System: ")
    assert first.endswith("\nUser: Weather in Austin?")
    assert second.startswith(first)
    expected_block = '<WEATHER_RESULT> \n{"temperature": 70, "unit": "fahrenheit"} \n</WEATHER_RESULT>'
    assert second.endswith(expected_block)


@pytest.mark.asyncio
async def test_tool_error_is_forwarded_and_stage_two_still_runs():
    lm = FakeLMStudioClient(scripts=[[span(AUSTIN)], ["Sorry, I could not fetch the weather."]])
    weather = FakeWeatherClient(result={"error": "API key not configured"})
    sink = ListSink()
    turn = await make_orchestrator(lm, weather).run_turn("Weather in Austin?", sink)

    assert turn.state == TurnState.DONE
    assert {"toolResponse": {"error": "API key not configured"}} in sink.events
    assert sink.events[-1] == {"done": True}
    assert not any("error" in ev for ev in sink.events)
    assert len(lm.prompts) == 2


@pytest.mark.asyncio
async def test_unterminated_call_ends_turn_without_tool_call():
    lm = FakeLMStudioClient(scripts=[['<CALL_WEATHER>{"locat']])
    weather = FakeWeatherClient()
    sink = ListSink()
    turn = await make_orchestrator(lm, weather).run_turn("Weather?", sink)
    assert turn.state == TurnState.DONE
    assert sink.events == [{"done": True}]
    assert weather.calls == []


@pytest.mark.asyncio
async def test_malformed_call_is_skipped_silently():
    lm = FakeLMStudioClient(scripts=[[span("{location: Austin}"), "I could not format that request."]])
    weather = FakeWeatherClient()
    sink = ListSink()
    turn = await make_orchestrator(lm, weather).run_turn("Weather?", sink)
    assert turn.state == TurnState.DONE
    assert not any("toolCall" in ev for ev in sink.events)
    assert sink.texts() == "I could not format that request."
    assert weather.calls == []


@pytest.mark.asyncio
async def test_call_without_location_does_not_trigger_tool():
    lm = FakeLMStudioClient(scripts=[[span('{"city":"Austin"}'), "Done."]])
    weather = FakeWeatherClient()
    sink = ListSink()
    turn = await make_orchestrator(lm, weather).run_turn("Weather?", sink)
    assert turn.payload is None
    assert weather.calls == []
    assert sink.events[-1] == {"done": True}


@pytest.mark.asyncio
async def test_only_first_call_is_honored_per_turn():
    lm = FakeLMStudioClient(
        scripts=[
            [span(AUSTIN) + span('{"location":"Paris, FR"}')],
            ["Austin is warm. ", span('{"location":"Oslo"}'), " That is all."],
        ]
    )
    weather = FakeWeatherClient()
    sink = ListSink()
    turn = await make_orchestrator(lm, weather).run_turn("Weather?", sink)
    assert turn.state == TurnState.DONE
    assert [ev for ev in sink.events if "toolCall" in ev] == [
        {"toolCall": "weather", "toolArgs": json.dumps({"location": "Austin, TX"})}
    ]
    assert weather.calls == [("Austin, TX", "fahrenheit")]
    assert sink.texts() == "Austin is warm.  That is all."
    assert "<CALL_WEATHER>" not in sink.texts()


@pytest.mark.asyncio
async def test_requested_unit_overrides_default():
    lm = FakeLMStudioClient(scripts=[[span('{"location":"Oslo, Norway","unit":"celsius"}')], ["Cold."]])
    weather = FakeWeatherClient()
    await make_orchestrator(lm, weather).run_turn("Weather in Oslo in celsius?", ListSink())
    assert weather.calls == [("Oslo, Norway", "celsius")]


@pytest.mark.asyncio
async def test_default_unit_is_configurable():
    lm = FakeLMStudioClient(scripts=[[span('{"location":"Oslo, Norway"}')], ["Cold."]])
    weather = FakeWeatherClient()
    await make_orchestrator(lm, weather, default_unit="celsius").run_turn("Weather?", ListSink())
    assert weather.calls == [("Oslo, Norway", "celsius")]


@pytest.mark.asyncio
async def test_source_failure_emits_single_error():
    lm = FakeLMStudioClient(scripts=[["Let me think about that for a moment... ", RuntimeError("stream reset")]])
    weather = FakeWeatherClient()
    sink = ListSink()
    turn = await make_orchestrator(lm, weather).run_turn("Weather?", sink)
    assert turn.state == TurnState.ERROR
    assert sink.events[-1] == {"error": "Failed to generate response: stream reset"}
    assert not any(ev.get("done") for ev in sink.events)
    assert [ev for ev in sink.events if "error" in ev] == [sink.events[-1]]


@pytest.mark.asyncio
async def test_stage_two_failure_after_tool_result():
    lm = FakeLMStudioClient(scripts=[[span(AUSTIN)], [RuntimeError("model unloaded")]])
    weather = FakeWeatherClient()
    sink = ListSink()
    turn = await make_orchestrator(lm, weather).run_turn("Weather?", sink)
    assert turn.state == TurnState.ERROR
    assert event_kinds(sink.events) == ["toolCall", "toolResponse", "error"]


@pytest.mark.asyncio
async def test_pending_span_overflow_is_a_turn_error():
    lm = FakeLMStudioClient(scripts=[["<CALL_WEATHER>", "x" * 50, "y" * 50]])
    weather = FakeWeatherClient()
    sink = ListSink()
    turn = await make_orchestrator(lm, weather, max_pending_chars=64).run_turn("Weather?", sink)
    assert turn.state == TurnState.ERROR
    assert len(sink.events) == 1
    assert "left open" in sink.events[0]["error"]
    assert lm.closed == 1


@pytest.mark.asyncio
async def test_closed_sink_stops_turn_without_events():
    lm = FakeLMStudioClient(scripts=[["a" * 60, "b" * 60]])
    weather = FakeWeatherClient()
    sink = ListSink()
    sink.close()
    turn = await make_orchestrator(lm, weather).run_turn("Weather?", sink)
    assert turn.state == TurnState.ERROR
    assert turn.error == "client disconnected"
    assert sink.events == []
    assert lm.closed == 1


@pytest.mark.asyncio
async def test_concurrent_turns_do_not_share_state():
    lm = FakeLMStudioClient(
        scripts=[
            [span(AUSTIN)],
            ["Plain answer without any tool use at all."],
            ["Austin report."],
        ]
    )
    weather = FakeWeatherClient()
    orchestrator = make_orchestrator(lm, weather)
    sink_a, sink_b = ListSink(), ListSink()
    turn_a, turn_b = await asyncio.gather(
        orchestrator.run_turn("Weather in Austin?", sink_a),
        orchestrator.run_turn("Tell me a joke", sink_b),
    )
    assert turn_a.turn_id != turn_b.turn_id
    assert turn_a.state == turn_b.state == TurnState.DONE
    assert sum(1 for ev in sink_a.events + sink_b.events if "toolCall" in ev) == 1
    assert sink_a.events[-1] == sink_b.events[-1] == {"done": True}
