import io
import json

import weatherstream_cli


def test_iter_sse_events_skips_noise():
    lines = [
        "data: " + json.dumps({"text": "Hi"}),
        "",
        ": keep-alive",
        "data: not-json",
        "data: " + json.dumps({"done": True}),
    ]
    assert list(weatherstream_cli.iter_sse_events(lines)) == [{"text": "Hi"}, {"done": True}]


def test_render_event_sequence():
    out = io.StringIO()
    events = [
        {"text": "Checking. "},
        {"toolCall": "weather", "toolArgs": json.dumps({"location": "Austin, TX"})},
        {"toolResponse": {"temperature": 72}},
        {"text": "It is 72."},
    ]
    for ev in events:
        assert weatherstream_cli.render_event(ev, out) is None
    assert weatherstream_cli.render_event({"done": True}, out) == 0
    rendered = out.getvalue()
    assert "Checking. " in rendered
    assert "[Using tool: weather]" in rendered
    assert '"location": "Austin, TX"' in rendered
    assert '"temperature": 72' in rendered
    assert rendered.rstrip().endswith("It is 72.")


def test_render_error_exits_nonzero():
    out = io.StringIO()
    assert weatherstream_cli.render_event({"error": "boom"}, out) == 1
    assert "Error: boom" in out.getvalue()


def test_parser_parses_ask_flags():
    parser = weatherstream_cli.build_parser()
    args = parser.parse_args(["ask", "Weather in Austin?", "--no-tools"])
    assert args.prompt == "Weather in Austin?"
    assert args.no_tools is True
