"""
Event-stream framing tests.

Covers:
  1. Complete bodies: named and unnamed events, multi-line data, no trailing blank line
  2. Live streams: events yielded as they complete, a cut-off event dropped
"""

import asyncio

from services.sse import ServerEvent, aparse_events, parse_events


def test_complete_body_events():
    body = (
        "event: put\n"
        'data: {"path": "/"}\n'
        "\n"
        ": comment line\n"
        "data: first\n"
        "data: second\n"
        "\n"
        "event: keep-alive\n"
        "data: null"
    )
    assert list(parse_events(body.splitlines())) == [
        ServerEvent("put", '{"path": "/"}'),
        ServerEvent("message", "first\nsecond"),
        ServerEvent("keep-alive", "null"),
    ]


def test_blank_lines_alone_yield_nothing():
    assert list(parse_events(["", "", "   "])) == []


def test_live_stream_drops_cut_off_event():
    async def lines():
        for line in ["event: put", "data: 1", "", "event: patch", "data: 2"]:
            yield line

    async def scenario():
        return [event async for event in aparse_events(lines())]

    assert asyncio.run(scenario()) == [ServerEvent("put", "1")]
