from __future__ import annotations

import asyncio
import base64
import logging

import pytest

from fakes import FakeLeg, realtime_delta, settle, twilio_media, twilio_start, twilio_stop
from relay.errors import PeerError, UpstreamConnectError
from relay.personas import build_routes
from relay.session import RelaySession, SessionState

ROUTES = build_routes(booking_url="https://book.example.com")


def make_session(downstream: FakeLeg, upstream: FakeLeg, *, path: str = "/stream-sales") -> RelaySession:
    async def connect() -> FakeLeg:
        return upstream

    return RelaySession(
        downstream,
        route=ROUTES[path],
        connect_upstream=connect,
        connect_timeout=1.0,
        temperature=0.8,
    )


def commits(leg: FakeLeg) -> list[dict]:
    return leg.sent_of("type", "input_audio_buffer.commit")


def appends(leg: FakeLeg) -> list[dict]:
    return leg.sent_of("type", "input_audio_buffer.append")


def test_start_then_stop_commits_once_and_closes():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        downstream.feed(twilio_start("MZ100"))
        downstream.feed(twilio_stop())

        await asyncio.wait_for(session.run(), 2)
        return session, downstream, upstream

    session, downstream, upstream = asyncio.run(scenario())

    assert session.persona.voice == "alloy"
    assert "sales representative" in session.persona.instructions
    assert session.stream_sid == "MZ100"

    update = upstream.sent[0]
    assert update["type"] == "session.update"
    assert update["session"]["voice"] == "alloy"
    assert update["session"]["instructions"] == session.persona.instructions

    assert len(commits(upstream)) == 1
    assert appends(upstream) == []
    assert session.state is SessionState.CLOSED
    assert not downstream.is_open
    assert not upstream.is_open


def test_media_frame_becomes_one_append_with_double_length():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        downstream.feed(twilio_start("MZ100"))
        downstream.feed(twilio_media(b"\xff" * 160))
        downstream.feed(twilio_stop())

        await asyncio.wait_for(session.run(), 2)
        return upstream

    upstream = asyncio.run(scenario())

    sent = appends(upstream)
    assert len(sent) == 1
    pcm = base64.b64decode(sent[0]["audio"])
    assert len(pcm) == 320
    assert pcm == b"\x00" * 320
    assert len(commits(upstream)) == 1


def test_outbound_media_track_is_not_forwarded():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        frame = twilio_media(b"\xff" * 160)
        frame["media"]["track"] = "outbound"
        downstream.feed(frame)
        downstream.feed(twilio_stop())

        await asyncio.wait_for(session.run(), 2)
        return upstream

    assert appends(asyncio.run(scenario())) == []


def test_audio_delta_is_compressed_and_tagged_with_stream_sid():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        task = asyncio.create_task(session.run())

        downstream.feed(twilio_start("MZ7"))
        await settle()
        upstream.feed(realtime_delta(b"\x00\x00" * 160))
        upstream.feed({"type": "response.done"})
        upstream.feed({"type": "response.done"})
        await settle()

        downstream.hang_up()
        await asyncio.wait_for(task, 2)
        return downstream

    downstream = asyncio.run(scenario())

    media = downstream.sent_of("event", "media")
    assert len(media) == 1
    assert media[0]["streamSid"] == "MZ7"
    assert base64.b64decode(media[0]["media"]["payload"]) == b"\xff" * 160

    marks = downstream.sent_of("event", "mark")
    assert len(marks) == 2
    assert all(mark["streamSid"] == "MZ7" for mark in marks)
    names = [mark["mark"]["name"] for mark in marks]
    assert all(name.startswith("response_") for name in names)
    assert len(set(names)) == 2


def test_second_start_does_not_overwrite_stream_sid():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        downstream.feed(twilio_start("MZ1"))
        downstream.feed(twilio_start("MZ2"))
        downstream.feed(twilio_stop())
        await asyncio.wait_for(session.run(), 2)
        return session

    assert asyncio.run(scenario()).stream_sid == "MZ1"


def test_malformed_and_unknown_messages_do_not_end_the_session():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        task = asyncio.create_task(session.run())

        downstream.feed("not json")
        downstream.feed({"event": "connected", "protocol": "Call"})
        downstream.feed({"event": "media", "media": {"payload": "!!not base64!!"}})
        downstream.feed({"event": "media"})
        downstream.feed(twilio_start("MZ9"))
        upstream.feed("garbage")
        upstream.feed({"type": "session.created"})
        upstream.feed({"type": "error", "error": {"message": "rate limited"}})
        # three PCM bytes is not a whole sample
        upstream.feed({"type": "response.audio.delta", "delta": base64.b64encode(b"\x00\x01\x02").decode()})
        await settle()

        assert session.state is SessionState.ACTIVE
        downstream.feed(twilio_media(b"\x80" * 160))
        downstream.feed(twilio_stop())
        await asyncio.wait_for(task, 2)
        return session, downstream, upstream

    session, downstream, upstream = asyncio.run(scenario())

    assert session.stream_sid == "MZ9"
    assert len(appends(upstream)) == 1
    assert downstream.sent_of("event", "media") == []
    assert session.state is SessionState.CLOSED


@pytest.mark.parametrize(
    ("side", "trigger"),
    [
        ("downstream", "hang_up"),
        ("downstream", "fail"),
        ("upstream", "hang_up"),
        ("upstream", "fail"),
    ],
)
def test_either_leg_going_away_closes_the_other(side: str, trigger: str):
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        task = asyncio.create_task(session.run())
        downstream.feed(twilio_start("MZ100"))
        await settle()
        assert session.state is SessionState.ACTIVE

        leg = downstream if side == "downstream" else upstream
        getattr(leg, trigger)()
        await asyncio.wait_for(task, 2)
        return session, downstream, upstream

    session, downstream, upstream = asyncio.run(scenario())

    assert session.state is SessionState.CLOSED
    assert not downstream.is_open
    assert not upstream.is_open
    assert downstream.close_calls >= 1
    assert upstream.close_calls >= 1


def test_pending_audio_is_committed_when_twilio_hangs_up():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        downstream.feed(twilio_media(b"\xff" * 160))
        downstream.hang_up()
        await asyncio.wait_for(session.run(), 2)
        return upstream

    upstream = asyncio.run(scenario())
    assert len(appends(upstream)) == 1
    assert len(commits(upstream)) == 1


def test_no_commit_without_audio_when_twilio_hangs_up():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        downstream.hang_up()
        await asyncio.wait_for(session.run(), 2)
        return upstream

    assert commits(asyncio.run(scenario())) == []


def test_upstream_connect_failure_closes_downstream_without_activating():
    async def scenario():
        downstream = FakeLeg("twilio")

        async def refuse() -> FakeLeg:
            raise UpstreamConnectError("handshake rejected")

        session = RelaySession(
            downstream,
            route=ROUTES["/stream"],
            connect_upstream=refuse,
            connect_timeout=1.0,
            temperature=0.8,
        )
        await asyncio.wait_for(session.run(), 2)
        return session, downstream

    session, downstream = asyncio.run(scenario())

    assert session.state is SessionState.CLOSED
    assert not downstream.is_open
    assert downstream.sent == []


def test_upstream_connect_is_bounded_by_timeout():
    async def scenario():
        downstream = FakeLeg("twilio")

        async def hang() -> FakeLeg:
            await asyncio.Event().wait()
            raise AssertionError("unreachable")

        session = RelaySession(
            downstream,
            route=ROUTES["/stream"],
            connect_upstream=hang,
            connect_timeout=0.05,
            temperature=0.8,
        )
        await asyncio.wait_for(session.run(), 2)
        return session, downstream

    session, downstream = asyncio.run(scenario())

    assert session.state is SessionState.CLOSED
    assert not downstream.is_open


def test_concurrent_sessions_are_isolated():
    async def scenario():
        down_a, up_a = FakeLeg("twilio-a"), FakeLeg("openai-a")
        down_b, up_b = FakeLeg("twilio-b"), FakeLeg("openai-b")
        sales = make_session(down_a, up_a, path="/stream-sales")
        service = make_session(down_b, up_b, path="/stream-service")
        task_a = asyncio.create_task(sales.run())
        task_b = asyncio.create_task(service.run())

        down_a.feed(twilio_start("MZ-A"))
        down_b.feed(twilio_start("MZ-B"))
        await settle()

        down_a.hang_up()
        await asyncio.wait_for(task_a, 2)
        assert sales.state is SessionState.CLOSED
        assert service.state is SessionState.ACTIVE
        assert up_b.is_open and down_b.is_open

        up_b.feed(realtime_delta(b"\x00\x00" * 80))
        await settle()
        down_b.hang_up()
        await asyncio.wait_for(task_b, 2)
        return sales, service, up_a, up_b, down_b

    sales, service, up_a, up_b, down_b = asyncio.run(scenario())

    assert sales.stream_sid == "MZ-A"
    assert service.stream_sid == "MZ-B"
    assert up_a.sent[0]["session"]["voice"] == "alloy"
    assert up_b.sent[0]["session"]["voice"] == "verse"
    assert up_a.sent[0]["session"]["instructions"] != up_b.sent[0]["session"]["instructions"]
    assert [m["streamSid"] for m in down_b.sent_of("event", "media")] == ["MZ-B"]


def test_media_is_dropped_while_upstream_is_not_open():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        task = asyncio.create_task(session.run())
        downstream.feed(twilio_start("MZ100"))
        await settle()

        upstream.drop()
        downstream.feed(twilio_media(b"\xff" * 160))
        await settle()
        assert session.state is SessionState.ACTIVE

        downstream.hang_up()
        await asyncio.wait_for(task, 2)
        return upstream

    upstream = asyncio.run(scenario())
    assert appends(upstream) == []
    assert commits(upstream) == []


def test_audio_delta_is_dropped_while_twilio_is_not_open():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        task = asyncio.create_task(session.run())
        downstream.feed(twilio_start("MZ100"))
        await settle()

        downstream.drop()
        upstream.feed(realtime_delta(b"\x00\x00" * 160))
        upstream.feed({"type": "response.done"})
        await settle()

        upstream.hang_up()
        await asyncio.wait_for(task, 2)
        return session, downstream

    session, downstream = asyncio.run(scenario())
    assert downstream.sent == []
    assert session.state is SessionState.CLOSED


def test_stop_without_open_upstream_sends_no_commit():
    async def scenario():
        downstream, upstream = FakeLeg("twilio"), FakeLeg("openai")
        session = make_session(downstream, upstream)
        task = asyncio.create_task(session.run())
        downstream.feed(twilio_start("MZ100"))
        await settle()

        upstream.drop()
        downstream.feed(twilio_stop())
        await asyncio.wait_for(task, 2)
        return session, upstream

    session, upstream = asyncio.run(scenario())
    assert commits(upstream) == []
    assert session.state is SessionState.CLOSED


class BrokenAppendLeg(FakeLeg):
    def __init__(self, name: str, error: Exception) -> None:
        super().__init__(name)
        self._error = error

    async def send(self, message: str) -> None:
        if '"input_audio_buffer.append"' in message:
            raise self._error
        await super().send(message)


def test_unexpected_reader_failure_is_logged(caplog):
    async def scenario():
        downstream = FakeLeg("twilio")
        upstream = BrokenAppendLeg("openai", RuntimeError("unexpected send failure"))
        session = make_session(downstream, upstream)
        downstream.feed(twilio_start("MZ100"))
        downstream.feed(twilio_media(b"\xff" * 160))
        await asyncio.wait_for(session.run(), 2)
        return session, downstream, upstream

    with caplog.at_level(logging.ERROR, logger="relay.session"):
        session, downstream, upstream = asyncio.run(scenario())

    assert session.state is SessionState.CLOSED
    assert not downstream.is_open
    assert not upstream.is_open
    failures = [record for record in caplog.records if record.exc_info]
    assert len(failures) == 1
    assert "relay-downstream" in failures[0].getMessage()
    assert isinstance(failures[0].exc_info[1], RuntimeError)


def test_failed_upstream_send_is_reported_against_openai(caplog):
    async def scenario():
        downstream = FakeLeg("twilio")
        upstream = BrokenAppendLeg("openai", PeerError("socket reset"))
        session = make_session(downstream, upstream)
        downstream.feed(twilio_start("MZ100"))
        downstream.feed(twilio_media(b"\xff" * 160))
        await asyncio.wait_for(session.run(), 2)
        return session, downstream

    with caplog.at_level(logging.INFO, logger="relay.session"):
        session, downstream = asyncio.run(scenario())

    assert session.state is SessionState.CLOSED
    assert not downstream.is_open
    messages = [record.getMessage() for record in caplog.records]
    assert "OpenAI connection error: socket reset" in messages
    assert not any(message.startswith("Twilio connection") for message in messages)
