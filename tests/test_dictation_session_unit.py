import asyncio

import pytest

from dictanote import DictationSession, TransientRecognitionError, UnsupportedPlatform

RESTART_DELAY = 0.01
State = DictationSession.State


def make_session(gate, recognition, **kwargs):
    transcripts: list[str] = []
    errors: list[TransientRecognitionError] = []
    session = DictationSession(
        gate,
        recognition,
        on_transcript=transcripts.append,
        on_error=errors.append,
        restart_delay=RESTART_DELAY,
        **kwargs,
    )
    return session, transcripts, errors


async def wait_for_restart():
    await asyncio.sleep(RESTART_DELAY * 5)


def test_start_opens_a_continuous_interim_single_alternative_stream(platform, gate, recognition) -> None:
    session, _, _ = make_session(gate, recognition)
    assert session.state is State.IDLE

    session.start()

    assert session.state is State.LISTENING
    assert session.intentional_stop is False
    assert session.stream is platform.last_stream
    assert platform.last_stream.started
    config = platform.configs[-1]
    assert config.locale == "pt-BR"
    assert config.continuous is True
    assert config.interim_results is True
    assert config.max_alternatives == 1


def test_start_on_unsupported_platform_changes_nothing(platform, gate, recognition) -> None:
    platform.available = False
    session, _, _ = make_session(gate, recognition)

    with pytest.raises(UnsupportedPlatform):
        session.start()

    assert session.state is State.IDLE
    assert session.stream is None
    assert platform.streams == []


def test_at_most_one_live_stream_across_starts(platform, gate, recognition) -> None:
    session, _, _ = make_session(gate, recognition)
    for _ in range(4):
        session.start()
        assert len(platform.live_streams) == 1
        assert session.stream is platform.live_streams[0]

    assert len(platform.streams) == 4
    assert all(stream.stop_calls == 1 for stream in platform.streams[:-1])


def test_stop_before_any_result_delivers_nothing(platform, gate, recognition) -> None:
    session, transcripts, _ = make_session(gate, recognition)
    session.start()
    stream = platform.last_stream

    session.stop()
    # providers may still flush a result and end after being asked to stop
    stream.emit_result(("late words", True))
    stream.emit_end()

    assert transcripts == []
    assert session.state is State.STOPPED
    assert session.stream is None
    assert platform.live_streams == []


def test_stop_sets_flag_before_stopping_the_stream(platform, gate, recognition) -> None:
    session, _, _ = make_session(gate, recognition)
    session.start()
    stream = platform.last_stream
    seen: list[bool] = []
    stream.stop = lambda: seen.append(session.intentional_stop)

    session.stop()

    assert seen == [True]


def test_results_deliver_full_reconstructed_transcript(platform, gate, recognition) -> None:
    session, transcripts, _ = make_session(gate, recognition)
    session.start()
    stream = platform.last_stream

    stream.emit_result(("hel", False))
    stream.emit_result(("hello", False))
    stream.emit_result(("hello world", True))
    stream.emit_result(("hello world", True), (" and", False))
    stream.emit_result(("hello world", True), (" and more", False))

    assert transcripts == ["hel", "hello", "hello world", "hello world and", "hello world and more"]


def test_unexpected_end_restarts_once_and_keeps_transcript(platform, gate, recognition) -> None:
    session, transcripts, _ = make_session(gate, recognition)

    async def scenario():
        session.start()
        first = platform.last_stream
        first.emit_result(("first part", True))

        first.emit_end()
        assert session.state is State.LISTENING
        assert session.stream is None
        assert session.has_pending_restart

        await wait_for_restart()

        assert len(platform.streams) == 2
        assert session.stream is platform.last_stream
        assert session.state is State.LISTENING
        assert session.restart_count == 1

        platform.last_stream.emit_result(("second", False))

    asyncio.run(scenario())
    assert transcripts[-1] == "first part second"


def test_repeated_end_events_schedule_a_single_restart(platform, gate, recognition) -> None:
    session, _, _ = make_session(gate, recognition)

    async def scenario():
        session.start()
        stream = platform.last_stream
        stream.emit_end()
        stream.emit_end()
        await wait_for_restart()

    asyncio.run(scenario())
    assert len(platform.streams) == 2
    assert session.restart_count == 1


def test_each_unexpected_end_gets_its_own_restart(platform, gate, recognition) -> None:
    session, transcripts, _ = make_session(gate, recognition)

    async def scenario():
        session.start()
        for index in range(3):
            platform.last_stream.emit_result((f"part{index}", True))
            platform.last_stream.emit_end()
            await wait_for_restart()

    asyncio.run(scenario())
    assert len(platform.streams) == 4
    assert session.restart_count == 3
    assert session.state is State.LISTENING
    assert transcripts[-1] == "part0 part1 part2"


def test_stop_cancels_a_pending_restart(platform, gate, recognition) -> None:
    session, _, _ = make_session(gate, recognition)

    async def scenario():
        session.start()
        platform.last_stream.emit_end()
        assert session.has_pending_restart
        session.stop()
        await wait_for_restart()

    asyncio.run(scenario())
    assert len(platform.streams) == 1
    assert session.state is State.STOPPED
    assert not session.has_pending_restart


def test_explicit_stop_never_restarts(platform, gate, recognition) -> None:
    session, _, _ = make_session(gate, recognition)

    async def scenario():
        session.start()
        stream = platform.last_stream
        session.stop()
        stream.emit_end()
        await wait_for_restart()

    asyncio.run(scenario())
    assert len(platform.streams) == 1
    assert session.state is State.STOPPED


def test_end_of_stream_replaced_by_a_new_start_is_ignored(platform, gate, recognition) -> None:
    session, _, _ = make_session(gate, recognition)

    async def scenario():
        session.start()
        first = platform.last_stream
        session.start()
        second = platform.last_stream
        first.emit_end()
        await wait_for_restart()
        return second

    second = asyncio.run(scenario())
    assert len(platform.streams) == 2
    assert session.stream is second
    assert session.state is State.LISTENING


def test_error_does_not_change_state_or_restart(platform, gate, recognition) -> None:
    session, _, errors = make_session(gate, recognition)

    async def scenario():
        session.start()
        platform.last_stream.emit_error("network")
        await wait_for_restart()

    asyncio.run(scenario())
    assert session.state is State.LISTENING
    assert len(platform.streams) == 1
    assert len(errors) == 1
    assert errors[0].cause == "network"


def test_restart_cap_stops_the_session(platform, gate, recognition) -> None:
    session, _, errors = make_session(gate, recognition, max_consecutive_restarts=2)

    async def scenario():
        session.start()
        for _ in range(3):
            platform.last_stream.emit_end()
            await wait_for_restart()

    asyncio.run(scenario())
    assert len(platform.streams) == 3
    assert session.state is State.STOPPED
    assert session.stream is None
    assert len(errors) == 1


def test_results_reset_the_restart_cap(platform, gate, recognition) -> None:
    session, _, _ = make_session(gate, recognition, max_consecutive_restarts=1)

    async def scenario():
        session.start()
        for _ in range(3):
            platform.last_stream.emit_result(("words", True))
            platform.last_stream.emit_end()
            await wait_for_restart()

    asyncio.run(scenario())
    assert session.state is State.LISTENING
    assert len(platform.streams) == 4


def test_failed_restart_stops_and_reports(platform, gate, recognition) -> None:
    session, _, errors = make_session(gate, recognition)

    async def scenario():
        session.start()
        platform.fail_on_start = True
        platform.last_stream.emit_end()
        await wait_for_restart()

    asyncio.run(scenario())
    assert session.state is State.STOPPED
    assert session.stream is None
    assert len(errors) == 1


def test_failed_start_raises_transient_error(platform, gate, recognition) -> None:
    platform.fail_on_start = True
    session, _, _ = make_session(gate, recognition)

    with pytest.raises(TransientRecognitionError):
        session.start()

    assert session.state is State.STOPPED
    assert session.stream is None


def test_start_seeds_transcript_with_initial_text(platform, gate, recognition) -> None:
    session, transcripts, _ = make_session(gate, recognition)
    session.start(initial_text="Typed first.")
    platform.last_stream.emit_result(("then dictated", False))
    assert transcripts == ["Typed first. then dictated"]


def test_new_start_resets_the_accumulated_transcript(platform, gate, recognition) -> None:
    session, transcripts, _ = make_session(gate, recognition)
    session.start()
    platform.last_stream.emit_result(("old", True))
    session.stop()
    session.start()
    platform.last_stream.emit_result(("new", True))
    assert transcripts == ["old", "new"]


def test_stop_is_idempotent(platform, gate, recognition) -> None:
    session, _, _ = make_session(gate, recognition)
    session.stop()
    assert session.state is State.IDLE

    session.start()
    stream = platform.last_stream
    session.stop()
    session.stop()
    assert stream.stop_calls == 1
    assert session.state is State.STOPPED


def test_error_of_released_stream_is_not_reported(platform, gate, recognition, capsys) -> None:
    session, _, errors = make_session(gate, recognition)
    session.start()
    first = platform.last_stream
    session.start()

    first.emit_error("late failure")

    assert errors == []
    assert capsys.readouterr().err == ""


def test_error_is_reported_only_through_callback(platform, gate, recognition, capsys) -> None:
    session, _, errors = make_session(gate, recognition)
    session.start()

    platform.last_stream.emit_error("network")

    assert [error.cause for error in errors] == ["network"]
    assert capsys.readouterr().err == ""
