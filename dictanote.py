from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Callable, Sequence
from datetime import datetime
from enum import Enum, StrEnum
from typing import NamedTuple

from rich.console import Console


class ConsoleWithLogging:
    """Console wrapper that outputs to both stdout and a log file"""

    def __init__(self, log_file, default_log_width=5000):
        self.console = Console()
        self.log_console = Console(
            file=log_file,
            force_terminal=False,
            legacy_windows=False,
            width=default_log_width,
        )

    def print_and_log(self, *objects, log_max_width=None, **kwargs):
        """Print to both console and log file

        Args:
            *objects: What to display
            log_max_width: If specified, limits width in log (must be <= default_log_width)
            **kwargs: Other arguments passed to print()
        """
        self.console.print(*objects, **kwargs)
        self.log_console.print(*objects, **kwargs, width=log_max_width)

    def print(self, *objects, **kwargs):
        """Print only to console, not to log"""
        self.console.print(*objects, **kwargs)

    def log(self, *objects, **kwargs):
        """Print only to the log file"""
        self.log_console.print(f"[{datetime.now():%Y-%m-%d %H:%M:%S}]", *objects, **kwargs)


DEBUG_TO_STDOUT = os.getenv("DICTANOTE_DEBUG", "false").lower() == "true"


def debug(*args) -> None:
    if not DEBUG_TO_STDOUT:
        return
    print(f"[{datetime.now()}]", *args, file=sys.stdout)


def errprint(*args) -> None:
    print(*args, file=sys.stderr)


class DictationError(Exception):
    pass


class UnsupportedPlatform(DictationError):
    def __init__(self, message: str = "Speech recognition is not supported in this environment"):
        super().__init__(message)
        self.message = message


class TransientRecognitionError(DictationError):
    def __init__(self, cause: object, message: str | None = None):
        super().__init__(message or f"Speech recognition error: {cause}")
        self.cause = cause


class Advisory(NamedTuple):
    class Kind(StrEnum):
        UNSUPPORTED = "unsupported"
        RESTRICTED_ENVIRONMENT = "restricted_environment"
        NOTE_CREATED = "note_created"

    kind: Advisory.Kind
    message: str


UNSUPPORTED_MESSAGE = "Speech recognition is not available here: check your API key and microphone, or type your note instead."
RESTRICTED_ENVIRONMENT_MESSAGE = "This environment may block microphone access. If dictation fails, try running outside of it."
NOTE_CREATED_MESSAGE = "Note created!"


class Folder(NamedTuple):
    id: str
    name: str


class SavedNote(NamedTuple):
    content: str
    folder_id: str | None


class RecognitionConfig(NamedTuple):
    locale: str | None
    continuous: bool = True
    interim_results: bool = True
    max_alternatives: int = 1


class Segment(NamedTuple):
    text: str
    is_final: bool


class TranscriptSegments:
    """Ordered transcript segments of one recognition stream.

    Only the trailing segment can be interim: a new interim text replaces it, a final text replaces it and
    closes it, so the next update opens a new segment.
    """

    def __init__(self):
        self._segments: list[Segment] = []

    def update(self, text: str, is_final: bool) -> None:
        segment = Segment(text=text, is_final=is_final)
        if self._segments and not self._segments[-1].is_final:
            self._segments[-1] = segment
        else:
            self._segments.append(segment)

    @property
    def segments(self) -> tuple[Segment, ...]:
        return tuple(self._segments)

    @property
    def has_open_segment(self) -> bool:
        return bool(self._segments) and not self._segments[-1].is_final

    @property
    def closed_text(self) -> str:
        closed = self._segments[:-1] if self.has_open_segment else self._segments
        return join_segments(closed)

    @property
    def text(self) -> str:
        return join_segments(self._segments)


def join_segments(segments: Sequence[Segment]) -> str:
    return "".join(segment.text for segment in segments)


def join_transcripts(previous: str, current: str) -> str:
    if not previous:
        return current
    if not current:
        return previous
    if previous[-1].isspace() or current[0].isspace():
        return previous + current
    return f"{previous} {current}"


class RecognitionStream:
    """One provider speech-recognition stream.

    The owner assigns the ``on_result``, ``on_error`` and ``on_end`` handlers before calling ``start()``.
    ``stop()`` only asks the provider to finish: ``on_end`` fires later, once the stream is really over.
    """

    def __init__(self, config: RecognitionConfig):
        self.config = config
        self.on_result: Callable[[Sequence[Segment]], None] | None = None
        self.on_error: Callable[[object], None] | None = None
        self.on_end: Callable[[], None] | None = None

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def _emit_result(self, segments: Sequence[Segment]) -> None:
        if self.on_result is not None:
            self.on_result(tuple(segments))

    def _emit_error(self, cause: object) -> None:
        if self.on_error is not None:
            self.on_error(cause)

    def _emit_end(self) -> None:
        if self.on_end is not None:
            self.on_end()


class SpeechPlatform:
    def is_available(self) -> bool:
        raise NotImplementedError

    def create_stream(self, config: RecognitionConfig) -> RecognitionStream:
        raise NotImplementedError

    async def is_restricted_environment(self) -> bool:
        raise NotImplementedError


class FeatureGate:
    def __init__(self, platform: SpeechPlatform | None):
        self.platform = platform
        self._background_tasks: set[asyncio.Task] = set()

    def is_available(self) -> bool:
        if self.platform is None:
            return False
        try:
            return bool(self.platform.is_available())
        except Exception as exc:
            debug("[GATE] availability check failed", exc)
            return False

    async def check_restricted_environment(self) -> Advisory | None:
        if self.platform is None:
            return None
        try:
            restricted = await self.platform.is_restricted_environment()
        except Exception as exc:
            # unsupported or failing probes are not worth bothering the user
            debug("[GATE] restricted environment check ignored", repr(exc))
            return None
        if not restricted:
            return None
        return Advisory(Advisory.Kind.RESTRICTED_ENVIRONMENT, RESTRICTED_ENVIRONMENT_MESSAGE)

    def warn_if_restricted_environment(self, on_advisory: Callable[[Advisory], None]) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None

        async def _check():
            if (advisory := await self.check_restricted_environment()) is not None:
                on_advisory(advisory)

        task = loop.create_task(_check())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def cancel_pending_checks(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()


class DictationSession:
    RESTART_DELAY_S = 0.2

    class State(Enum):
        IDLE = "idle"
        LISTENING = "listening"
        STOPPED = "stopped"

    def __init__(
        self,
        gate: FeatureGate,
        config: RecognitionConfig,
        on_transcript: Callable[[str], None],
        on_error: Callable[[TransientRecognitionError], None] | None = None,
        restart_delay: float | None = None,
        max_consecutive_restarts: int | None = None,
    ):
        self.gate = gate
        self.config = RecognitionConfig(
            locale=config.locale,
            continuous=True,
            interim_results=True,
            max_alternatives=1,
        )
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.restart_delay = self.RESTART_DELAY_S if restart_delay is None else restart_delay
        self.max_consecutive_restarts = max_consecutive_restarts
        self.state = DictationSession.State.IDLE
        # read by the end handler when it fires, never captured
        self.intentional_stop = False
        self.restart_count = 0
        self._stream: RecognitionStream | None = None
        self._restart_handle: asyncio.TimerHandle | None = None
        self._committed_text = ""
        self._stream_text = ""
        self._restarts_without_result = 0

    @property
    def stream(self) -> RecognitionStream | None:
        return self._stream

    @property
    def is_listening(self) -> bool:
        return self.state is DictationSession.State.LISTENING

    @property
    def has_pending_restart(self) -> bool:
        return self._restart_handle is not None

    @property
    def transcript(self) -> str:
        return join_transcripts(self._committed_text, self._stream_text)

    def start(self, initial_text: str = "") -> None:
        if not self.gate.is_available():
            raise UnsupportedPlatform()
        self._cancel_restart()
        self._release_stream()
        self.intentional_stop = False
        self.restart_count = 0
        self._restarts_without_result = 0
        self._committed_text = initial_text
        self._stream_text = ""
        self.state = DictationSession.State.LISTENING
        try:
            self._open_stream()
        except Exception as exc:
            self.state = DictationSession.State.STOPPED
            raise TransientRecognitionError(exc) from exc

    def stop(self) -> None:
        # must be set before the stream is asked to stop: its end event may be handled at any later point
        self.intentional_stop = True
        self._cancel_restart()
        self._release_stream()
        if self.state is not DictationSession.State.IDLE:
            self.state = DictationSession.State.STOPPED

    def _open_stream(self) -> None:
        self._release_stream()
        stream = self.gate.platform.create_stream(self.config)
        stream.on_result = lambda segments: self._handle_result(stream, segments)
        stream.on_error = lambda cause: self._handle_error(stream, cause)
        stream.on_end = lambda: self._handle_end(stream)
        self._stream = stream
        self._stream_text = ""
        debug("[SESSION] opening stream", id(stream))
        try:
            stream.start()
        except Exception:
            self._stream = None
            raise

    def _release_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        debug("[SESSION] releasing stream", id(stream))
        try:
            stream.stop()
        except Exception as exc:
            errprint(f"Error while stopping recognition stream: {exc}")

    def _handle_result(self, stream: RecognitionStream, segments: Sequence[Segment]) -> None:
        if stream is not self._stream:
            return
        self._restarts_without_result = 0
        self._stream_text = join_segments(segments)
        self.on_transcript(self.transcript)

    def _handle_error(self, stream: RecognitionStream, cause: object) -> None:
        if stream is not self._stream:
            debug("[SESSION] ignoring error of released stream", id(stream), repr(cause))
            return
        self._report(cause if isinstance(cause, TransientRecognitionError) else TransientRecognitionError(cause))

    def _handle_end(self, stream: RecognitionStream) -> None:
        if stream is not self._stream:
            debug("[SESSION] ignoring end of released stream", id(stream))
            return
        self._stream = None
        if self.intentional_stop or self.state is not DictationSession.State.LISTENING:
            if self.state is DictationSession.State.LISTENING:
                self.state = DictationSession.State.STOPPED
            return

        self._committed_text = self.transcript
        self._stream_text = ""

        limit = self.max_consecutive_restarts
        if limit is not None and self._restarts_without_result >= limit:
            self.state = DictationSession.State.STOPPED
            error = TransientRecognitionError(
                "stream ended",
                f"Speech recognition ended {self._restarts_without_result} times in a row without any result; giving up",
            )
            self._report(error)
            return

        if self._restart_handle is None:
            debug(f"[SESSION] unexpected end, restarting in {self.restart_delay}s")
            self._restart_handle = asyncio.get_running_loop().call_later(self.restart_delay, self._restart)

    def _restart(self) -> None:
        self._restart_handle = None
        if self.intentional_stop or self.state is not DictationSession.State.LISTENING:
            return
        self.restart_count += 1
        self._restarts_without_result += 1
        try:
            self._open_stream()
        except Exception as exc:
            self.state = DictationSession.State.STOPPED
            self._report(TransientRecognitionError(exc, f"Unable to restart speech recognition: {exc}"))

    def _report(self, error: TransientRecognitionError) -> None:
        debug("[SESSION]", error)
        if self.on_error is not None:
            self.on_error(error)

    def _cancel_restart(self) -> None:
        handle, self._restart_handle = self._restart_handle, None
        if handle is not None:
            handle.cancel()


class NoteDraft:
    def __init__(self, on_note_created: Callable[[str, str | None], None]):
        self.on_note_created = on_note_created
        self.content = ""
        self.selected_folder_id: str | None = None
        self.onboarding_visible = True

    def set_content(self, text: str) -> None:
        self.content = text
        self.onboarding_visible = text == ""

    def receive_transcript(self, text: str) -> None:
        self.content = text
        self.onboarding_visible = False

    def start_editor(self) -> None:
        self.onboarding_visible = False

    def select_folder(self, folder_id: str | None) -> None:
        self.selected_folder_id = folder_id

    def save(self) -> SavedNote | None:
        if self.content == "":
            return None
        note = SavedNote(content=self.content, folder_id=self.selected_folder_id)
        self.on_note_created(note.content, note.folder_id)
        self.reset()
        return note

    def reset(self) -> None:
        self.content = ""
        self.selected_folder_id = None
        self.onboarding_visible = True


class NoteCard:
    """Binds a dictation session and a note draft to an authoring surface.

    Every way out of the surface (close, save, unmount) stops the dictation and resets the draft, and every
    opening starts from an empty draft and a fresh, idle session.
    """

    def __init__(
        self,
        gate: FeatureGate,
        on_note_created: Callable[[str, str | None], None],
        handle_open: Callable[[bool], None] | None = None,
        folders: Sequence[Folder] | None = None,
        recognition: RecognitionConfig | None = None,
        on_advisory: Callable[[Advisory], None] | None = None,
        on_error: Callable[[TransientRecognitionError], None] | None = None,
        on_change: Callable[[], None] | None = None,
        restart_delay: float | None = None,
        max_consecutive_restarts: int | None = None,
    ):
        self.gate = gate
        self.handle_open = handle_open
        self.folders: tuple[Folder, ...] = tuple(folders or ())
        self.recognition = recognition or RecognitionConfig(locale=None)
        self.on_advisory = on_advisory
        self.on_error = on_error
        self.on_change = on_change
        self.restart_delay = restart_delay
        self.max_consecutive_restarts = max_consecutive_restarts
        self.draft = NoteDraft(on_note_created)
        self.session: DictationSession | None = None
        self.is_open = False
        self._unmounted = False

    def __enter__(self) -> NoteCard:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unmount()

    @property
    def dictation_state(self) -> DictationSession.State:
        if self.session is None:
            return DictationSession.State.IDLE
        return self.session.state

    @property
    def is_recording(self) -> bool:
        return self.session is not None and self.session.is_listening

    @property
    def folder_selection_enabled(self) -> bool:
        return bool(self.folders)

    def handle_open_change(self, next_open: bool) -> None:
        self._ensure_mounted()
        if next_open:
            self._discard_session()
            self.draft.reset()
        else:
            self._teardown()
        self.is_open = next_open
        if self.handle_open is not None:
            self.handle_open(next_open)
        self._changed()

    def open(self) -> None:
        self.handle_open_change(True)

    def close(self) -> None:
        self.handle_open_change(False)

    def start_editor(self) -> None:
        self._ensure_mounted()
        self.draft.start_editor()
        self._changed()

    def type_text(self, text: str) -> None:
        self._ensure_mounted()
        self.draft.set_content(text)
        self._changed()

    def select_folder(self, folder_id: str | None) -> None:
        self._ensure_mounted()
        if folder_id is not None:
            if not self.folder_selection_enabled:
                raise ValueError("Folder selection is disabled: no folders available")
            if folder_id not in {folder.id for folder in self.folders}:
                raise ValueError(f'Unknown folder "{folder_id}"')
        self.draft.select_folder(folder_id)
        self._changed()

    def start_dictation(self) -> bool:
        self._ensure_mounted()
        created = self.session is None
        if created:
            self.session = DictationSession(
                self.gate,
                self.recognition,
                on_transcript=self._receive_transcript,
                on_error=self._report_error,
                restart_delay=self.restart_delay,
                max_consecutive_restarts=self.max_consecutive_restarts,
            )
        try:
            # the session checks availability itself
            self.session.start(initial_text=self.draft.content)
        except UnsupportedPlatform:
            if created:
                self.session = None
            self._advise(Advisory(Advisory.Kind.UNSUPPORTED, UNSUPPORTED_MESSAGE))
            self._changed()
            return False
        except TransientRecognitionError as exc:
            self._report_error(exc)
            return False

        self.draft.start_editor()
        self.gate.warn_if_restricted_environment(self._advise)
        self._changed()
        return True

    def stop_dictation(self) -> None:
        self._ensure_mounted()
        if self.session is not None:
            self.session.stop()
        self._changed()

    def save(self) -> SavedNote | None:
        self._ensure_mounted()
        note = self.draft.save()
        if note is None:
            return None
        self._teardown()
        self._advise(Advisory(Advisory.Kind.NOTE_CREATED, NOTE_CREATED_MESSAGE))
        self._changed()
        return note

    def unmount(self) -> None:
        if self._unmounted:
            return
        self._teardown()
        self.gate.cancel_pending_checks()
        self._unmounted = True

    def _teardown(self) -> None:
        if self.session is not None:
            self.session.stop()
        self.draft.reset()

    def _discard_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            session.stop()

    def _receive_transcript(self, text: str) -> None:
        self.draft.receive_transcript(text)
        self._changed()

    def _report_error(self, error: TransientRecognitionError) -> None:
        if self.on_error is not None:
            self.on_error(error)
        self._changed()

    def _advise(self, advisory: Advisory) -> None:
        if self.on_advisory is not None:
            self.on_advisory(advisory)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _ensure_mounted(self) -> None:
        if self._unmounted:
            raise RuntimeError("Note card has been unmounted")
