from __future__ import annotations

import asyncio
import base64
import json
import os
import sys
import time
import urllib.parse
from asyncio import CancelledError, create_task
from collections.abc import Callable, Mapping
from enum import Enum
from functools import cached_property
from pathlib import Path

import websockets
from websockets.exceptions import ConnectionClosedOK

from dictanote import (
    DEBUG_TO_STDOUT,
    RecognitionConfig,
    RecognitionStream,
    SpeechPlatform,
    TranscriptSegments,
    debug,
)


class AudioSource:
    """Raw int16 mono PCM chunks for one recognition stream."""

    def __init__(self, sample_rate: int):
        self.sample_rate = sample_rate

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    async def get_chunk(self, timeout: float) -> bytes:
        """Return the next chunk, raise ``TimeoutError`` if none came in ``timeout`` seconds."""
        raise NotImplementedError


class WebSocketRecognitionStream(RecognitionStream):
    SAMPLE_RATE = 16_000
    CHUNK_TIMEOUT = 0.1
    STOP_GRACE_SECONDS = 2.0

    def __init__(
        self,
        config: RecognitionConfig,
        api_key: str,
        model: Enum,
        audio: AudioSource,
        silence_duration_ms: int = 500,
    ):
        super().__init__(config)
        self.api_key = api_key
        self.model = model
        self.audio = audio
        self.silence_duration_ms = silence_duration_ms
        self.segments = TranscriptSegments()
        self._task: asyncio.Task | None = None
        self._stop_requested_at: float | None = None

    @cached_property
    def ws_url(self) -> str:
        raise NotImplementedError

    @cached_property
    def ws_headers(self) -> dict[str, str]:
        return {}

    @property
    def is_stopping(self) -> bool:
        return self._stop_requested_at is not None

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("Recognition stream already started")
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._stop_requested_at is not None:
            return
        self._stop_requested_at = time.perf_counter()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def on_connected(self, ws):
        pass

    async def send_audio_chunk(self, ws, chunk: bytes):
        pass

    async def send_close(self, ws):
        pass

    def on_data(self, raw) -> bool:
        raise NotImplementedError

    async def _run(self):
        try:
            async with websockets.connect(
                self.ws_url,
                additional_headers=self.ws_headers,
                max_size=None,
            ) as ws:
                await self.on_connected(ws)
                self.audio.start()
                sender_task = create_task(self._sender(ws))
                try:
                    await self._receiver(ws)
                finally:
                    sender_task.cancel()
                    await asyncio.gather(sender_task, return_exceptions=True)
        except CancelledError:
            pass
        except Exception as exc:
            if not self.is_stopping:
                self._emit_error(exc)
        finally:
            self.audio.stop()
            self._emit_end()

    async def _sender(self, ws):
        while not self.is_stopping:
            try:
                chunk = await self.audio.get_chunk(self.CHUNK_TIMEOUT)
            except TimeoutError:
                continue
            await self.send_audio_chunk(ws, chunk)
        await self.send_close(ws)

    async def _receiver(self, ws):
        while True:
            if self.is_stopping and time.perf_counter() - self._stop_requested_at >= self.STOP_GRACE_SECONDS:
                break
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self.CHUNK_TIMEOUT)
            except TimeoutError:
                continue
            except ConnectionClosedOK:
                break
            if not self.on_data(raw):
                break

    def _update_segments(self, text: str | None, is_final: bool) -> None:
        text = (text or "").strip()
        if not text and not self.segments.has_open_segment:
            return
        if text and self.segments.closed_text:
            text = " " + text
        self.segments.update(text, is_final)
        if is_final or self.config.interim_results:
            self._emit_result(self.segments.segments)


class DeepgramRecognitionStream(WebSocketRecognitionStream):
    SAMPLE_RATE = 16_000
    WS_URL = "wss://api.deepgram.com/v1/listen"

    class Model(Enum):
        NOVA_2 = "nova-2"
        NOVA_2_GENERAL = "nova-2-general"
        NOVA_3 = "nova-3"
        NOVA_3_GENERAL = "nova-3-general"

    class Event(Enum):
        RESULTS = "Results"
        UTTERANCE_END = "UtteranceEnd"
        METADATA = "Metadata"

    @cached_property
    def ws_url(self) -> str:
        params = {
            "model": self.model.value,
            "encoding": "linear16",
            "sample_rate": str(self.SAMPLE_RATE),
            "channels": "1",
            "smart_format": "true",
            "interim_results": "true" if self.config.interim_results else "false",
            "endpointing": str(self.silence_duration_ms),
        }
        if self.config.max_alternatives > 1:
            params["alternatives"] = str(self.config.max_alternatives)
        if self.config.locale:
            params["language"] = self.config.locale
        return self.WS_URL + "?" + urllib.parse.urlencode(params)

    @cached_property
    def ws_headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.api_key}"}

    async def send_audio_chunk(self, ws, chunk: bytes):
        await ws.send(chunk)

    async def send_close(self, ws):
        await ws.send(json.dumps({"type": "CloseStream"}))

    def on_data(self, raw) -> bool:
        event = json.loads(raw)
        if DEBUG_TO_STDOUT:
            debug(f"[DEEPGRAM] {event=}")

        try:
            event_type = self.Event(event.get("type", ""))
        except ValueError:
            return True

        match event_type:
            case self.Event.RESULTS:
                alternatives = event.get("channel", {}).get("alternatives", []) or [{}]
                transcript = alternatives[0].get("transcript", "")
                speech_final = bool(event.get("speech_final", False))
                # speech_final implies is_final
                is_final = speech_final or bool(event.get("is_final", False))
                self._update_segments(transcript, is_final)
                if speech_final and not self.config.continuous:
                    self.stop()

            case self.Event.METADATA:
                # sent by the server right before it closes the connection
                return not self.is_stopping

        return True


class OpenAIRecognitionStream(WebSocketRecognitionStream):
    SAMPLE_RATE = 24_000
    WS_URL = "wss://api.openai.com/v1/realtime?intent=transcription"

    class Model(Enum):
        GPT_4O_TRANSCRIBE = "gpt-4o-transcribe"
        GPT_4O_MINI_TRANSCRIBE = "gpt-4o-mini-transcribe"

    class Event(Enum):
        DELTA = "conversation.item.input_audio_transcription.delta"
        DONE = "conversation.item.input_audio_transcription.completed"
        FAILED = "conversation.item.input_audio_transcription.failed"
        ERROR = "error"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._delta_text = ""

    @cached_property
    def ws_url(self) -> str:
        return self.WS_URL

    @cached_property
    def ws_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

    @cached_property
    def language(self) -> str | None:
        if not self.config.locale:
            return None
        return self.config.locale.replace("_", "-").split("-")[0].lower() or None

    @cached_property
    def _first_message(self) -> str:
        data = {
            "type": "transcription_session.update",
            "session": {
                "input_audio_format": "pcm16",
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": 0.5,
                    "prefix_padding_ms": 300,
                    "silence_duration_ms": self.silence_duration_ms,
                },
                "input_audio_transcription": {
                    "model": self.model.value,
                },
                "input_audio_noise_reduction": {
                    "type": "near_field",
                },
            },
        }
        if self.language:
            data["session"]["input_audio_transcription"]["language"] = self.language
        return json.dumps(data)

    async def on_connected(self, ws):
        await super().on_connected(ws)
        await ws.send(self._first_message)

    async def send_audio_chunk(self, ws, chunk: bytes):
        await ws.send(
            json.dumps(
                {
                    "type": "input_audio_buffer.append",
                    "audio": base64.b64encode(chunk).decode("ascii"),
                }
            )
        )

    def on_data(self, raw) -> bool:
        event = json.loads(raw)
        if DEBUG_TO_STDOUT:
            debug(f"[OPENAI] {event=}")

        try:
            event_type = self.Event(event.get("type", ""))
        except ValueError:
            return True

        match event_type:
            case self.Event.DELTA:
                if delta := event.get("delta"):
                    self._delta_text += delta
                    self._update_segments(self._delta_text, False)

            case self.Event.DONE:
                transcript = event.get("transcript")
                self._update_segments(self._delta_text if transcript is None else transcript, True)
                self._delta_text = ""
                if not self.config.continuous:
                    self.stop()

            case self.Event.FAILED | self.Event.ERROR:
                error = event.get("error") or {}
                self._emit_error(error.get("message") or error.get("code") or event_type.value)

        return True


def detect_restricted_environment(environ: Mapping[str, str] | None = None, root: Path = Path("/")) -> bool:
    """Tell whether we run somewhere known to hide or block the microphone.

    Covers Flatpak and Snap sandboxes, WSL, and SSH sessions without a forwarded audio server.
    """
    if not sys.platform.startswith("linux"):
        raise NotImplementedError(f"No restricted environment detection for {sys.platform}")
    environ = os.environ if environ is None else environ

    if environ.get("FLATPAK_ID") or (root / ".flatpak-info").exists():
        return True
    if environ.get("SNAP"):
        return True
    if environ.get("WSL_DISTRO_NAME") or environ.get("WSL_INTEROP"):
        return True
    proc_version = root / "proc" / "version"
    if proc_version.is_file() and "microsoft" in proc_version.read_text(encoding="utf-8", errors="ignore").lower():
        return True
    if (environ.get("SSH_CONNECTION") or environ.get("SSH_TTY")) and not environ.get("PULSE_SERVER"):
        return True
    return False


class StreamingSpeechPlatform(SpeechPlatform):
    class Provider(Enum):
        OPENAI = "openai"
        DEEPGRAM = "deepgram"

    STREAM_CLASSES = {
        Provider.OPENAI: OpenAIRecognitionStream,
        Provider.DEEPGRAM: DeepgramRecognitionStream,
    }

    def __init__(
        self,
        provider: StreamingSpeechPlatform.Provider,
        api_key: str | None,
        model: Enum,
        audio_source_factory: Callable[[int], AudioSource],
        microphone_available: Callable[[], bool],
        silence_duration_ms: int = 500,
    ):
        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.audio_source_factory = audio_source_factory
        self.microphone_available = microphone_available
        self.silence_duration_ms = silence_duration_ms

    @classmethod
    def model_from_value(cls, value: str) -> tuple[StreamingSpeechPlatform.Provider, Enum]:
        try:
            return cls.Provider.OPENAI, OpenAIRecognitionStream.Model(value)
        except ValueError:
            return cls.Provider.DEEPGRAM, DeepgramRecognitionStream.Model(value)

    @classmethod
    def all_models(cls) -> list[str]:
        return [m.value for m in DeepgramRecognitionStream.Model] + [m.value for m in OpenAIRecognitionStream.Model]

    def is_available(self) -> bool:
        if not self.api_key:
            return False
        return self.microphone_available()

    def create_stream(self, config: RecognitionConfig) -> WebSocketRecognitionStream:
        stream_class = self.STREAM_CLASSES[self.provider]
        return stream_class(
            config,
            api_key=self.api_key,
            model=self.model,
            audio=self.audio_source_factory(stream_class.SAMPLE_RATE),
            silence_duration_ms=self.silence_duration_ms,
        )

    async def is_restricted_environment(self) -> bool:
        return await asyncio.to_thread(detect_restricted_environment)
