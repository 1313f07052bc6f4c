from __future__ import annotations

import asyncio
import os
from contextlib import suppress

import janus
import numpy as np
import soundcard as sc
import sounddevice as sd
from janus import SyncQueueShutDown

from dictanote import errprint
from dictanote_streams import AudioSource


class MicrophoneCapture(AudioSource):
    BLOCK_DURATION_MS = 40

    def __init__(self, sample_rate: int, gain: float = 1.0):
        super().__init__(sample_rate)
        self.gain = gain
        self._queue: janus.Queue[bytes] | None = None
        self._stream: sd.RawInputStream | None = None

    def start(self) -> None:
        if self._stream is not None:
            return
        self._queue = janus.Queue()
        stream = sd.RawInputStream(
            samplerate=self.sample_rate,
            blocksize=int(self.sample_rate * self.BLOCK_DURATION_MS / 1000),
            dtype="int16",
            channels=1,
            callback=self._callback,
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            self._queue.close()
            self._queue = None
            raise
        self._stream = stream

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
        queue, self._queue = self._queue, None
        if queue is not None:
            queue.close()

    async def get_chunk(self, timeout: float) -> bytes:
        if self._queue is None:
            await asyncio.sleep(timeout)
            raise TimeoutError
        return await asyncio.wait_for(self._queue.async_q.get(), timeout=timeout)

    def _callback(self, indata, frames, timeinfo, status):
        queue = self._queue
        if queue is None:
            return
        try:
            data = np.frombuffer(indata, dtype=np.int16)
            if self.gain != 1.0:
                amplified = np.clip(data * self.gain, -32768, 32767)
                audio_bytes = amplified.astype(np.int16).tobytes()
            else:
                audio_bytes = data.tobytes()
            with suppress(SyncQueueShutDown, RuntimeError):
                queue.sync_q.put_nowait(audio_bytes)
        except Exception as exc:
            errprint(f"Error in microphone callback: {exc}")


def microphone_available() -> bool:
    try:
        return bool(sc.all_microphones(include_loopback=False))
    except Exception:
        return False


def find_microphone(filter_text: str | None = None) -> sc.Microphone:
    microphones = sc.all_microphones(include_loopback=False)
    if not microphones:
        raise RuntimeError("No microphones detected")

    filter_value = filter_text.lower() if filter_text else None

    def matches(mic: sc.Microphone) -> bool:
        if not filter_value:
            return True
        name = mic.name.lower() if mic.name else ""
        unique_id = mic.id.lower() if mic.id else ""
        return filter_value in name or filter_value in unique_id

    if filter_value:
        filtered = [mic for mic in microphones if matches(mic)]
        if not filtered:
            raise RuntimeError(f'No microphones matched filter "{filter_text}"')
        if len(filtered) > 1:
            names = ", ".join(mic.name or mic.id or "?" for mic in filtered)
            raise RuntimeError(f'Multiple microphones matched filter "{filter_text}": {names}')
        return filtered[0]

    default_microphone = sc.default_microphone()
    if default_microphone is not None:
        for mic in microphones:
            if mic.id and default_microphone.id and mic.id == default_microphone.id:
                return mic
            if mic.name and default_microphone.name and mic.name == default_microphone.name:
                return mic
        return default_microphone

    return microphones[0]


def use_microphone(mic: sc.Microphone) -> None:
    # sounddevice records from the PulseAudio default source, so point it at the selected one
    if mic.id:
        os.environ["PULSE_SOURCE"] = mic.id
