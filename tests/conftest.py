from __future__ import annotations

import pytest

from dictanote import FeatureGate, RecognitionConfig, RecognitionStream, Segment, SpeechPlatform


class FakeRecognitionStream(RecognitionStream):
    def __init__(self, config: RecognitionConfig, fail_on_start: bool = False):
        super().__init__(config)
        self.fail_on_start = fail_on_start
        self.started = False
        self.stop_calls = 0

    @property
    def is_live(self) -> bool:
        return self.started and self.stop_calls == 0

    def start(self) -> None:
        if self.fail_on_start:
            raise OSError("no audio device")
        self.started = True

    def stop(self) -> None:
        self.stop_calls += 1

    def emit_result(self, *segments: tuple[str, bool]) -> None:
        self._emit_result([Segment(text, is_final) for text, is_final in segments])

    def emit_error(self, cause: object) -> None:
        self._emit_error(cause)

    def emit_end(self) -> None:
        self._emit_end()


class FakeSpeechPlatform(SpeechPlatform):
    def __init__(self, available: bool = True, restricted: bool | Exception = False):
        self.available = available
        self.restricted = restricted
        self.fail_on_start = False
        self.availability_checks = 0
        self.streams: list[FakeRecognitionStream] = []
        self.configs: list[RecognitionConfig] = []

    @property
    def live_streams(self) -> list[FakeRecognitionStream]:
        return [stream for stream in self.streams if stream.is_live]

    @property
    def last_stream(self) -> FakeRecognitionStream:
        return self.streams[-1]

    def is_available(self) -> bool:
        self.availability_checks += 1
        return self.available

    def create_stream(self, config: RecognitionConfig) -> FakeRecognitionStream:
        self.configs.append(config)
        stream = FakeRecognitionStream(config, fail_on_start=self.fail_on_start)
        self.streams.append(stream)
        return stream

    async def is_restricted_environment(self) -> bool:
        if isinstance(self.restricted, Exception):
            raise self.restricted
        return self.restricted


@pytest.fixture
def platform() -> FakeSpeechPlatform:
    return FakeSpeechPlatform()


@pytest.fixture
def gate(platform: FakeSpeechPlatform) -> FeatureGate:
    return FeatureGate(platform)


@pytest.fixture
def recognition() -> RecognitionConfig:
    return RecognitionConfig(locale="pt-BR")
