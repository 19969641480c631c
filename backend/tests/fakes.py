"""Test doubles for the pipeline's collaborators."""
import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from newsletter_intel.schemas import ExtractedCompany, ExtractionMetadata, ExtractionResult, SourceEmail


class FakeClock:
    """Monotonic seconds under test control."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeWallClock:
    def __init__(self, start: Optional[datetime] = None):
        self.value = start or datetime(2026, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += timedelta(seconds=seconds)


Handler = Callable[[str, str], Union[ExtractionResult, list]]


class FakeExtractor:
    """
    Returns companies for each call. `handler(text, source_name)` may return an
    ExtractionResult, a list of company names, or raise.
    """

    def __init__(
        self,
        handler: Optional[Handler] = None,
        clock: Optional[FakeClock] = None,
        seconds_per_call: float = 0.0,
        configured: bool = True,
    ):
        self.handler = handler or (lambda text, source: [])
        self.clock = clock
        self.seconds_per_call = seconds_per_call
        self.configured = configured
        self.calls: list[tuple[str, str]] = []

    def is_configured(self) -> bool:
        return self.configured

    async def extract(self, text: str, source_name: str) -> ExtractionResult:
        self.calls.append((text, source_name))
        if self.clock is not None:
            self.clock.advance(self.seconds_per_call)
        out = self.handler(text, source_name)
        if isinstance(out, ExtractionResult):
            return out
        return ExtractionResult(
            companies=[ExtractedCompany(name=name) for name in out],
            metadata=ExtractionMetadata(model_version="fake"),
        )


class FakeSource:
    def __init__(
        self,
        emails: Optional[list[SourceEmail]] = None,
        error: Optional[Exception] = None,
        delay_s: float = 0.0,
        configured: bool = True,
    ):
        self.emails = emails or []
        self.error = error
        self.delay_s = delay_s
        self.configured = configured
        self.calls: list[datetime] = []

    def is_configured(self, user_id: int) -> bool:
        return self.configured

    async def fetch_since(self, since: datetime, *, user_id: int, max_results: Optional[int] = None) -> list[SourceEmail]:
        self.calls.append(since)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return list(self.emails)


class RecordingPublisher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events = []

    async def publish(self, user_id, event) -> None:
        if self.fail:
            raise ConnectionError("sink down")
        self.events.append((user_id, event))

    def types(self) -> list[str]:
        return [e.type for _, e in self.events]


def long_text(label: str) -> str:
    return f"{label}: this week's newsletter covers several startups raising new rounds."
