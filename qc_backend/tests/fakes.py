"""
Test doubles shared by the test modules.

- FakeClock: manually advanced time source
- ScriptedAnalyzer: Analyzer whose outcome per item reference is scripted
- FakeWebhookClient / FakeResponse: stand-ins for slack_sdk WebhookClient
- RecordingDispatcher: dispatcher that records sends without a ledger
- make_result(): AnalysisResult factory
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from qc_backend.models import (
    AnalysisResult,
    DeliveryResult,
    DeliveryStatus,
    FlagStatus,
    TechnicalScores,
    WorkItem,
)
from qc_backend.services.analysis import Analyzer


T0 = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock; advance() moves it forward."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_result(flag_status: FlagStatus = FlagStatus.APPROVED, confidence: float = 0.9) -> AnalysisResult:
    return AnalysisResult(
        confidence=confidence,
        flag_status=flag_status,
        technical_scores=TechnicalScores(
            language_score=80,
            body_language_score=80,
            sop_compliance_score=80,
            technical_quality_score=80,
        ),
        analysis_timestamp=T0,
    )


Outcome = Union[AnalysisResult, BaseException]


class ScriptedAnalyzer(Analyzer):
    """
    Returns scripted outcomes keyed by WorkItem.external_ref.

    Each reference maps to one outcome or a list consumed one call at a time
    (the last entry repeats). Unscripted references are approved.
    """

    def __init__(self, script: Optional[Dict[str, Union[Outcome, Sequence[Outcome]]]] = None, delay: float = 0.0):
        self.script = {
            ref: list(outcome) if isinstance(outcome, (list, tuple)) else outcome
            for ref, outcome in (script or {}).items()
        }
        self.delay = delay
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    @property
    def name(self) -> str:
        return "scripted"

    async def analyze(self, item: WorkItem) -> AnalysisResult:
        self.calls.append(item.external_ref)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)

        outcome: Any = self.script.get(item.external_ref, make_result())
        if isinstance(outcome, list):
            outcome = outcome[0] if len(outcome) == 1 else outcome.pop(0)

        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeResponse:
    def __init__(self, status_code: int = 200, body: str = "1"):
        self.status_code = status_code
        self.body = body


class FakeWebhookClient:
    """
    Records send_dict payloads. `outcomes` is consumed per call: a
    FakeResponse is returned, an exception is raised. When exhausted, 200.
    """

    def __init__(self, outcomes: Optional[List[Any]] = None):
        self.outcomes = list(outcomes or [])
        self.payloads: List[Dict[str, Any]] = []
        self.urls: List[str] = []

    def factory(self, url: str, timeout: int = 10) -> "FakeWebhookClient":
        self.urls.append(url)
        return self

    def send_dict(self, body: Dict[str, Any]) -> FakeResponse:
        self.payloads.append(body)
        outcome = self.outcomes.pop(0) if self.outcomes else FakeResponse(200)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingDispatcher:
    """Dispatcher double: records every send and returns a scripted status."""

    def __init__(self, status: DeliveryStatus = DeliveryStatus.DELIVERED, error: Optional[str] = None):
        self.status = status
        self.error = error
        self.sent: List[Dict[str, Any]] = []

    async def send(self, channel: str, message: str, recipients: List[str], dedup_token: str, title: Optional[str] = None) -> DeliveryResult:
        self.sent.append({
            'channel': channel,
            'message': message,
            'recipients': list(recipients),
            'token': dedup_token,
        })
        return DeliveryResult(
            delivered=self.status == DeliveryStatus.DELIVERED,
            status=self.status,
            channel=channel,
            dedup_token=dedup_token,
            attempts=1,
            recipients=list(recipients) if self.status == DeliveryStatus.DELIVERED else [],
            error=self.error,
        )
