"""
Analysis collaborator clients.

A worker hands each claimed WorkItem to an Analyzer and records what comes
back. Analyzers signal failures with the worker error taxonomy:

- TransientWorkerError: timeouts, connection failures, HTTP 429/5xx, a job the
  service reports as failed. The item is retried with backoff.
- TerminalWorkerError: HTTP 4xx or a result that does not parse. The item
  fails immediately without spending its remaining attempts.

Implementations:
- HttpAnalysisClient: the job-style analysis service
  (POST {base}/analyze -> {job_id}; GET {base}/result/{job_id} -> {status, ...}).
  requests is blocking, so every call runs in asyncio.to_thread.
- StubAnalyzer: deterministic offline results keyed on the item reference,
  used when ANALYSIS_SERVICE_URL is unset.
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pydantic
import requests

from qc_backend.core.errors import TerminalWorkerError, TransientWorkerError
from qc_backend.models import (
    AnalysisResult,
    FlagStatus,
    Issue,
    IssueSeverity,
    TechnicalScores,
    WorkItem,
)


logger = logging.getLogger(__name__)


class Analyzer(ABC):
    """
    Abstract base class for analysis back ends.

    Every analyzer must:
    1. Accept one WorkItem
    2. Return an AnalysisResult
    3. Raise TransientWorkerError or TerminalWorkerError on failure
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def analyze(self, item: WorkItem) -> AnalysisResult:
        ...


# =============================================================================
# Job-Style HTTP Client
# =============================================================================

class HttpAnalysisClient(Analyzer):
    """
    Client for the external analysis service.

    Args:
        base_url: Service root, e.g. 'http://analysis:9000'.
        request_timeout: Seconds per HTTP request.
        poll_interval: Seconds between result polls.
        timeout: Overall seconds allowed for one job before it counts as a
            transient failure.
        session: Optional requests.Session (tests pass a mock).
    """

    def __init__(
        self,
        base_url: str,
        request_timeout: float = 30.0,
        poll_interval: float = 2.0,
        timeout: float = 240.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def name(self) -> str:
        return "http"

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.request_timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise TransientWorkerError(f"Analysis service timed out ({method} {path})")
        except requests.exceptions.ConnectionError:
            raise TransientWorkerError(f"Network error connecting to analysis service ({method} {path})")
        except requests.exceptions.RequestException as e:
            raise TransientWorkerError(f"Analysis request failed: {e}")

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientWorkerError(
                f"Analysis service returned {resp.status_code} for {method} {path}"
            )

        if resp.status_code >= 400:
            body = resp.text[:300] if resp.text else "No response body"
            raise TerminalWorkerError(
                f"Analysis service rejected {method} {path} with {resp.status_code}: {body}"
            )

        try:
            return resp.json()
        except ValueError:
            raise TerminalWorkerError(f"Analysis service returned invalid JSON for {method} {path}")

    def _submit(self, item: WorkItem) -> str:
        payload = {
            "input": {
                "item_id": item.id,
                "uuid": item.external_ref,
                "kind": item.kind.value,
                "error_type": item.error_type,
                "agent_id": item.agent_id,
                "video_url": item.video_url,
            }
        }
        body = self._request("POST", "/analyze", json=payload)
        job_id = body.get("job_id")
        if not job_id:
            raise TerminalWorkerError("Analysis service did not return a job_id")
        return str(job_id)

    def _fetch_result(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/result/{job_id}")

    @staticmethod
    def _parse(payload: Dict[str, Any]) -> AnalysisResult:
        data = payload.get("result", payload)
        try:
            return AnalysisResult.model_validate(data)
        except pydantic.ValidationError as e:
            raise TerminalWorkerError(f"Malformed analysis result: {e.error_count()} error(s)")

    async def analyze(self, item: WorkItem) -> AnalysisResult:
        loop = asyncio.get_running_loop()
        job_id = await asyncio.to_thread(self._submit, item)
        deadline = loop.time() + self.timeout
        logger.debug(f"Submitted item {item.id} as analysis job {job_id}")

        while True:
            payload = await asyncio.to_thread(self._fetch_result, job_id)
            status = payload.get("status")

            if status == "completed":
                return self._parse(payload)
            if status == "failed":
                raise TransientWorkerError(
                    f"Analysis job {job_id} failed: {payload.get('error', 'no detail')}"
                )
            if loop.time() >= deadline:
                raise TransientWorkerError(
                    f"Analysis job {job_id} did not finish within {self.timeout:.0f}s"
                )

            await asyncio.sleep(self.poll_interval)


# =============================================================================
# Deterministic Stub
# =============================================================================

class StubAnalyzer(Analyzer):
    """
    Offline analyzer that returns plausible, repeatable results.

    The verdict and scores are derived from a hash of the item reference, so
    the same CSV row always gets the same outcome: roughly one in five items
    is flagged and one in five needs review.

    Args:
        delay_seconds: Simulated processing time per item.
    """

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds

    @property
    def name(self) -> str:
        return "stub"

    async def analyze(self, item: WorkItem) -> AnalysisResult:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        digest = hashlib.sha256(item.external_ref.encode("utf-8")).digest()
        bucket = digest[0] % 5
        flag_status = {0: FlagStatus.FLAGGED, 1: FlagStatus.NEEDS_REVIEW}.get(bucket, FlagStatus.APPROVED)

        scores = TechnicalScores(
            language_score=50 + digest[1] % 51,
            body_language_score=50 + digest[2] % 51,
            sop_compliance_score=(30 if flag_status == FlagStatus.FLAGGED else 60) + digest[3] % 41,
            technical_quality_score=50 + digest[4] % 51,
        )

        issues = []
        recommendations = []
        if flag_status != FlagStatus.APPROVED:
            minute, second = divmod(digest[5] % 600, 60)
            issues.append(Issue(
                type=item.error_type or "sop_violation",
                description=f"Possible {item.error_type or 'SOP'} deviation detected",
                severity=IssueSeverity.HIGH if flag_status == FlagStatus.FLAGGED else IssueSeverity.MEDIUM,
                timestamp=f"{minute:02d}:{second:02d}",
            ))
            recommendations.append("Review the flagged segment with the agent")

        return AnalysisResult(
            confidence=round(0.6 + (digest[6] % 40) / 100, 2),
            flag_status=flag_status,
            issues=issues,
            technical_scores=scores,
            recommendations=recommendations,
            analysis_timestamp=datetime.now(timezone.utc),
        )


def build_analyzer(settings: Any) -> Analyzer:
    """Pick the HTTP client when a service URL is configured, else the stub."""
    if settings.analysis_service_url:
        logger.info(f"Using analysis service at {settings.analysis_service_url}")
        return HttpAnalysisClient(
            settings.analysis_service_url,
            request_timeout=settings.analysis_request_timeout_seconds,
            poll_interval=settings.analysis_poll_interval_seconds,
            timeout=settings.analysis_timeout_seconds,
        )

    logger.warning("ANALYSIS_SERVICE_URL not configured; using the stub analyzer")
    return StubAnalyzer()
