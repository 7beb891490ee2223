"""
Microsoft Teams notification dispatcher.

Posts report and batch notices to Teams incoming webhooks as Adaptive Cards,
using the WebhookClient from slack-sdk (a plain JSON-over-HTTPS webhook
client; Teams accepts the same POST). Agents listed as recipients are
@-mentioned in the card.

Mentions:
    Teams only resolves a mention whose mentioned.id is an Azure AD object id
    or a user principal name. TEAMS_MENTION_IDS maps agent ids to one of
    those; an agent missing from the map is mentioned by its agent id, which
    Teams shows as plain text.

Idempotency:
    Every send carries a deduplication token, recorded in the delivery ledger
    before the first attempt:

    - delivered: sent and acknowledged. Never sent again.
    - unknown:   the request went out but the acknowledgement timed out. The
                 message may have been posted, so it is never sent again.
    - pending:   another send of the token is in flight. Not sent again.
    - failed:    every attempt definitely failed (connection refused, 4xx,
                 429/5xx after retries). A later send() with the same token
                 tries again.

Retries:
    Connection errors and HTTP 429/5xx are retried up to DISPATCH_MAX_RETRIES
    attempts in total, waiting DISPATCH_BACKOFF_SECONDS * 2^(n-1) between
    attempts (capped at 30s). Other 4xx responses are not retried.

Channel resolution:
    TEAMS_CHANNEL_WEBHOOKS maps channel names to webhook URLs; anything not
    listed goes to TEAMS_WEBHOOK_URL. With neither configured the send is
    recorded as failed with a DispatchError.

Usage:
    dispatcher = TeamsDispatcher(ledger, settings)
    result = await dispatcher.send('qc-alerts', 'Daily QC report ...', ['AG001'], 'report:r1:2024-01-15T09:00:00+00:00')
    if result.duplicate:
        ...  # already handled by an earlier call

send() never raises; every outcome is a DeliveryResult.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.error import URLError
from uuid import uuid4

from slack_sdk.webhook import WebhookClient

from qc_backend.core.clock import Clock, utc_now
from qc_backend.core.errors import DispatchError
from qc_backend.models import DeliveryResult, DeliveryStatus, ErrorKind
from qc_backend.services.report_store import DeliveryLedger


logger = logging.getLogger(__name__)


MAX_BACKOFF_SECONDS = 30.0


# =============================================================================
# Message Formatting
# =============================================================================

def build_adaptive_card(
    message: str,
    recipients: List[str],
    title: Optional[str] = None,
    mention_ids: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    Build a Teams incoming-webhook payload.

    Each recipient is mentioned as <at>name</at> in a trailing TextBlock and
    declared in msteams.entities so Teams renders it as a mention.

    Args:
        message: Body text (Teams markdown subset).
        recipients: Agent identifiers to mention.
        title: Optional bold heading.
        mention_ids: Agent id to AAD object id or UPN. Unlisted agents keep
            their agent id.

    Returns:
        Dict ready for WebhookClient.send_dict().
    """
    body: List[Dict[str, Any]] = []

    if title:
        body.append({
            "type": "TextBlock",
            "text": title,
            "weight": "Bolder",
            "size": "Medium",
            "wrap": True,
        })

    body.append({"type": "TextBlock", "text": message, "wrap": True})

    mention_ids = mention_ids or {}
    entities = []
    if recipients:
        mentions = " ".join(f"<at>{r}</at>" for r in recipients)
        body.append({"type": "TextBlock", "text": f"Tagged: {mentions}", "wrap": True})
        entities = [
            {
                "type": "mention",
                "text": f"<at>{r}</at>",
                "mentioned": {"id": mention_ids.get(r, r), "name": r},
            }
            for r in recipients
        ]

    return {
        "type": "message",
        "attachments": [
            {
                "contentType": "application/vnd.microsoft.card.adaptive",
                "contentUrl": None,
                "content": {
                    "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
                    "type": "AdaptiveCard",
                    "version": "1.4",
                    "body": body,
                    "msteams": {"width": "Full", "entities": entities},
                },
            }
        ],
    }


# =============================================================================
# Dispatcher
# =============================================================================

class TeamsDispatcher:
    """
    Idempotent Teams sender.

    Args:
        ledger: DeliveryLedger shared by every dispatcher instance.
        settings: Settings (webhook URLs, retry and timeout parameters).
        clock: Time source for ledger rows.
        client_factory: Callable(url, timeout) -> client with send_dict();
            WebhookClient by default, a fake in tests.
    """

    def __init__(
        self,
        ledger: DeliveryLedger,
        settings: Any,
        clock: Clock = utc_now,
        client_factory: Callable[..., Any] = WebhookClient,
    ):
        self.ledger = ledger
        self.settings = settings
        self._clock = clock
        self._client_factory = client_factory

    def resolve_webhook(self, channel: str) -> str:
        """
        Raises:
            DispatchError: No webhook for the channel and no default.
        """
        url = self.settings.teams_channel_webhooks.get(channel) or self.settings.teams_webhook_url
        if not url:
            raise DispatchError(f"No Teams webhook configured for channel '{channel}'")
        return url

    def _backoff(self, attempt: int) -> float:
        return min(self.settings.dispatch_backoff_seconds * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)

    async def _finish(
        self,
        token: str,
        channel: str,
        status: DeliveryStatus,
        attempts: int,
        recipients: List[str],
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> DeliveryResult:
        await self.ledger.record(token, status, attempts, error, self._clock())
        return DeliveryResult(
            delivered=status == DeliveryStatus.DELIVERED,
            status=status,
            channel=channel,
            dedup_token=token,
            attempts=attempts,
            recipients=recipients if status == DeliveryStatus.DELIVERED else [],
            error=error,
            error_kind=error_kind,
        )

    async def send(
        self,
        channel: str,
        message: str,
        recipients: List[str],
        dedup_token: str,
        title: Optional[str] = None,
    ) -> DeliveryResult:
        """
        Post a message at most once per dedup_token.

        Returns:
            DeliveryResult: delivered / duplicate / failed / unknown outcome.
        """
        try:
            return await self._send(channel, message, recipients, dedup_token, title)
        except Exception as e:
            logger.exception(f"Dispatch of {dedup_token} to '{channel}' failed unexpectedly")
            return DeliveryResult(
                delivered=False,
                status=DeliveryStatus.FAILED,
                channel=channel,
                dedup_token=dedup_token,
                error=str(e) or e.__class__.__name__,
                error_kind=ErrorKind.INTERNAL,
            )

    async def _send(
        self,
        channel: str,
        message: str,
        recipients: List[str],
        token: str,
        title: Optional[str],
    ) -> DeliveryResult:
        reserved = await self.ledger.reserve(token, channel, self._clock())
        if reserved is None:
            existing = await self.ledger.get(token)
            status = existing.status if existing else DeliveryStatus.PENDING
            logger.info(f"Notification {token} already {status.value}; not sending again")
            return DeliveryResult(
                delivered=False,
                duplicate=True,
                status=status,
                channel=channel,
                dedup_token=token,
                attempts=existing.attempts if existing else 0,
            )

        try:
            url = self.resolve_webhook(channel)
        except DispatchError as e:
            logger.warning(e.message)
            return await self._finish(token, channel, DeliveryStatus.FAILED, 0, recipients, e.message, e.kind)

        client = self._client_factory(url, timeout=self.settings.dispatch_timeout_seconds)
        payload = build_adaptive_card(message, recipients, title, self.settings.teams_mention_ids)
        max_attempts = max(1, self.settings.dispatch_max_retries)
        error = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = await asyncio.to_thread(client.send_dict, payload)
            except TimeoutError:
                # The request may have reached Teams; sending again could post twice
                error = f"Teams did not acknowledge within {self.settings.dispatch_timeout_seconds}s"
                logger.warning(f"Notification {token}: {error}; marked unknown")
                return await self._finish(
                    token, channel, DeliveryStatus.UNKNOWN, attempt, recipients, error, ErrorKind.DISPATCH
                )
            except URLError as e:
                error = f"Connection to Teams failed: {e.reason}"
            else:
                if 200 <= response.status_code < 300:
                    logger.info(f"Notification {token} delivered to '{channel}' ({len(recipients)} mention(s))")
                    return await self._finish(token, channel, DeliveryStatus.DELIVERED, attempt, recipients)

                error = f"Teams webhook returned {response.status_code}: {response.body}"
                if response.status_code != 429 and response.status_code < 500:
                    logger.warning(f"Notification {token} rejected: {error}")
                    return await self._finish(
                        token, channel, DeliveryStatus.FAILED, attempt, recipients, error, ErrorKind.DISPATCH
                    )

            logger.warning(f"Notification {token} attempt {attempt}/{max_attempts} failed: {error}")
            if attempt < max_attempts:
                await asyncio.sleep(self._backoff(attempt))

        return await self._finish(
            token, channel, DeliveryStatus.FAILED, max_attempts, recipients, error, ErrorKind.DISPATCH
        )

    async def send_test(self, channel: str, message: str, recipients: List[str]) -> DeliveryResult:
        """One-off message with a fresh token, for checking webhook configuration."""
        return await self.send(channel, message, recipients, f"test:{uuid4().hex}", title="QC orchestrator test")
