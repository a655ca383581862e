from __future__ import annotations

from typing import Optional

import httpx
import structlog

from src.relay.config import Config
from src.relay.errors import NotifyError
from src.relay.sessions import Session

logger = structlog.get_logger(__name__)


class SummaryNotifier:
    """
    Posts a finished call's summary to a webhook.

    One attempt, no retry. Delivery failures are logged and never raised.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = (url or "").strip()
        self.timeout_seconds = max(0.1, timeout_seconds)
        self._transport = transport

    @classmethod
    def from_config(cls, config: Config) -> "SummaryNotifier":
        return cls(config.summary_webhook_url, timeout_seconds=config.notify_timeout_seconds)

    async def _deliver(self, payload: dict) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotifyError(
                f"Summary webhook returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise NotifyError(f"Summary webhook request failed: {e}") from e
        return response

    async def notify(self, session: Session) -> bool:
        """
        Deliver `session` to the webhook.

        Returns:
            True if the webhook accepted the summary
        """
        if not self.url:
            logger.info("No summary webhook configured; skipping", call_id=session.call_id)
            return False

        payload = session.to_summary()
        try:
            response = await self._deliver(payload)
        except NotifyError as e:
            logger.error("Failed to post call summary", call_id=session.call_id, error=str(e))
            return False

        logger.info(
            "Call summary posted",
            call_id=session.call_id,
            status_code=response.status_code,
            transcript_entries=len(payload["transcript"]),
            fields=sorted(payload["fields"]),
        )
        return True
