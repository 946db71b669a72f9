"""
Webhook notifier for passed analyses.

Posts one alert per ``AnalysisPassed`` event to an external webhook (n8n,
Discord bridge, ...). Delivery is retried a few times on non-404 failures and
then dropped; the pipeline never waits on it.
"""

import asyncio
import json
import logging
import urllib.parse
from typing import Any, Dict, Optional

import httpx

from token_scout.modules.pipeline.events import AnalysisPassed, EventBus
from token_scout.modules.pipeline.schemas import CombinedAnalysis
from token_scout.shared.prometheus import notifier_deliveries_total

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1.0


class WebhookNotifier:

    def __init__(
        self,
        webhook_url: str = "",
        method: str = "POST",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ):
        self.webhook_url = webhook_url
        self.method = method.upper()
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._transport = transport
        self.status: Dict[str, Any] = {
            "available": None,
            "sent": 0,
            "failed": 0,
            "last_success": None,
        }

    def attach(self, events: EventBus):
        return events.subscribe(self.on_passed, AnalysisPassed)

    async def on_passed(self, event: AnalysisPassed) -> bool:
        return await self.send(event.analysis)

    @staticmethod
    def build_payload(analysis: CombinedAnalysis) -> Dict[str, Any]:
        return {
            "source": "token_scout",
            "type": "token_alert",
            "timestamp": analysis.timestamp.isoformat(),
            "data": {
                "address": analysis.token_address,
                "symbol": analysis.symbol,
                "name": analysis.name,
                "overall_score": analysis.overall_score,
                "risk_score": analysis.risk_score,
                "opportunity_score": analysis.opportunity_score,
                "has_errors": analysis.has_errors,
                "degraded_sources": [s.value for s in analysis.degraded_sources],
                "liquidity": analysis.record.get("liquidity"),
                "volume_24h": analysis.record.get("volume_24h"),
                "market_cap": analysis.record.get("market_cap"),
            },
        }

    async def send(self, analysis: CombinedAnalysis) -> bool:
        """Deliver one alert. Returns True on success or when no URL is configured."""
        if not self.webhook_url:
            return True

        payload = self.build_payload(analysis)
        short = analysis.token_address[:8]

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, MAX_ATTEMPTS + 1):
                try:
                    if self.method == "GET":
                        query = urllib.parse.quote(json.dumps(payload))
                        resp = await client.get(f"{self.webhook_url}?data={query}")
                    else:
                        resp = await client.post(self.webhook_url, json=payload)
                except httpx.HTTPError as e:
                    logger.warning("Webhook error for %s (attempt %d/%d): %s", short, attempt, MAX_ATTEMPTS, e)
                else:
                    if resp.status_code < 300:
                        self.status.update(available=True, last_success=analysis.timestamp.isoformat())
                        self.status["sent"] += 1
                        notifier_deliveries_total.labels(status="sent").inc()
                        logger.info("Alert for %s sent to webhook", short)
                        return True
                    if resp.status_code == 404:
                        logger.error("Webhook 404 - check WEBHOOK_URL")
                        break
                    logger.warning(
                        "Webhook status %d for %s (attempt %d/%d)",
                        resp.status_code, short, attempt, MAX_ATTEMPTS,
                    )

                if attempt < MAX_ATTEMPTS:
                    await asyncio.sleep(self.retry_delay)

        self.status["available"] = False
        self.status["failed"] += 1
        notifier_deliveries_total.labels(status="failed").inc()
        return False
