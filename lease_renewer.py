import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import httpx

from errors import RelayError, SubscriptionRequestError, TransientNetworkError
from metrics import RENEWAL_COUNT
from models import Subscription, utcnow
from repository import DataManager
from settings import settings

logger = logging.getLogger(__name__)

TOPIC_URL = "https://www.youtube.com/xml/feeds/videos.xml?channel_id={channel_id}"


def topic_url(channel_id: str) -> str:
    return TOPIC_URL.format(channel_id=channel_id)


@dataclass
class RenewalReport:
    requested: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    lapsed: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)


class LeaseRenewer:
    """Re-subscribes to the hub before WebSub leases run out.

    The renewer only asks; the new expiry is written when the hub comes back
    with its verification request. Lapsed subscriptions are reported and left
    alone, see resubscribe.py.
    """
    def __init__(
        self,
        data_manager: DataManager,
        client: Optional[httpx.Client] = None,
        hub_url: str = settings.hub_url,
        lease_seconds: int = settings.default_lease_seconds,
        window: timedelta = timedelta(hours=settings.renewal_window_hours),
        pending_for: timedelta = timedelta(seconds=settings.renewal_pending_seconds),
    ):
        self.data_manager = data_manager
        self.client = client or httpx.Client(timeout=settings.http_timeout_seconds)
        self.hub_url = hub_url
        self.lease_seconds = lease_seconds
        self.window = window
        self.pending_for = pending_for
        # subscription id -> (expiry at request time, request time)
        self._requested: Dict[str, tuple] = {}

    def close(self):
        self.client.close()

    def subscribe(self, subscription: Subscription, mode: str = "subscribe"):
        data = {
            "hub.mode": mode,
            "hub.topic": topic_url(subscription.channel_id),
            "hub.callback": subscription.callback_url,
            "hub.verify": "async",
            "hub.secret": subscription.hmac_secret,
            "hub.lease_seconds": str(self.lease_seconds),
        }
        try:
            response = self.client.post(self.hub_url, data=data)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timed out calling hub for {subscription.channel_id}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Transport error calling hub for {subscription.channel_id}: {e}") from e

        if response.status_code >= 500:
            raise TransientNetworkError(f"Hub returned HTTP {response.status_code} for {subscription.channel_id}")
        if response.status_code not in (202, 204):
            raise SubscriptionRequestError(
                f"Hub refused {mode} for {subscription.channel_id}: HTTP {response.status_code} {response.text[:200]}"
            )
        logger.info(f"Hub accepted {mode} request for channel {subscription.channel_id} ({subscription.id})")

    def _awaiting_handshake(self, subscription: Subscription, now: datetime) -> bool:
        requested = self._requested.get(subscription.id)
        if requested is None:
            return False
        expires_then, requested_at = requested
        return expires_then == subscription.expires and now - requested_at < self.pending_for

    def run_once(self, now: Optional[datetime] = None) -> RenewalReport:
        now = now or utcnow()
        report = RenewalReport()
        for subscription in self.data_manager.get_expiring_subscriptions(now + self.window):
            if subscription.expires < now:
                logger.warning(
                    f"Lease for channel {subscription.channel_id} ({subscription.id}) lapsed at "
                    f"{subscription.expires.isoformat()}, manual re-subscription required"
                )
                RENEWAL_COUNT.labels(status="lapsed").inc()
                report.lapsed.append(subscription.id)
                continue
            if self._awaiting_handshake(subscription, now):
                report.pending.append(subscription.id)
                continue

            try:
                self.subscribe(subscription)
            except RelayError as e:
                logger.error(f"Renewal for channel {subscription.channel_id} failed, retrying next cycle: {e.message}")
                RENEWAL_COUNT.labels(status="failed").inc()
                report.failed.append(subscription.id)
                continue
            self._requested[subscription.id] = (subscription.expires, now)
            RENEWAL_COUNT.labels(status="requested").inc()
            report.requested.append(subscription.id)

        if report.requested or report.failed or report.lapsed:
            logger.info(
                f"Renewal pass: {len(report.requested)} requested, {len(report.failed)} failed, "
                f"{len(report.lapsed)} lapsed, {len(report.pending)} awaiting verification"
            )
        return report

    async def run_forever(self, interval: float = settings.renewal_interval_seconds):
        logger.info(f"Lease renewer started, checking every {interval}s")
        while True:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.error("Lease renewal pass crashed", exc_info=True)
            await asyncio.sleep(interval)
