import hmac
import hashlib
import logging
import re
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, parse_qs

from errors import AuthenticationError, NotFoundError, MalformedRequestError
from models import Subscription, utcnow
from repository import DataManager
from settings import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature"
SIGNATURE_ALGORITHMS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}
_HEX_DIGEST = re.compile(r"^[0-9a-fA-F]+$")


def sign(secret: str, body: bytes, algorithm: str = "sha1") -> str:
    """Return an X-Hub-Signature header value for `body`."""
    digest = hmac.new(secret.encode("utf-8"), body, SIGNATURE_ALGORITHMS[algorithm]).hexdigest()
    return f"{algorithm}={digest}"


def parse_signature(header: Optional[str]) -> tuple[str, str]:
    if not header or not header.strip():
        raise MalformedRequestError(f"Missing {SIGNATURE_HEADER} header")
    algorithm, sep, digest = header.strip().partition("=")
    algorithm = algorithm.strip().lower()
    digest = digest.strip()
    if not sep or algorithm not in SIGNATURE_ALGORITHMS:
        raise MalformedRequestError(f"Unsupported {SIGNATURE_HEADER} value: {header!r}")
    if not _HEX_DIGEST.match(digest):
        raise MalformedRequestError(f"{SIGNATURE_HEADER} digest is not hexadecimal")
    return algorithm, digest.lower()


def channel_id_from_topic(topic: str) -> Optional[str]:
    """Extract channel_id from a YouTube feed topic URL."""
    values = parse_qs(urlparse(topic).query).get("channel_id")
    return values[0].strip() if values and values[0].strip() else None


class WebhookVerifier:
    """Authenticates hub notifications and answers hub verification requests"""
    def __init__(self, data_manager: DataManager, default_lease_seconds: int = settings.default_lease_seconds):
        self.data_manager = data_manager
        self.default_lease_seconds = default_lease_seconds

    def _active_subscription(self, subscription_id: str) -> Subscription:
        subscription = self.data_manager.get_active_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(f"No active subscription with id {subscription_id}")
        return subscription

    def verify_notification(self, subscription_id: str, body: bytes, signature_header: Optional[str]) -> Subscription:
        algorithm, provided = parse_signature(signature_header)
        subscription = self._active_subscription(subscription_id)

        expected = hmac.new(
            subscription.hmac_secret.encode("utf-8"), body, SIGNATURE_ALGORITHMS[algorithm]
        ).hexdigest()
        if not hmac.compare_digest(expected, provided):
            logger.warning(f"Signature mismatch for subscription {subscription_id}")
            raise AuthenticationError(f"Invalid {SIGNATURE_HEADER} for subscription {subscription_id}")
        return subscription

    def confirm_subscription(
        self,
        subscription_id: str,
        mode: Optional[str],
        topic: Optional[str],
        challenge: Optional[str],
        lease_seconds: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> str:
        """Handle a hub verification request and return the response body."""
        if mode == "denied":
            logger.warning(f"Hub denied subscription {subscription_id}: {reason or 'no reason given'}")
            return ""
        if mode not in ("subscribe", "unsubscribe"):
            raise MalformedRequestError(f"Unsupported hub.mode: {mode!r}")
        if not topic or challenge is None or challenge == "":
            raise MalformedRequestError("hub.topic and hub.challenge are required")

        subscription = self._active_subscription(subscription_id)
        if channel_id_from_topic(topic) != subscription.channel_id:
            raise NotFoundError(f"Topic {topic} does not belong to subscription {subscription_id}")

        if mode == "unsubscribe":
            self.data_manager.mark_unsubscribed(subscription.id)
            logger.info(f"Unsubscribed from channel {subscription.channel_id} ({subscription.id})")
            return challenge

        if lease_seconds is None or lease_seconds == "":
            lease = self.default_lease_seconds
        else:
            try:
                lease = int(lease_seconds)
            except ValueError:
                raise MalformedRequestError(f"hub.lease_seconds is not an integer: {lease_seconds!r}")
            if lease < 0:
                raise MalformedRequestError(f"hub.lease_seconds is negative: {lease}")

        expires = utcnow() + timedelta(seconds=lease)
        self.data_manager.record_lease(subscription.id, expires)
        logger.info(f"Lease for channel {subscription.channel_id} ({subscription.id}) granted until {expires.isoformat()}")
        return challenge
