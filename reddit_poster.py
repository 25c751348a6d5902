import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, wait_exponential, stop_after_attempt, before_sleep_log

from errors import AuthenticationError, NotFoundError, PostingError, RelayError, TransientNetworkError
from metrics import TOKEN_REFRESH_COUNT
from models import PostTarget, PostResult, RedditAccount, VideoUpdated, utcnow
from repository import DataManager
from settings import settings

logger = logging.getLogger(__name__)

REDDIT_TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
REDDIT_API_URL = "https://oauth.reddit.com"
REDDIT_TITLE_LIMIT = 300
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}

reddit_retry = retry(
    retry=retry_if_exception_type(TransientNetworkError),
    wait=wait_exponential(multiplier=settings.retry_backoff_multiplier, max=settings.retry_backoff_max_seconds),
    stop=stop_after_attempt(settings.reddit_retry_attempts),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def compose_title(prefix: Optional[str], title: str, suffix: Optional[str]) -> str:
    """Join prefix, title and suffix with single spaces, dropping empty parts."""
    parts = [part.strip() for part in (prefix, title, suffix) if part and part.strip()]
    return " ".join(parts)[:REDDIT_TITLE_LIMIT]


def token_expired(account: RedditAccount, now: Optional[datetime] = None) -> bool:
    return (now or utcnow()) >= account.expires_at


class RedditPoster:
    """Posts video links to Reddit on behalf of stored accounts.

    The poster is the only writer of an account's token fields. Refreshes are
    single-flight per account: concurrent callers wait on the account's lock
    and pick up the token the first caller stored.
    """
    def __init__(self, data_manager: DataManager, client: Optional[httpx.Client] = None, user_agent: str = settings.reddit_user_agent):
        self.data_manager = data_manager
        self.client = client or httpx.Client(timeout=settings.http_timeout_seconds)
        self.user_agent = user_agent
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def close(self):
        self.client.close()

    def _lock_for(self, account_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(account_id, threading.Lock())

    def _account(self, account_id: int) -> RedditAccount:
        account = self.data_manager.get_reddit_account(account_id)
        if account is None:
            raise NotFoundError(f"No Reddit account with id {account_id}")
        return account

    def _send(self, url: str, token: Optional[str] = None, method: str = "POST", **kwargs) -> httpx.Response:
        headers = {"User-Agent": self.user_agent}
        if token:
            headers["Authorization"] = f"bearer {token}"
        try:
            response = self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timed out calling {url}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Transport error calling {url}: {e}") from e
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientNetworkError(f"{url} returned HTTP {response.status_code}")
        return response

    # -----------------------------
    # OAuth tokens
    # -----------------------------
    def ensure_token(self, account_id: int, now: Optional[datetime] = None) -> str:
        """Return a usable access token, refreshing it iff it has expired."""
        account = self._account(account_id)
        if not token_expired(account, now):
            return account.access_token

        with self._lock_for(account_id):
            # Another thread may have refreshed while we waited
            account = self._account(account_id)
            if not token_expired(account, now):
                return account.access_token
            return self._refresh_token(account)

    def _refresh_token(self, account: RedditAccount) -> str:
        if not account.refresh_token:
            TOKEN_REFRESH_COUNT.labels(status="failed").inc()
            raise AuthenticationError(f"Reddit account {account.username} has no refresh token")
        try:
            payload = self._request_token(account)
        except TransientNetworkError as e:
            TOKEN_REFRESH_COUNT.labels(status="failed").inc()
            raise AuthenticationError(f"Token refresh for {account.username} failed: {e.message}") from e
        except AuthenticationError:
            TOKEN_REFRESH_COUNT.labels(status="failed").inc()
            raise

        access_token = payload["access_token"]
        refresh_token = payload.get("refresh_token") or account.refresh_token
        expires_at = utcnow() + timedelta(seconds=int(payload.get("expires_in", 3600)))
        if not self.data_manager.update_reddit_token(account.id, account.token_version, access_token, refresh_token, expires_at):
            logger.warning(f"Token for {account.username} was replaced concurrently, using the stored one")
            return self._account(account.id).access_token

        TOKEN_REFRESH_COUNT.labels(status="success").inc()
        logger.info(f"Refreshed Reddit token for {account.username}, valid until {expires_at.isoformat()}")
        return access_token

    @reddit_retry
    def _request_token(self, account: RedditAccount) -> dict:
        response = self._send(
            REDDIT_TOKEN_URL,
            auth=(account.client_id, account.client_secret),
            data={"grant_type": "refresh_token", "refresh_token": account.refresh_token},
        )
        if response.status_code != 200:
            raise AuthenticationError(f"Token refresh rejected with HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            raise AuthenticationError("Token refresh returned a non-JSON body")
        if "error" in payload or not payload.get("access_token"):
            raise AuthenticationError(f"Token refresh rejected: {payload.get('error', 'no access_token')}")
        return payload

    # -----------------------------
    # Submissions
    # -----------------------------
    def post(self, target: PostTarget, event: VideoUpdated) -> PostResult:
        token = self.ensure_token(target.reddit_account_id)
        # resubmit stays off so a retried submit gets ALREADY_SUB instead of a second post
        data = {
            "api_type": "json",
            "kind": "link",
            "sr": target.subreddit_name,
            "title": compose_title(target.title_prefix, event.title, target.title_suffix),
            "url": event.url,
            "sendreplies": "true",
        }
        if target.flair_id:
            data["flair_id"] = target.flair_id

        try:
            payload = self._submit(token, data)
            if payload is None:
                return self._existing_post(token, target, event)
        except TransientNetworkError as e:
            raise PostingError(f"Gave up posting to r/{target.subreddit_name}: {e.message}", target) from e
        except PostingError as e:
            e.target = target
            raise

        post_data = payload.get("json", {}).get("data", {})
        reddit_id = post_data.get("name") or (f"t3_{post_data['id']}" if post_data.get("id") else None)
        if not reddit_id:
            raise PostingError(f"Reddit accepted the post to r/{target.subreddit_name} but returned no id", target)

        approved = False
        if target.moderate:
            approved = self.approve(target.reddit_account_id, reddit_id)
        return PostResult(reddit_id=reddit_id, url=post_data.get("url"), approved=approved)

    @reddit_retry
    def _submit(self, token: str, data: dict) -> Optional[dict]:
        """POST /api/submit. None when Reddit reports the link as already submitted."""
        response = self._send(f"{REDDIT_API_URL}/api/submit", token=token, data=data)
        if response.status_code in (401, 403):
            raise AuthenticationError(f"Reddit refused the access token (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise PostingError(f"Reddit rejected the submission with HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            raise PostingError("Reddit returned a non-JSON submission response")

        errors = payload.get("json", {}).get("errors") or []
        codes = [error[0] for error in errors if error]
        if "RATELIMIT" in codes:
            raise TransientNetworkError(f"Reddit rate limited the submission: {errors}")
        if "ALREADY_SUB" in codes:
            return None
        if errors:
            raise PostingError(f"Reddit rejected the submission: {errors}")
        return payload

    @reddit_retry
    def _existing_post(self, token: str, target: PostTarget, event: VideoUpdated) -> PostResult:
        response = self._send(
            f"{REDDIT_API_URL}/r/{target.subreddit_name}/api/info",
            token=token,
            method="GET",
            params={"url": event.url},
        )
        if response.status_code >= 400:
            raise PostingError(f"Looking up the existing post in r/{target.subreddit_name} failed with HTTP {response.status_code}")
        children = response.json().get("data", {}).get("children") or []
        for child in children:
            post_data = child.get("data", {})
            if post_data.get("subreddit", "").lower() == target.subreddit_name.lower() and post_data.get("name"):
                return PostResult(reddit_id=post_data["name"], url=post_data.get("url"), already_posted=True)
        raise PostingError(f"Reddit says the link is already in r/{target.subreddit_name} but it could not be found")

    # -----------------------------
    # Moderation
    # -----------------------------
    def _moderate(self, account_id: int, path: str, data: dict):
        token = self.ensure_token(account_id)
        response = self._send(f"{REDDIT_API_URL}{path}", token=token, data=data)
        if response.status_code >= 400:
            raise PostingError(f"{path} failed with HTTP {response.status_code}")

    def approve(self, account_id: int, reddit_id: str) -> bool:
        try:
            self._moderate(account_id, "/api/approve", {"id": reddit_id})
            return True
        except RelayError:
            logger.warning(f"Could not approve {reddit_id}", exc_info=True)
            return False

    def set_sticky(self, account_id: int, reddit_id: str, state: bool):
        self._moderate(
            account_id,
            "/api/set_subreddit_sticky",
            {"api_type": "json", "id": reddit_id, "state": "true" if state else "false"},
        )
