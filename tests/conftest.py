import os

# Settings are read once at import time
os.environ.setdefault("RETRY_BACKOFF_MULTIPLIER", "0")
os.environ.setdefault("RENEWER_ENABLED", "false")

import threading
import time
from datetime import datetime, timedelta, UTC
from urllib.parse import parse_qsl

import httpx
import pytest

from models import Subscription, RedditAccount, Subreddit, VideoUpdated, utcnow
from repository import DataManager

CHANNEL_ID = "UCBR8-60-B28hp2BmDPdntcQ"
SECRET = "s3cr3t-hmac"


class FakeReddit:
    """httpx transport handler standing in for www.reddit.com and oauth.reddit.com"""
    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.submit_responses = []
        self.token_response = (200, {"access_token": "fresh-token", "token_type": "bearer", "expires_in": 3600, "scope": "submit"})
        # path -> (status, json) for every call to that path
        self.overrides = {}
        self.existing_posts = []
        self.calls = []
        self._counter = 0
        self._lock = threading.Lock()

    def calls_to(self, path):
        return [data for p, data in self.calls if p == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            data = dict(request.url.params)
        else:
            data = dict(parse_qsl(request.content.decode()))
        path = request.url.path
        with self._lock:
            self.calls.append((path, data))
        if self.delay:
            time.sleep(self.delay)

        if path in self.overrides:
            status, payload = self.overrides[path]
            return httpx.Response(status, json=payload)
        if path == "/api/v1/access_token":
            status, payload = self.token_response
            return httpx.Response(status, json=payload)
        if path == "/api/submit":
            with self._lock:
                if self.submit_responses:
                    status, payload = self.submit_responses.pop(0)
                    return httpx.Response(status, json=payload)
                self._counter += 1
                n = self._counter
            return httpx.Response(200, json={"json": {"errors": [], "data": {
                "id": f"post{n}", "name": f"t3_post{n}", "url": f"https://www.reddit.com/r/test/comments/post{n}/",
            }}})
        if path.endswith("/api/info"):
            return httpx.Response(200, json={"kind": "Listing", "data": {
                "children": [{"kind": "t3", "data": post} for post in self.existing_posts],
            }})
        return httpx.Response(200, json={"json": {"errors": []}})


@pytest.fixture
def data_manager(tmp_path):
    return DataManager(tmp_path / "relay.db")


@pytest.fixture
def fake_reddit():
    return FakeReddit()


@pytest.fixture
def reddit_client(fake_reddit):
    return httpx.Client(transport=httpx.MockTransport(fake_reddit))


@pytest.fixture
def subscription(data_manager):
    return data_manager.add_subscription(Subscription(
        id="sub-1",
        channel_id=CHANNEL_ID,
        channel_name="YouTube",
        hmac_secret=SECRET,
        callback_url="https://relay.example.com/websub/sub-1",
        post_shorts=False,
    ))


@pytest.fixture
def account(data_manager):
    return data_manager.add_reddit_account(RedditAccount(
        username="relay_bot",
        client_id="client-id",
        client_secret="client-secret",
        access_token="valid-token",
        refresh_token="refresh-token",
        expires_at=utcnow() + timedelta(hours=1),
    ))


@pytest.fixture
def targets(data_manager, subscription, account):
    """Subscription -> account -> r/videos (prefixed) and r/youtube"""
    videos = data_manager.add_subreddit(Subreddit(name="videos", title_prefix="[New]", flair_id="flair-1"))
    youtube = data_manager.add_subreddit(Subreddit(name="youtube"))
    data_manager.bind_account(subscription.id, account.id)
    data_manager.bind_subreddit(account.id, videos.id)
    data_manager.bind_subreddit(account.id, youtube.id)
    return videos, youtube


@pytest.fixture
def video_event():
    return VideoUpdated(
        video_id="dQw4w9WgXcQ",
        channel_id=CHANNEL_ID,
        title="Never Gonna Give You Up",
        published=datetime(2024, 3, 1, 12, 0, tzinfo=UTC),
        updated=datetime(2024, 3, 1, 12, 5, tzinfo=UTC),
    )


@pytest.fixture
def make_feed():
    def _make_feed(video_id="dQw4w9WgXcQ", channel_id=CHANNEL_ID, title="Never Gonna Give You Up", link=None):
        link = link or f"https://www.youtube.com/watch?v={video_id}"
        return f"""<?xml version='1.0' encoding='UTF-8'?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015" xmlns="http://www.w3.org/2005/Atom">
  <link rel="hub" href="https://pubsubhubbub.appspot.com"/>
  <link rel="self" href="https://www.youtube.com/xml/feeds/videos.xml?channel_id={channel_id}"/>
  <title>YouTube video feed</title>
  <updated>2024-03-01T12:05:00.123456789+00:00</updated>
  <entry>
    <id>yt:video:{video_id}</id>
    <yt:videoId>{video_id}</yt:videoId>
    <yt:channelId>{channel_id}</yt:channelId>
    <title>{title}</title>
    <link rel="alternate" href="{link}"/>
    <author>
      <name>YouTube</name>
      <uri>https://www.youtube.com/channel/{channel_id}</uri>
    </author>
    <published>2024-03-01T12:00:00+00:00</published>
    <updated>2024-03-01T12:05:00.123456789+00:00</updated>
  </entry>
</feed>""".encode("utf-8")
    return _make_feed
