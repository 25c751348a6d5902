import threading
from datetime import timedelta

import pytest

from errors import AuthenticationError, PostingError
from models import PostTarget, RedditAccount, utcnow
from reddit_poster import RedditPoster, token_expired


@pytest.fixture
def poster(data_manager, reddit_client):
    return RedditPoster(data_manager, client=reddit_client, user_agent="test-agent")


@pytest.fixture
def expired_account(data_manager):
    return data_manager.add_reddit_account(RedditAccount(
        username="stale_bot",
        client_id="client-id",
        client_secret="client-secret",
        access_token="old-token",
        refresh_token="refresh-token",
        expires_at=utcnow() - timedelta(minutes=1),
    ))


def _target(account, moderate=False, flair_id=None):
    return PostTarget(
        reddit_account_id=account.id,
        subreddit_id=1,
        subreddit_name="videos",
        title_prefix="[New]",
        flair_id=flair_id,
        moderate=moderate,
    )


def test_token_expired_boundary(account):
    assert token_expired(account, now=account.expires_at)
    assert not token_expired(account, now=account.expires_at - timedelta(seconds=1))


def test_valid_token_is_not_refreshed(poster, account, fake_reddit):
    assert poster.ensure_token(account.id) == "valid-token"
    assert fake_reddit.calls_to("/api/v1/access_token") == []


def test_expired_token_is_refreshed_and_stored(poster, expired_account, fake_reddit, data_manager):
    assert poster.ensure_token(expired_account.id) == "fresh-token"

    calls = fake_reddit.calls_to("/api/v1/access_token")
    assert calls == [{"grant_type": "refresh_token", "refresh_token": "refresh-token"}]
    stored = data_manager.get_reddit_account(expired_account.id)
    assert stored.access_token == "fresh-token"
    assert stored.refresh_token == "refresh-token"
    assert stored.token_version == expired_account.token_version + 1
    assert stored.expires_at > utcnow() + timedelta(minutes=59)


def test_concurrent_refresh_is_single_flight(data_manager, expired_account, fake_reddit, reddit_client):
    fake_reddit.delay = 0.05
    poster = RedditPoster(data_manager, client=reddit_client)
    tokens = []

    def worker():
        tokens.append(poster.ensure_token(expired_account.id))

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert tokens == ["fresh-token"] * 5
    assert len(fake_reddit.calls_to("/api/v1/access_token")) == 1


def test_refresh_rejected_is_authentication_error(poster, expired_account, fake_reddit):
    fake_reddit.token_response = (200, {"error": "invalid_grant"})
    with pytest.raises(AuthenticationError):
        poster.ensure_token(expired_account.id)


def test_refresh_server_errors_exhaust_to_authentication_error(poster, expired_account, fake_reddit):
    fake_reddit.token_response = (503, {})
    with pytest.raises(AuthenticationError):
        poster.ensure_token(expired_account.id)
    assert len(fake_reddit.calls_to("/api/v1/access_token")) == 3


def test_missing_refresh_token(poster, data_manager):
    account = data_manager.add_reddit_account(RedditAccount(
        username="no_refresh", client_id="c", client_secret="s", expires_at=utcnow() - timedelta(seconds=1),
    ))
    with pytest.raises(AuthenticationError):
        poster.ensure_token(account.id)


def test_post_submits_link(poster, account, fake_reddit, video_event):
    result = poster.post(_target(account, flair_id="flair-1"), video_event)

    assert result.reddit_id == "t3_post1"
    [submit] = fake_reddit.calls_to("/api/submit")
    assert submit["sr"] == "videos"
    assert submit["kind"] == "link"
    assert submit["title"] == "[New] Never Gonna Give You Up"
    assert submit["url"] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert submit["flair_id"] == "flair-1"
    assert fake_reddit.calls_to("/api/approve") == []


def test_post_approves_when_moderating(poster, account, fake_reddit, video_event):
    result = poster.post(_target(account, moderate=True), video_event)
    assert result.approved
    assert fake_reddit.calls_to("/api/approve") == [{"id": "t3_post1"}]


def test_post_retries_rate_limits(poster, account, fake_reddit, video_event):
    fake_reddit.submit_responses = [(429, {}), (429, {})]
    result = poster.post(_target(account), video_event)
    assert result.reddit_id == "t3_post1"
    assert len(fake_reddit.calls_to("/api/submit")) == 3


def test_post_retries_in_body_ratelimit(poster, account, fake_reddit, video_event):
    fake_reddit.submit_responses = [(200, {"json": {"errors": [["RATELIMIT", "you are doing that too much", "ratelimit"]]}})]
    assert poster.post(_target(account), video_event).reddit_id == "t3_post1"


def test_post_gives_up_after_three_attempts(poster, account, fake_reddit, video_event):
    fake_reddit.submit_responses = [(500, {})] * 3
    target = _target(account)
    with pytest.raises(PostingError) as excinfo:
        poster.post(target, video_event)
    assert excinfo.value.target == target
    assert len(fake_reddit.calls_to("/api/submit")) == 3


def test_post_rejection_is_not_retried(poster, account, fake_reddit, video_event):
    fake_reddit.submit_responses = [(200, {"json": {"errors": [["SUBREDDIT_NOEXIST", "that subreddit doesn't exist", "sr"]]}})]
    with pytest.raises(PostingError):
        poster.post(_target(account), video_event)
    assert len(fake_reddit.calls_to("/api/submit")) == 1


def test_set_sticky(poster, account, fake_reddit):
    poster.set_sticky(account.id, "t3_abc", True)
    assert fake_reddit.calls_to("/api/set_subreddit_sticky") == [{"api_type": "json", "id": "t3_abc", "state": "true"}]


def test_post_does_not_force_resubmit(poster, account, fake_reddit, video_event):
    poster.post(_target(account), video_event)
    [submit] = fake_reddit.calls_to("/api/submit")
    assert "resubmit" not in submit


def test_already_submitted_link_resolves_to_existing_post(poster, account, fake_reddit, video_event):
    fake_reddit.submit_responses = [(200, {"json": {"errors": [["ALREADY_SUB", "that link has already been submitted", "url"]]}})]
    fake_reddit.existing_posts = [
        {"name": "t3_elsewhere", "subreddit": "music", "url": video_event.url},
        {"name": "t3_earlier", "subreddit": "Videos", "url": video_event.url},
    ]

    result = poster.post(_target(account, moderate=True), video_event)

    assert result.reddit_id == "t3_earlier"
    assert result.already_posted
    assert fake_reddit.calls_to("/r/videos/api/info") == [{"url": video_event.url}]
    assert len(fake_reddit.calls_to("/api/submit")) == 1
    assert fake_reddit.calls_to("/api/approve") == []


def test_already_submitted_link_missing_from_listing(poster, account, fake_reddit, video_event):
    fake_reddit.submit_responses = [(200, {"json": {"errors": [["ALREADY_SUB", "that link has already been submitted", "url"]]}})]
    with pytest.raises(PostingError):
        poster.post(_target(account), video_event)


def test_refreshed_expiry_is_timezone_aware(poster, expired_account, data_manager):
    poster.ensure_token(expired_account.id)
    stored = data_manager.get_reddit_account(expired_account.id)
    assert stored.expires_at.tzinfo is not None
    assert not token_expired(stored)
