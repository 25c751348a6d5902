from datetime import datetime, UTC
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Literal, Union, Annotated

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Column, DateTime, UniqueConstraint
from sqlmodel import SQLModel, Field as SqlField


def utcnow() -> datetime:
    return datetime.now(UTC)


# -----------------------------
# Lease Store
# -----------------------------
class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"

    id: str = SqlField(primary_key=True)
    channel_id: str = SqlField(index=True)
    channel_name: str
    hmac_secret: str
    callback_url: str
    expires: Optional[datetime] = SqlField(default=None, sa_column=Column(DateTime(timezone=True)))
    post_shorts: bool = False
    deleted_at: Optional[datetime] = SqlField(default=None, sa_column=Column(DateTime(timezone=True)))

# -----------------------------
# Account/Target Registry
# -----------------------------
class RedditAccount(SQLModel, table=True):
    __tablename__ = "reddit_accounts"

    id: Optional[int] = SqlField(default=None, primary_key=True)
    username: str
    client_id: str
    client_secret: str
    moderate_submissions: bool = False
    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_at: datetime = SqlField(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    token_version: int = 0


class Subreddit(SQLModel, table=True):
    __tablename__ = "subreddits"

    id: Optional[int] = SqlField(default=None, primary_key=True)
    name: str = SqlField(index=True)
    title_prefix: Optional[str] = None
    title_suffix: Optional[str] = None
    flair_id: Optional[str] = None


class SubscriptionRedditAccount(SQLModel, table=True):
    __tablename__ = "subscription_reddit_accounts"

    subscription_id: str = SqlField(foreign_key="subscriptions.id", primary_key=True)
    reddit_account_id: int = SqlField(foreign_key="reddit_accounts.id", primary_key=True)


class RedditAccountSubreddit(SQLModel, table=True):
    __tablename__ = "reddit_account_subreddits"

    reddit_account_id: int = SqlField(foreign_key="reddit_accounts.id", primary_key=True)
    subreddit_id: int = SqlField(foreign_key="subreddits.id", primary_key=True)

# -----------------------------
# Dedup Ledger
# -----------------------------
class Submission(SQLModel, table=True):
    __tablename__ = "submissions"
    __table_args__ = (
        UniqueConstraint("video_id", "reddit_account_id", "subreddit_id", name="uq_submission_target"),
    )

    id: str = SqlField(primary_key=True)
    video_id: str = SqlField(index=True)
    stickied: bool = False
    reddit_account_id: int = SqlField(foreign_key="reddit_accounts.id")
    subreddit_id: int = SqlField(foreign_key="subreddits.id")
    created_at: datetime = SqlField(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    # NULL while the post is in flight
    reddit_id: Optional[str] = None


class SubscriptionSubmission(SQLModel, table=True):
    __tablename__ = "subscription_submissions"

    subscription_id: str = SqlField(foreign_key="subscriptions.id", primary_key=True)
    submission_id: str = SqlField(foreign_key="submissions.id", primary_key=True)

# -----------------------------
# Feed events
# -----------------------------
class VideoUpdated(BaseModel):
    """A new or edited video announced by the hub"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["updated"] = "updated"
    video_id: str
    channel_id: str
    title: str
    link: Optional[str] = None
    author_name: Optional[str] = None
    published: datetime
    updated: datetime
    is_short: bool = False

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"


class VideoDeleted(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["deleted"] = "deleted"
    video_id: str
    channel_id: Optional[str] = None
    deleted_at: Optional[datetime] = SqlField(default=None, sa_column=Column(DateTime(timezone=True)))


class Unrecognized(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["unrecognized"] = "unrecognized"
    tag: str


FeedEvent = Annotated[Union[VideoUpdated, VideoDeleted, Unrecognized], Field(discriminator="kind")]

# -----------------------------
# Dispatch values
# -----------------------------
@dataclass(frozen=True)
class PostTarget:
    reddit_account_id: int
    subreddit_id: int
    subreddit_name: str
    title_prefix: Optional[str] = None
    title_suffix: Optional[str] = None
    flair_id: Optional[str] = None
    moderate: bool = False

    def __str__(self) -> str:
        return f"account={self.reddit_account_id} r/{self.subreddit_name}"


@dataclass(frozen=True)
class PostResult:
    reddit_id: str
    url: Optional[str] = None
    approved: bool = False
    # Reddit already had this link in the subreddit
    already_posted: bool = False


class OutcomeStatus(str, Enum):
    POSTED = "posted"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_SHORT = "skipped_short"
    FAILED = "failed"


@dataclass(frozen=True)
class TargetOutcome:
    target: PostTarget
    status: OutcomeStatus
    video_id: str
    reason: Optional[str] = None
    submission_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "video_id": self.video_id,
            "reddit_account_id": self.target.reddit_account_id,
            "subreddit": self.target.subreddit_name,
            "status": self.status.value,
            "reason": self.reason,
            "submission_id": self.submission_id,
        }
