import logging
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import update, delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, Session, create_engine, select, col

from errors import DuplicateSubmissionError
from models import (
    Subscription,
    RedditAccount,
    Subreddit,
    SubscriptionRedditAccount,
    RedditAccountSubreddit,
    Submission,
    SubscriptionSubmission,
    PostTarget,
    utcnow,
)

logger = logging.getLogger(__name__)


class DataManager:
    """Manage SQLite data operations using SQLModel.

    One object backs the three stores of the pipeline: the lease store
    (subscriptions), the target registry (accounts, subreddits and their
    bindings) and the dedup ledger (submissions).
    """
    def __init__(self, db_path: Path):
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        SQLModel.metadata.create_all(self.engine)

    @staticmethod
    def _make_aware(dt: Optional[datetime]) -> Optional[datetime]:
        """Ensure a datetime is timezone-aware (UTC). Safe to call on already-aware datetimes."""
        if dt is not None and dt.tzinfo is None:
            return dt.replace(tzinfo=UTC)
        return dt

    @staticmethod
    def _aware_subscription(subscription: Optional[Subscription]) -> Optional[Subscription]:
        if subscription is not None:
            subscription.expires = DataManager._make_aware(subscription.expires)
            subscription.deleted_at = DataManager._make_aware(subscription.deleted_at)
        return subscription

    @staticmethod
    def _aware_submission(submission: Submission) -> Submission:
        submission.created_at = DataManager._make_aware(submission.created_at)
        return submission

    # -----------------------------
    # Lease Store
    # -----------------------------
    def add_subscription(self, subscription: Subscription) -> Subscription:
        if not subscription.hmac_secret or not subscription.hmac_secret.strip():
            raise ValueError(f"Subscription {subscription.id} has an empty HMAC secret")
        with Session(self.engine) as session:
            session.add(subscription)
            session.commit()
            session.refresh(subscription)
            return self._aware_subscription(subscription)

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with Session(self.engine) as session:
            return self._aware_subscription(session.get(Subscription, subscription_id))

    def get_active_subscription(self, subscription_id: str) -> Optional[Subscription]:
        subscription = self.get_subscription(subscription_id)
        if subscription is None or subscription.deleted_at is not None:
            return None
        return subscription

    def get_subscriptions_for_channel(self, channel_id: str) -> List[Subscription]:
        with Session(self.engine) as session:
            statement = select(Subscription).where(
                Subscription.channel_id == channel_id,
                col(Subscription.deleted_at).is_(None),
            )
            return [self._aware_subscription(s) for s in session.exec(statement).all()]

    def get_expiring_subscriptions(self, before: datetime) -> List[Subscription]:
        """Active subscriptions with a lease that ends at or before `before`."""
        with Session(self.engine) as session:
            statement = (
                select(Subscription)
                .where(
                    col(Subscription.expires).is_not(None),
                    col(Subscription.expires) <= before,
                    col(Subscription.deleted_at).is_(None),
                )
                .order_by(col(Subscription.expires))
            )
            return [self._aware_subscription(s) for s in session.exec(statement).all()]

    def get_lapsed_subscriptions(self, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or utcnow()
        return [s for s in self.get_expiring_subscriptions(now) if s.expires < now]

    def record_lease(self, subscription_id: str, expires: datetime) -> bool:
        with Session(self.engine) as session:
            subscription = session.get(Subscription, subscription_id)
            if subscription is None:
                return False
            subscription.expires = expires
            session.add(subscription)
            session.commit()
            return True

    def mark_unsubscribed(self, subscription_id: str, when: Optional[datetime] = None) -> bool:
        with Session(self.engine) as session:
            subscription = session.get(Subscription, subscription_id)
            if subscription is None:
                return False
            subscription.deleted_at = when or utcnow()
            session.add(subscription)
            session.commit()
            return True

    def prune_unsubscribed(self, before: datetime) -> int:
        """Delete subscriptions unsubscribed before `before`, with their bindings."""
        with Session(self.engine) as session:
            statement = select(Subscription.id).where(
                col(Subscription.deleted_at).is_not(None),
                col(Subscription.deleted_at) < before,
            )
            ids = list(session.exec(statement).all())
            if not ids:
                return 0
            connection = session.connection()
            connection.execute(delete(SubscriptionRedditAccount).where(col(SubscriptionRedditAccount.subscription_id).in_(ids)))
            connection.execute(delete(SubscriptionSubmission).where(col(SubscriptionSubmission.subscription_id).in_(ids)))
            connection.execute(delete(Subscription).where(col(Subscription.id).in_(ids)))
            session.commit()
            return len(ids)

    # -----------------------------
    # Account/Target Registry
    # -----------------------------
    def add_reddit_account(self, account: RedditAccount) -> RedditAccount:
        with Session(self.engine) as session:
            session.add(account)
            session.commit()
            session.refresh(account)
            account.expires_at = self._make_aware(account.expires_at)
            return account

    def get_reddit_account(self, account_id: int) -> Optional[RedditAccount]:
        with Session(self.engine) as session:
            account = session.get(RedditAccount, account_id)
            if account is not None:
                account.expires_at = self._make_aware(account.expires_at)
            return account

    def add_subreddit(self, subreddit: Subreddit) -> Subreddit:
        with Session(self.engine) as session:
            session.add(subreddit)
            session.commit()
            session.refresh(subreddit)
            return subreddit

    def bind_account(self, subscription_id: str, reddit_account_id: int):
        with Session(self.engine) as session:
            session.merge(SubscriptionRedditAccount(subscription_id=subscription_id, reddit_account_id=reddit_account_id))
            session.commit()

    def bind_subreddit(self, reddit_account_id: int, subreddit_id: int):
        with Session(self.engine) as session:
            session.merge(RedditAccountSubreddit(reddit_account_id=reddit_account_id, subreddit_id=subreddit_id))
            session.commit()

    def resolve_targets(self, subscription_id: str) -> List[PostTarget]:
        """Every (account, subreddit) pair reachable from the subscription."""
        with Session(self.engine) as session:
            statement = (
                select(RedditAccount, Subreddit)
                .join(SubscriptionRedditAccount, col(SubscriptionRedditAccount.reddit_account_id) == col(RedditAccount.id))
                .join(RedditAccountSubreddit, col(RedditAccountSubreddit.reddit_account_id) == col(RedditAccount.id))
                .join(Subreddit, col(Subreddit.id) == col(RedditAccountSubreddit.subreddit_id))
                .where(SubscriptionRedditAccount.subscription_id == subscription_id)
                .order_by(col(RedditAccount.id), col(Subreddit.id))
            )
            return [
                PostTarget(
                    reddit_account_id=account.id,
                    subreddit_id=subreddit.id,
                    subreddit_name=subreddit.name,
                    title_prefix=subreddit.title_prefix,
                    title_suffix=subreddit.title_suffix,
                    flair_id=subreddit.flair_id,
                    moderate=account.moderate_submissions,
                )
                for account, subreddit in session.exec(statement).all()
            ]

    def update_reddit_token(
        self,
        account_id: int,
        expected_version: int,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
    ) -> bool:
        """Compare-and-swap on token_version. False when another writer got there first."""
        with Session(self.engine) as session:
            result = session.connection().execute(
                update(RedditAccount)
                .where(
                    col(RedditAccount.id) == account_id,
                    col(RedditAccount.token_version) == expected_version,
                )
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    expires_at=expires_at,
                    token_version=expected_version + 1,
                )
            )
            session.commit()
            return result.rowcount == 1

    # -----------------------------
    # Dedup Ledger
    # -----------------------------
    def claim_submission(
        self,
        video_id: str,
        reddit_account_id: int,
        subreddit_id: int,
        subscription_id: str,
        stale_after: Optional[timedelta] = None,
    ) -> Submission:
        """Conditionally insert the submission row for a target.

        Raises DuplicateSubmissionError when the triple already exists, unless
        it is an unconfirmed claim older than `stale_after`, which is taken over.
        """
        now = utcnow()
        submission = Submission(
            id=uuid4().hex,
            video_id=video_id,
            reddit_account_id=reddit_account_id,
            subreddit_id=subreddit_id,
            created_at=now,
        )
        with Session(self.engine) as session:
            try:
                session.add(submission)
                session.flush()
                session.add(SubscriptionSubmission(subscription_id=subscription_id, submission_id=submission.id))
                session.commit()
            except IntegrityError:
                session.rollback()
            else:
                session.refresh(submission)
                return self._aware_submission(submission)

            if stale_after is not None:
                taken = self._take_over_claim(session, video_id, reddit_account_id, subreddit_id, subscription_id, now, now - stale_after)
                if taken is not None:
                    return taken
        raise DuplicateSubmissionError(
            f"Video {video_id} already submitted by account {reddit_account_id} to subreddit {subreddit_id}"
        )

    def _take_over_claim(self, session, video_id, reddit_account_id, subreddit_id, subscription_id, now, stale_before):
        result = session.connection().execute(
            update(Submission)
            .where(
                col(Submission.video_id) == video_id,
                col(Submission.reddit_account_id) == reddit_account_id,
                col(Submission.subreddit_id) == subreddit_id,
                col(Submission.reddit_id).is_(None),
                col(Submission.created_at) < stale_before,
            )
            .values(created_at=now)
        )
        if result.rowcount != 1:
            session.rollback()
            return None
        submission = session.exec(
            select(Submission).where(
                Submission.video_id == video_id,
                Submission.reddit_account_id == reddit_account_id,
                Submission.subreddit_id == subreddit_id,
            )
        ).one()
        session.merge(SubscriptionSubmission(subscription_id=subscription_id, submission_id=submission.id))
        session.commit()
        session.refresh(submission)
        logger.warning(f"Took over abandoned claim {submission.id} for video {video_id}")
        return self._aware_submission(submission)

    def confirm_submission(self, submission_id: str, reddit_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.connection().execute(
                update(Submission)
                .where(col(Submission.id) == submission_id, col(Submission.reddit_id).is_(None))
                .values(reddit_id=reddit_id)
            )
            session.commit()
            return result.rowcount == 1

    def release_submission(self, submission_id: str) -> bool:
        """Drop an unconfirmed claim so a redelivery can post again."""
        with Session(self.engine) as session:
            connection = session.connection()
            result = connection.execute(
                delete(Submission).where(col(Submission.id) == submission_id, col(Submission.reddit_id).is_(None))
            )
            if result.rowcount:
                connection.execute(delete(SubscriptionSubmission).where(col(SubscriptionSubmission.submission_id) == submission_id))
            session.commit()
            return result.rowcount == 1

    def set_submission_stickied(self, submission_id: str, stickied: bool):
        with Session(self.engine) as session:
            session.connection().execute(
                update(Submission).where(col(Submission.id) == submission_id).values(stickied=stickied)
            )
            session.commit()

    def get_stickied_submissions(self, subreddit_id: int) -> List[Submission]:
        """Stickied submissions in a subreddit, from any account, newest first.

        Sticky slots belong to the subreddit, not to the account that posted.
        """
        with Session(self.engine) as session:
            statement = (
                select(Submission)
                .where(
                    Submission.subreddit_id == subreddit_id,
                    Submission.stickied == True,  # noqa: E712
                    col(Submission.reddit_id).is_not(None),
                )
                .order_by(col(Submission.created_at).desc())
            )
            return [self._aware_submission(s) for s in session.exec(statement).all()]

    def get_submissions_for_video(self, video_id: str) -> List[Submission]:
        with Session(self.engine) as session:
            statement = (
                select(Submission)
                .where(Submission.video_id == video_id)
                .order_by(col(Submission.subreddit_id), col(Submission.reddit_account_id))
            )
            return [self._aware_submission(s) for s in session.exec(statement).all()]

    def get_submission_subscriptions(self, submission_id: str) -> List[str]:
        with Session(self.engine) as session:
            statement = select(SubscriptionSubmission.subscription_id).where(
                SubscriptionSubmission.submission_id == submission_id
            )
            return list(session.exec(statement).all())
