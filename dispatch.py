import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Dict, List

from errors import DuplicateSubmissionError, NotFoundError, RelayError
from logging_setup import VideoContextAdapter
from metrics import DISPATCH_DURATION, TARGET_OUTCOME_COUNT
from models import OutcomeStatus, PostTarget, Subscription, TargetOutcome, VideoUpdated
from reddit_poster import RedditPoster
from repository import DataManager
from settings import settings

logger = logging.getLogger(__name__)


class DispatchEngine:
    """Fans one video event out to every Reddit target of a subscription.

    Each (video, account, subreddit) triple is claimed in the ledger before
    the poster is called, so a redelivered notification racing the first
    one loses on the insert and is reported as a duplicate instead of
    posting twice. Targets are independent: one failing never stops the
    others.
    """
    def __init__(
        self,
        data_manager: DataManager,
        poster: RedditPoster,
        max_workers: int = settings.max_workers,
        claim_timeout: timedelta = timedelta(seconds=settings.claim_timeout_seconds),
        max_stickied: int = settings.max_stickied_per_subreddit,
    ):
        self.data_manager = data_manager
        self.poster = poster
        self.max_workers = max_workers
        self.claim_timeout = claim_timeout
        self.max_stickied = max_stickied
        self._sticky_locks: Dict[int, threading.Lock] = {}
        self._sticky_locks_guard = threading.Lock()

    def dispatch(self, event: VideoUpdated, subscription_id: str) -> List[TargetOutcome]:
        subscription = self.data_manager.get_active_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(f"No active subscription with id {subscription_id}")

        v_logger = VideoContextAdapter(logger, {
            "video_id": event.video_id,
            "channel_id": event.channel_id,
            "subscription_id": subscription_id,
        })
        targets = self.data_manager.resolve_targets(subscription_id)
        if not targets:
            v_logger.info("Subscription has no Reddit targets")
            return []

        if event.is_short and not subscription.post_shorts:
            v_logger.info(f"Skipping short '{event.title}' for {len(targets)} targets")
            outcomes = [TargetOutcome(target, OutcomeStatus.SKIPPED_SHORT, event.video_id) for target in targets]
            self._count(outcomes)
            return outcomes

        start_time = time.perf_counter()
        with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(targets)))) as pool:
            outcomes = list(pool.map(lambda target: self._dispatch_target(event, subscription, target, v_logger), targets))

        duration = time.perf_counter() - start_time
        DISPATCH_DURATION.observe(duration)
        self._count(outcomes)
        posted = sum(1 for o in outcomes if o.status == OutcomeStatus.POSTED)
        v_logger.info(f"Dispatched '{event.title}' in {duration:.2f}s: {posted}/{len(outcomes)} targets posted")
        return outcomes

    def _dispatch_target(self, event: VideoUpdated, subscription: Subscription, target: PostTarget, v_logger) -> TargetOutcome:
        try:
            claim = self.data_manager.claim_submission(
                event.video_id,
                target.reddit_account_id,
                target.subreddit_id,
                subscription.id,
                stale_after=self.claim_timeout,
            )
        except DuplicateSubmissionError:
            v_logger.info(f"Already submitted to {target}, skipping")
            return TargetOutcome(target, OutcomeStatus.SKIPPED_DUPLICATE, event.video_id)
        except Exception as e:
            v_logger.error(f"Could not claim {target}", exc_info=True)
            return TargetOutcome(target, OutcomeStatus.FAILED, event.video_id, reason=str(e))

        try:
            result = self.poster.post(target, event)
        except Exception as e:
            reason = e.message if isinstance(e, RelayError) else str(e)
            v_logger.error(f"Posting to {target} failed: {reason}", exc_info=not isinstance(e, RelayError))
            self._release(claim.id, v_logger)
            return TargetOutcome(target, OutcomeStatus.FAILED, event.video_id, reason=reason)

        # The post exists on Reddit from here on, so the outcome cannot be FAILED
        try:
            self.data_manager.confirm_submission(claim.id, result.reddit_id)
        except Exception:
            v_logger.error(f"Posted {result.reddit_id} to {target} but could not confirm claim {claim.id}", exc_info=True)

        if result.already_posted:
            v_logger.info(f"Reddit already has this video on {target} as {result.reddit_id}")
            return TargetOutcome(target, OutcomeStatus.SKIPPED_DUPLICATE, event.video_id, submission_id=claim.id)

        v_logger.info(f"Posted to {target} as {result.reddit_id}")
        if target.moderate:
            self._sticky(target, claim.id, result.reddit_id, v_logger)
        return TargetOutcome(target, OutcomeStatus.POSTED, event.video_id, submission_id=claim.id)

    def _release(self, submission_id: str, v_logger):
        try:
            self.data_manager.release_submission(submission_id)
        except Exception:
            v_logger.error(f"Could not release claim {submission_id}, it will go stale", exc_info=True)

    def _sticky(self, target: PostTarget, submission_id: str, reddit_id: str, v_logger):
        """Sticky a new submission, unstickying the oldest ones in the subreddit beyond the slot limit. Best-effort."""
        with self._sticky_locks_guard:
            lock = self._sticky_locks.setdefault(target.subreddit_id, threading.Lock())
        try:
            with lock:
                stale = self.data_manager.get_stickied_submissions(target.subreddit_id)
                for old in stale[max(0, self.max_stickied - 1):]:
                    self.poster.set_sticky(target.reddit_account_id, old.reddit_id, False)
                    self.data_manager.set_submission_stickied(old.id, False)
                self.poster.set_sticky(target.reddit_account_id, reddit_id, True)
                self.data_manager.set_submission_stickied(submission_id, True)
        except RelayError as e:
            v_logger.warning(f"Could not sticky {reddit_id} on {target}: {e.message}")
        except Exception:
            v_logger.warning(f"Could not sticky {reddit_id} on {target}", exc_info=True)

    @staticmethod
    def _count(outcomes: List[TargetOutcome]):
        for outcome in outcomes:
            TARGET_OUTCOME_COUNT.labels(status=outcome.status.value).inc()
