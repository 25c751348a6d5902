import sys
import asyncio
import logging
import argparse
from contextlib import asynccontextmanager, suppress
from typing import List, Mapping, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import make_asgi_app

from settings import settings
from errors import ParseError, RelayError
from logging_setup import setup_logging
from metrics import NOTIFICATION_COUNT
from models import TargetOutcome, VideoDeleted, VideoUpdated
from repository import DataManager
from webhook import WebhookVerifier, SIGNATURE_HEADER
from feed_parser import FeedParser
from reddit_poster import RedditPoster
from dispatch import DispatchEngine
from lease_renewer import LeaseRenewer

# -----------------------------
# Versioning
# -----------------------------
__version__ = "1.0.0"

logger = logging.getLogger(__name__)

# -----------------------------
# Pipeline
# -----------------------------
class RelayService:
    """Wires the webhook, the feed parser, the dispatch engine and the renewer"""
    def __init__(
        self,
        data_manager: Optional[DataManager] = None,
        poster: Optional[RedditPoster] = None,
        renewer: Optional[LeaseRenewer] = None,
    ):
        self.data_manager = data_manager or DataManager(settings.db_path)
        self.verifier = WebhookVerifier(self.data_manager)
        self.parser = FeedParser()
        self.poster = poster or RedditPoster(self.data_manager)
        self.engine = DispatchEngine(self.data_manager, self.poster)
        self.renewer = renewer or LeaseRenewer(self.data_manager)

    def close(self):
        self.poster.close()
        self.renewer.close()

    def handle_verification(self, subscription_id: str, params: Mapping[str, str]) -> str:
        return self.verifier.confirm_subscription(
            subscription_id,
            mode=params.get("hub.mode"),
            topic=params.get("hub.topic"),
            challenge=params.get("hub.challenge"),
            lease_seconds=params.get("hub.lease_seconds"),
            reason=params.get("hub.reason"),
        )

    def handle_notification(self, subscription_id: str, body: bytes, signature: Optional[str]) -> List[TargetOutcome]:
        try:
            subscription = self.verifier.verify_notification(subscription_id, body, signature)
            events = self.parser.parse(body)
        except RelayError as e:
            NOTIFICATION_COUNT.labels(status=type(e).__name__).inc()
            logger.warning(f"Dropping notification for subscription {subscription_id}: {e.message}")
            if isinstance(e, ParseError) and e.raw_body:
                logger.debug(f"Rejected body: {e.raw_body[:500]!r}")
            raise

        outcomes: List[TargetOutcome] = []
        for event in events:
            if isinstance(event, VideoDeleted):
                logger.info(f"Video {event.video_id} was removed from channel {event.channel_id or subscription.channel_id}")
                continue
            if not isinstance(event, VideoUpdated):
                continue
            if event.channel_id != subscription.channel_id:
                logger.warning(
                    f"Ignoring video {event.video_id} from channel {event.channel_id}, "
                    f"subscription {subscription.id} follows {subscription.channel_id}"
                )
                continue
            outcomes.extend(self.engine.dispatch(event, subscription.id))
        NOTIFICATION_COUNT.labels(status="processed").inc()
        return outcomes

# -----------------------------
# HTTP
# -----------------------------
def create_app(service: RelayService, run_renewer: bool = settings.renewer_enabled) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if run_renewer:
            task = asyncio.create_task(service.renewer.run_forever(settings.renewal_interval_seconds))
        yield
        if task:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    app = FastAPI(title="youtube-to-reddit", version=__version__, lifespan=lifespan)
    app.mount("/metrics", make_asgi_app())

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.get("/websub/{subscription_id}")
    def verify_subscription(subscription_id: str, request: Request):
        challenge = service.handle_verification(subscription_id, request.query_params)
        return PlainTextResponse(challenge)

    @app.post("/websub/{subscription_id}")
    async def receive_notification(subscription_id: str, request: Request):
        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        try:
            outcomes = await asyncio.wait_for(
                asyncio.to_thread(service.handle_notification, subscription_id, body, signature),
                timeout=settings.notification_deadline_seconds,
            )
        except asyncio.TimeoutError:
            NOTIFICATION_COUNT.labels(status="timeout").inc()
            logger.warning(f"Notification for subscription {subscription_id} exceeded {settings.notification_deadline_seconds}s, abandoned")
            return JSONResponse({"status": "accepted"}, status_code=202)
        return {"status": "processed", "outcomes": [outcome.as_dict() for outcome in outcomes]}

    return app

# -----------------------------
# Entry point
# -----------------------------
def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="YouTube to Reddit WebSub relay")
    subcommands = parser.add_subparsers(dest="command", required=True)
    serve = subcommands.add_parser("serve", help="Start the webhook server")
    serve.add_argument("--port", type=int, default=3000, help="Port to listen on (default: 3000)")
    serve.add_argument("--no-renewer", action="store_true", help="Do not run the background lease renewer")
    subcommands.add_parser("renew", help="Run a single lease renewal pass and exit")
    args = parser.parse_args(argv)

    if args.command == "serve" and not 1024 <= args.port <= 65535:
        parser.error(f"Invalid port number {args.port}")

    setup_logging()
    logger.info(f"Starting YouTube to Reddit relay v{__version__}")
    try:
        service = RelayService()
        if args.command == "renew":
            report = service.renewer.run_once()
            service.close()
            sys.exit(1 if report.failed else 0)

        app = create_app(service, run_renewer=settings.renewer_enabled and not args.no_renewer)
        uvicorn.run(app, host="0.0.0.0", port=args.port, log_level="info")
        service.close()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

if __name__ == "__main__":
    main()
