import sys
import logging
import httpx
from sqlmodel import Session, select
from settings import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("health_check")

def check_database():
    try:
        from repository import DataManager
        from models import Subscription
        data_manager = DataManager(settings.db_path)
        with Session(data_manager.engine) as session:
            session.exec(select(Subscription).limit(1)).all()
        logger.info("✅ Database: OK")
        return True
    except Exception as e:
        logger.error(f"❌ Database: FAILED - {e}")
        return False

def check_reddit():
    try:
        response = httpx.get(
            "https://www.reddit.com/api/v1/access_token",
            headers={"User-Agent": settings.reddit_user_agent},
            timeout=settings.http_timeout_seconds,
        )
        if response.status_code < 500: # 401/405 is fine since we are doing an unauthenticated GET
            logger.info("✅ Reddit API: OK")
            return True
        else:
            logger.error(f"❌ Reddit API: FAILED - Status {response.status_code}")
            return False
    except Exception as e:
        logger.error(f"❌ Reddit API: FAILED - {e}")
        return False

def check_hub():
    try:
        response = httpx.get(settings.hub_url, timeout=settings.http_timeout_seconds)
        if response.status_code < 500:
            logger.info("✅ WebSub hub: OK")
            return True
        else:
            logger.error(f"❌ WebSub hub: FAILED - Status {response.status_code}")
            return False
    except Exception as e:
        logger.error(f"❌ WebSub hub: FAILED - {e}")
        return False

def main():
    logger.info("Starting health check...")
    results = [
        check_database(),
        check_reddit(),
        check_hub()
    ]

    if all(results):
        logger.info("🚀 All systems go!")
        sys.exit(0)
    else:
        logger.error("⚠️ Some checks failed. Please check your configuration.")
        sys.exit(1)

if __name__ == "__main__":
    main()
