import argparse
import sys
import os
from datetime import timedelta

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from models import utcnow
from repository import DataManager
from settings import settings

def prune_unsubscribed(days: int):
    data_manager = DataManager(settings.db_path)
    cutoff = utcnow() - timedelta(days=days)
    pruned = data_manager.prune_unsubscribed(cutoff)
    print(f"Pruned {pruned} subscriptions unsubscribed more than {days} days ago.")

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Prune unsubscribed subscriptions from the SQLite database.")
    parser.add_argument("--days", type=int, default=90, help="Number of days to keep unsubscribed subscriptions (default: 90)")
    args = parser.parse_args()

    prune_unsubscribed(args.days)
