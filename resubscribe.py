import sys
import argparse
from errors import RelayError
from lease_renewer import LeaseRenewer
from repository import DataManager
from settings import settings

parser = argparse.ArgumentParser(description="Re-issue WebSub subscribe requests for lapsed subscriptions.")
parser.add_argument("subscription_ids", nargs="*", help="Subscriptions to renew (default: every lapsed one)")
args = parser.parse_args()

data_manager = DataManager(settings.db_path)
renewer = LeaseRenewer(data_manager)

if args.subscription_ids:
    subscriptions = [data_manager.get_active_subscription(sid) for sid in args.subscription_ids]
    missing = [sid for sid, s in zip(args.subscription_ids, subscriptions) if s is None]
    if missing:
        print(f"Unknown or unsubscribed: {', '.join(missing)}")
    subscriptions = [s for s in subscriptions if s is not None]
else:
    subscriptions = data_manager.get_lapsed_subscriptions()

failed = 0
for subscription in subscriptions:
    try:
        renewer.subscribe(subscription)
    except RelayError as e:
        failed += 1
        print(f"Failed {subscription.channel_id} ({subscription.id}): {e.message}")
renewer.close()
print(f"Requested {len(subscriptions) - failed} of {len(subscriptions)} subscriptions.")
sys.exit(1 if failed else 0)
