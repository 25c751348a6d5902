from datetime import timedelta
from urllib.parse import parse_qsl

import httpx
import pytest

from errors import SubscriptionRequestError, TransientNetworkError
from lease_renewer import LeaseRenewer, topic_url
from models import utcnow
from conftest import CHANNEL_ID, SECRET

HUB_URL = "https://pubsubhubbub.appspot.com/subscribe"


class FakeHub:
    def __init__(self):
        self.status = 202
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(dict(parse_qsl(request.content.decode())))
        return httpx.Response(self.status, text="" if self.status < 400 else "nope")


@pytest.fixture
def hub():
    return FakeHub()


@pytest.fixture
def renewer(data_manager, hub):
    client = httpx.Client(transport=httpx.MockTransport(hub))
    return LeaseRenewer(data_manager, client=client, hub_url=HUB_URL, lease_seconds=432000)


def test_expiring_lease_is_renewed(renewer, hub, data_manager, subscription):
    expires = utcnow() + timedelta(hours=2)
    data_manager.record_lease(subscription.id, expires)

    report = renewer.run_once()

    assert report.requested == [subscription.id]
    assert hub.requests == [{
        "hub.mode": "subscribe",
        "hub.topic": topic_url(CHANNEL_ID),
        "hub.callback": "https://relay.example.com/websub/sub-1",
        "hub.verify": "async",
        "hub.secret": SECRET,
        "hub.lease_seconds": "432000",
    }]
    # Only the hub's verification request moves the expiry
    assert data_manager.get_subscription(subscription.id).expires == expires


def test_distant_lease_is_left_alone(renewer, hub, data_manager, subscription):
    data_manager.record_lease(subscription.id, utcnow() + timedelta(hours=48))
    report = renewer.run_once()
    assert report.requested == []
    assert hub.requests == []


def test_unconfirmed_subscription_is_skipped(renewer, hub, subscription):
    assert renewer.run_once().requested == []
    assert hub.requests == []


def test_lapsed_lease_is_reported_not_renewed(renewer, hub, data_manager, subscription):
    data_manager.record_lease(subscription.id, utcnow() - timedelta(minutes=5))
    report = renewer.run_once()
    assert report.lapsed == [subscription.id]
    assert hub.requests == []
    assert [s.id for s in data_manager.get_lapsed_subscriptions()] == [subscription.id]


def test_failed_request_is_retried_next_pass(renewer, hub, data_manager, subscription):
    data_manager.record_lease(subscription.id, utcnow() + timedelta(hours=2))
    hub.status = 500

    assert renewer.run_once().failed == [subscription.id]

    hub.status = 202
    assert renewer.run_once().requested == [subscription.id]
    assert len(hub.requests) == 2


def test_pending_request_is_not_repeated(renewer, hub, data_manager, subscription):
    data_manager.record_lease(subscription.id, utcnow() + timedelta(hours=2))
    now = utcnow()

    assert renewer.run_once(now).requested == [subscription.id]
    assert renewer.run_once(now + timedelta(minutes=5)).pending == [subscription.id]
    assert len(hub.requests) == 1

    # No verification arrived within the pending window, ask again
    assert renewer.run_once(now + timedelta(hours=1, minutes=1)).requested == [subscription.id]
    assert len(hub.requests) == 2


def test_confirmed_renewal_clears_pending(renewer, hub, data_manager, subscription):
    data_manager.record_lease(subscription.id, utcnow() + timedelta(hours=2))
    renewer.run_once()
    data_manager.record_lease(subscription.id, utcnow() + timedelta(hours=3))

    assert renewer.run_once().requested == [subscription.id]


def test_deleted_subscription_is_not_renewed(renewer, hub, data_manager, subscription):
    data_manager.record_lease(subscription.id, utcnow() + timedelta(hours=2))
    data_manager.mark_unsubscribed(subscription.id)
    assert renewer.run_once().requested == []
    assert hub.requests == []


def test_subscribe_errors(renewer, hub, subscription):
    hub.status = 400
    with pytest.raises(SubscriptionRequestError):
        renewer.subscribe(subscription)

    hub.status = 503
    with pytest.raises(TransientNetworkError):
        renewer.subscribe(subscription)


def test_subscribe_transport_error(data_manager, subscription):
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    renewer = LeaseRenewer(data_manager, client=httpx.Client(transport=httpx.MockTransport(unreachable)), hub_url=HUB_URL)
    with pytest.raises(TransientNetworkError):
        renewer.subscribe(subscription)
