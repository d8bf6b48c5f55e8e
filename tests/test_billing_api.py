from fastapi.testclient import TestClient

from enhance_batch.api.main import app
from enhance_batch.credits import ledger_total, reserve_and_charge

ADMIN = {"x-admin-token": "test-admin-token"}


def test_admin_grant_and_balance() -> None:
    c = TestClient(app)

    payload = {
        "user_id": "chef-1",
        "amount": 100,
        "source": "topup",
        "note": "manual pack",
        "reference": "PACK-12345-1",
    }
    r = c.post('/v1/admin/credits/grant', json=payload, headers=ADMIN)
    assert r.status_code == 200

    rb = c.get('/v1/credits/chef-1')
    assert rb.status_code == 200
    data = rb.json()['data']
    assert data['balance']['topup_balance'] == 100
    assert data['balance']['monthly_balance'] == 0
    assert data['balance']['available'] == 100
    assert data['recent_ledger'][0]['amount'] == 100
    assert data['recent_ledger'][0]['source'] == 'topup'


def test_admin_auth_required() -> None:
    c = TestClient(app)
    r = c.post('/v1/admin/credits/grant', json={"user_id": "u", "amount": 10})
    assert r.status_code == 401


def test_subscription_renewal_applied_once() -> None:
    c = TestClient(app)
    event = {"event_id": "evt_1", "type": "subscription_renewed", "user_id": "chef-2", "plan": "pro"}

    first = c.post('/v1/billing/events', json=event, headers=ADMIN)
    replay = c.post('/v1/billing/events', json=event, headers=ADMIN)

    assert first.json()['data']['applied'] is True
    assert replay.json()['data']['applied'] is False
    balance = c.get('/v1/credits/chef-2').json()['data']['balance']
    assert balance['plan'] == 'pro'
    assert balance['monthly_balance'] == 100

    notes = c.get('/v1/notifications/chef-2').json()['data']['notifications']
    assert [n['type'] for n in notes] == ['subscription_renewed']
    assert c.post('/v1/notifications/chef-2/read').json()['data']['marked_read'] == 1
    assert c.get('/v1/notifications/chef-2', params={"unread_only": True}).json()['data']['notifications'] == []


def test_topup_and_cancellation() -> None:
    c = TestClient(app)
    c.post('/v1/billing/events', json={"event_id": "evt_a", "type": "subscription_renewed", "user_id": "chef-3", "plan": "starter"}, headers=ADMIN)
    c.post('/v1/billing/events', json={"event_id": "evt_b", "type": "topup_purchased", "user_id": "chef-3", "pack": "topup_50"}, headers=ADMIN)
    c.post('/v1/billing/events', json={"event_id": "evt_c", "type": "subscription_cancelled", "user_id": "chef-3"}, headers=ADMIN)

    balance = c.get('/v1/credits/chef-3').json()['data']['balance']
    assert balance['plan'] == 'free'
    assert balance['monthly_balance'] == 3
    assert balance['topup_balance'] == 50


def test_unknown_billing_event_rejected() -> None:
    c = TestClient(app)
    r = c.post('/v1/billing/events', json={"event_id": "evt_x", "type": "refund_issued", "user_id": "u"}, headers=ADMIN)
    assert r.status_code == 400
    r = c.post('/v1/billing/events', json={"event_id": "evt_y", "type": "topup_purchased", "user_id": "u", "pack": "topup_7"}, headers=ADMIN)
    assert r.status_code == 400


def test_renewal_and_cancellation_reset_monthly_balance() -> None:
    c = TestClient(app)
    c.post('/v1/billing/events', json={"event_id": "evt_r1", "type": "subscription_renewed", "user_id": "chef-4", "plan": "starter"}, headers=ADMIN)
    assert reserve_and_charge("chef-4", 5, reference="batch-1")

    c.post('/v1/billing/events', json={"event_id": "evt_r2", "type": "subscription_renewed", "user_id": "chef-4", "plan": "starter"}, headers=ADMIN)
    balance = c.get('/v1/credits/chef-4').json()['data']['balance']
    assert balance['monthly_balance'] == 20
    assert balance['used_this_cycle'] == 0

    c.post('/v1/billing/events', json={"event_id": "evt_cx", "type": "subscription_cancelled", "user_id": "chef-4"}, headers=ADMIN)
    body = c.get('/v1/credits/chef-4').json()['data']
    assert body['balance']['plan'] == 'free'
    assert body['balance']['monthly_balance'] == 3
    assert [e['source'] for e in body['recent_ledger'][:2]] == ['grant', 'expire']
    assert body['recent_ledger'][1]['amount'] == -20
    assert ledger_total("chef-4") == body['balance']['available'] == 3
