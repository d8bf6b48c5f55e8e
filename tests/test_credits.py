import threading

import pytest

from enhance_batch.credits import (
    available,
    get_wallet,
    grant,
    ledger_total,
    list_ledger,
    refund,
    reserve_and_charge,
)


def test_charge_draws_monthly_before_topup() -> None:
    grant("u1", 3, "grant", reference="inv-1")
    grant("u1", 5, "topup", reference="pi-1")

    assert reserve_and_charge("u1", 4, reference="batch-1")

    wallet = get_wallet("u1")
    assert wallet["monthly_balance"] == 0
    assert wallet["topup_balance"] == 4
    assert wallet["used_this_cycle"] == 4

    entry = list_ledger("u1", limit=1)[0]
    assert entry["amount"] == -4
    assert entry["balance_after"] == 4
    assert entry["source"] == "charge"
    assert entry["reference"] == "batch-1"


def test_insufficient_credits_leave_wallet_and_ledger_untouched() -> None:
    grant("u2", 2, "topup")
    before = get_wallet("u2")
    entries_before = list_ledger("u2")

    assert reserve_and_charge("u2", 5, reference="batch-2") is False

    assert get_wallet("u2") == before
    assert list_ledger("u2") == entries_before
    assert available("u2") == 2


def test_unknown_user_cannot_be_charged() -> None:
    assert reserve_and_charge("ghost", 1) is False
    assert available("ghost") == 0
    assert get_wallet("ghost") is None


def test_non_positive_amounts_rejected() -> None:
    with pytest.raises(ValueError):
        reserve_and_charge("u3", 0)
    with pytest.raises(ValueError):
        grant("u3", -1, "topup")
    with pytest.raises(ValueError):
        grant("u3", 5, "bonus")


def test_monthly_grant_starts_new_cycle() -> None:
    grant("u4", 10, "grant", reference="inv-1")
    assert reserve_and_charge("u4", 6, reference="b")
    assert get_wallet("u4")["used_this_cycle"] == 6

    grant("u4", 10, "grant", reference="inv-2")
    wallet = get_wallet("u4")
    assert wallet["used_this_cycle"] == 0
    assert wallet["monthly_balance"] == 10

    expired, granted = list_ledger("u4", limit=2)[::-1]
    assert (expired["source"], expired["amount"], expired["monthly_delta"]) == ("expire", -4, -4)
    assert (granted["source"], granted["amount"], granted["balance_after"]) == ("grant", 10, 10)
    assert ledger_total("u4") == available("u4") == 10


def test_monthly_grant_keeps_topup_balance() -> None:
    grant("u9", 20, "grant")
    grant("u9", 15, "topup")
    assert reserve_and_charge("u9", 5, reference="b")

    grant("u9", 3, "grant")

    wallet = get_wallet("u9")
    assert (wallet["monthly_balance"], wallet["topup_balance"]) == (3, 15)
    assert ledger_total("u9") == available("u9") == 18


def test_ledger_replay_matches_balance() -> None:
    steps = [
        ("grant", 10, "inv-1"),
        ("topup", 7, "pi-1"),
        ("charge", 4, "b-1"),
        ("charge", 9, "b-2"),
        ("charge", 20, "b-3"),
        ("refund", 3, "b-2"),
        ("grant", 5, "inv-2"),
        ("charge", 8, "b-4"),
        ("refund", 8, "b-4"),
    ]
    for kind, amount, ref in steps:
        if kind == "charge":
            reserve_and_charge("u5", amount, reference=ref)
        elif kind == "refund":
            refund("u5", amount, reference=ref)
        else:
            grant("u5", amount, kind, reference=ref)

        wallet = get_wallet("u5")
        assert wallet["monthly_balance"] >= 0
        assert wallet["topup_balance"] >= 0
        assert ledger_total("u5") == available("u5")

    entries = list(reversed(list_ledger("u5", limit=100)))
    running = 0
    for entry in entries:
        running += entry["amount"]
        assert entry["balance_after"] == running
    assert running == available("u5") == 10 + 7 - 4 - 9 + 3 + 5 - 8 + 8


def test_refund_restores_original_split() -> None:
    grant("u6", 2, "grant")
    grant("u6", 3, "topup")
    assert reserve_and_charge("u6", 4, reference="b-1")

    assert refund("u6", 4, reference="b-1")

    wallet = get_wallet("u6")
    assert wallet["monthly_balance"] == 2
    assert wallet["topup_balance"] == 3
    assert wallet["used_this_cycle"] == 0
    assert list_ledger("u6", limit=1)[0]["source"] == "refund"


def test_refund_cannot_exceed_charge() -> None:
    grant("u7", 5, "topup")
    assert reserve_and_charge("u7", 2, reference="b-1")

    assert refund("u7", 2, reference="b-1")
    assert refund("u7", 1, reference="b-1") is False
    assert available("u7") == 5


def test_refund_without_matching_charge_rejected() -> None:
    grant("u10", 5, "topup")
    before = list_ledger("u10")

    assert refund("u10", 3, reference="never-charged") is False
    assert refund("u10", 3, reference=None) is False

    assert available("u10") == 5
    assert list_ledger("u10") == before


def test_concurrent_charges_never_overdraw() -> None:
    grant("u8", 10, "topup")
    results: list[bool] = []
    lock = threading.Lock()

    def _charge(i: int) -> None:
        ok = reserve_and_charge("u8", 1, reference=f"b-{i}")
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=_charge, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 10
    assert available("u8") == 0
    assert ledger_total("u8") == 0
