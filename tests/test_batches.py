import pytest
from fakes import FailingStore, sources

from enhance_batch.batches import AllUploadsFailedError, InsufficientCreditsError, submit_batch
from enhance_batch.credits import available, grant, ledger_total, list_ledger
from enhance_batch.db import get_batch, list_batches, list_items, list_notifications
from enhance_batch.storage import BlobStore


def test_submit_charges_and_stores_every_source() -> None:
    grant("chef", 10, "topup")

    result = submit_batch("chef", sources(3), "natural_light", "AUTO")

    assert result["credits_charged"] == 3
    assert available("chef") == 7
    batch = get_batch(result["batch_id"])
    assert batch["status"] == "queued"
    assert batch["total_items"] == 3
    items = list_items(result["batch_id"])
    assert [i["position"] for i in items] == [1, 2, 3]
    assert all(i["status"] == "queued" for i in items)
    assert BlobStore().get(items[0]["source_path"]) == b"raw-1"


def test_insufficient_credits_rejected_before_batch_exists() -> None:
    grant("chef", 2, "topup")

    with pytest.raises(InsufficientCreditsError) as exc_info:
        submit_batch("chef", sources(5), "natural_light", "AUTO")

    assert exc_info.value.available_credits == 2
    assert exc_info.value.required == 5
    assert list_batches("chef") == []
    assert available("chef") == 2


def test_all_uploads_failing_refunds_everything() -> None:
    grant("chef", 5, "topup")

    with pytest.raises(AllUploadsFailedError) as exc_info:
        submit_batch("chef", sources(5), "studio_light", "1:1", store=FailingStore(r"^uploads/"))

    batch = get_batch(exc_info.value.batch_id)
    assert batch["status"] == "failed"
    assert batch["total_items"] == 0
    assert batch["credits_charged"] == 0
    assert list_items(batch["id"]) == []
    assert available("chef") == 5
    assert ledger_total("chef") == 5
    assert [e["source"] for e in list_ledger("chef")][:2] == ["refund", "charge"]
    assert list_notifications("chef")[0]["type"] == "job_failed"


def test_partial_upload_failure_charges_only_stored_images() -> None:
    grant("chef", 5, "topup")

    result = submit_batch("chef", sources(3), "natural_light", "AUTO", store=FailingStore(r"original_2\."))

    assert result["credits_charged"] == 2
    batch = get_batch(result["batch_id"])
    assert batch["total_items"] == 2
    assert batch["credits_charged"] == 2
    assert [i["position"] for i in list_items(batch["id"])] == [1, 3]
    assert available("chef") == 3
    assert ledger_total("chef") == 3


def test_unknown_mode_or_shape_rejected() -> None:
    grant("chef", 5, "topup")
    with pytest.raises(ValueError):
        submit_batch("chef", sources(1), "neon", "AUTO")
    with pytest.raises(ValueError):
        submit_batch("chef", sources(1), "natural_light", "7:3")
    assert available("chef") == 5
