import structlog

from enhance_batch.db import delete_batch, list_expired_batches
from enhance_batch.logging_config import setup_logging
from enhance_batch.storage import BlobStore

logger = structlog.get_logger("cleanup_expired")


def main() -> int:
    store = BlobStore()
    batches = list_expired_batches()
    cleaned = 0
    for batch in batches:
        for category in ("uploads", "outputs", "bundles"):
            store.remove_prefix(f"{category}/{batch['owner_id']}/{batch['id']}")
        delete_batch(batch["id"])
        cleaned += 1

    logger.info("expired_batches_cleaned", count=cleaned)
    return cleaned


if __name__ == "__main__":
    setup_logging()
    main()
