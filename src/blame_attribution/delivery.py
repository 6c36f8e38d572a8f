"""Chunk attribution updates and stage them for the downstream consumer."""

from __future__ import annotations

import uuid
from typing import Protocol, TypeVar

from loguru import logger

from blame_attribution.models import AttributionUpdate
from blame_attribution.store import Store

T = TypeVar("T")

STAGING_PREFIX = "update-violations-blame"


def slice_into_chunks(items: list[T], chunk_size: int) -> list[list[T]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be a positive integer")
    return [items[index : index + chunk_size] for index in range(0, len(items), chunk_size)]


class AttributionSink(Protocol):
    def submit_attribution_batch(self, tenant: str, repo_full_name: str, updates: list[AttributionUpdate]) -> str: ...


class BlobStagingSink:
    """Write each batch as a transient blob, then queue its key for the consumer."""

    def __init__(self, store: Store, expires_in_days: int = 7, prefix: str = STAGING_PREFIX):
        self.store = store
        self.expires_in_days = expires_in_days
        self.prefix = prefix

    def submit_attribution_batch(self, tenant: str, repo_full_name: str, updates: list[AttributionUpdate]) -> str:
        report_key = f"{self.prefix}/{uuid.uuid4()}"
        self.store.put_object(
            report_key,
            {"customerName": tenant, "resources": [update.to_payload() for update in updates]},
            expires_in_days=self.expires_in_days,
        )
        self.store.enqueue_attribution_batch(report_key, tenant, repo_full_name, len(updates))
        logger.info(f"Staged {len(updates)} attribution updates for {tenant} {repo_full_name} at {report_key}")
        return report_key
