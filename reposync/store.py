"""Helpers over the remote semantic-search store client.

The client is an async object shaped like the Mixedbread SDK:

- ``client.stores.retrieve(store_id)`` / ``client.stores.create(name=...)``
- ``client.stores.files.list(store_id, limit=..., after=...)`` returning a
  page with ``.data`` (items carrying ``external_id`` and ``metadata``) and
  ``.pagination`` (``has_more``, ``last_cursor``)
- ``client.stores.files.upload(store_id, file, external_id=..., overwrite=...,
  metadata=...)``
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

# Page size used when listing store files
PAGE_SIZE = 100


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read *name* from an SDK model or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


async def ensure_store_exists(client: Any, store_id: str) -> None:
    """Create the store when it cannot be retrieved."""
    try:
        await client.stores.retrieve(store_id)
    except Exception as e:
        logger.debug("Store %s not retrievable (%s), creating it", store_id, e)
        await client.stores.create(name=store_id, description="reposync local index")


async def is_store_empty(client: Any, store_id: str) -> bool:
    """Return True if the store has no files or cannot be listed."""
    try:
        page = await client.stores.files.list(store_id, limit=1)
    except Exception as e:
        # Treat a store we can't list as empty/missing
        logger.debug("Listing store %s failed: %s", store_id, e)
        return True
    return not list(_field(page, "data") or [])


async def list_store_file_hashes(client: Any, store_id: str) -> dict[str, str | None]:
    """Return ``{external_id: hash}`` for every file in the store.

    Follows ``pagination.last_cursor`` until the store reports no more
    pages. Files without an external id are skipped; files without a
    string ``hash`` metadata entry map to None.
    """
    by_external_id: dict[str, str | None] = {}
    after: str | None = None
    while True:
        page = await client.stores.files.list(store_id, limit=PAGE_SIZE, after=after)
        for item in _field(page, "data") or []:
            external_id = _field(item, "external_id")
            if not external_id:
                continue
            metadata = _field(item, "metadata") or {}
            file_hash = _field(metadata, "hash")
            by_external_id[external_id] = (
                file_hash if isinstance(file_hash, str) else None
            )

        pagination = _field(page, "pagination")
        if not pagination or not _field(pagination, "has_more"):
            break
        after = _field(pagination, "last_cursor")
        if not after:
            break
    return by_external_id
