from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from ..models import Ingest, IngestDecision, Reingest, Skip, SourceRecord

logger = logging.getLogger(__name__)

HashSource = Union[str, Callable[[], str]]


@dataclass
class IncrementalPlanner:
    """Decide per origin whether to ingest, skip, or delete-and-replace.

    The content hash is authoritative. A matching modification time lets
    unchanged files skip hashing altogether; a newer mtime only triggers a
    hash comparison, and a hash match is still a skip.
    """

    def plan(
        self,
        origin: str,
        prior: Optional[SourceRecord],
        *,
        content_hash: HashSource,
        modified_at: Optional[datetime] = None,
        force: bool = False,
        old_ids: tuple[str, ...] = (),
    ) -> IngestDecision:
        if prior is None:
            return Ingest()

        if force:
            logger.debug(f"Reingest {origin}: forced")
            return Reingest(old_ids)

        if not prior.complete:
            logger.debug(f"Reingest {origin}: previous ingestion incomplete")
            return Reingest(old_ids)

        if modified_at is not None and prior.file_modified_at is not None and modified_at == prior.file_modified_at:
            return Skip("unchanged")

        current = content_hash() if callable(content_hash) else content_hash
        if current == prior.content_hash:
            return Skip("unchanged")

        logger.debug(f"Reingest {origin}: content hash changed")
        return Reingest(old_ids)
