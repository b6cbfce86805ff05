"""Conflict resolution between local and remote versions of a page."""

import logging

from shared.models import Page, SyncStatus, parse_timestamp

logger = logging.getLogger(__name__)

MERGE_TOLERANCE_SECONDS = 60.0


def should_merge(local: Page, remote: Page, tolerance: float = MERGE_TOLERANCE_SECONDS) -> bool:
    """
    Decide whether a downloaded page must be merged into the local copy.

    Args:
        local: The local page
        remote: The downloaded page, content already decrypted
        tolerance: Seconds within which modification times count as equal

    Returns:
        True if the local copy needs to change
    """
    differs = (
        local.content != remote.content
        or local.name != remote.name
        or local.order != remote.order
    )

    if local.pending_sync == 1 and differs:
        return True

    local_time = parse_timestamp(local.last_modified)
    remote_time = parse_timestamp(remote.last_modified)
    if abs((remote_time - local_time).total_seconds()) > tolerance:
        return True

    return differs


def merge_pages(local: Page, remote: Page) -> Page:
    """
    Resolve a local and remote version into the page to store locally.

    When both sides changed the content, the longer text wins and the result
    is flagged for upload. Metadata adopted from an older remote is flagged
    for upload as well.

    Args:
        local: The local page
        remote: The downloaded page, content already decrypted

    Returns:
        The merged page with sync status ``merged``
    """
    merged = local.copy(sync_status=SyncStatus.MERGED)
    remote_newer = parse_timestamp(remote.last_modified) > parse_timestamp(local.last_modified)

    if remote_newer:
        if local.pending_sync == 1 and local.content != remote.content:
            merged.content = remote.content if len(remote.content) > len(local.content) else local.content
            merged.pending_sync = 1
            logger.info(f"Conflicting edits on page {local.id}, kept the longer content")
        else:
            merged.content = remote.content
        merged.name = remote.name
        merged.order = remote.order
        merged.last_modified = remote.last_modified
    else:
        if remote.name and remote.name != local.name:
            merged.name = remote.name
            merged.pending_sync = 1
        if remote.order is not None and remote.order != local.order:
            merged.order = remote.order
            merged.pending_sync = 1

    return merged
