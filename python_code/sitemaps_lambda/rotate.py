"""
Multi-file rotation for sitemap files.

Items are written first-fit into the single currently open sitemap. When the
file rejects an item for capacity, it is ended, a new file with the next
ordinal is opened and registered in the index, and the item is written there.
Closed files are never revisited.
"""

import logging
import posixpath
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

from .exceptions import SitemapCapacityError
from .model import RotationState, SitemapEntry, now_iso
from .sitemap_file import DEFAULT_LIMIT_BYTES, DEFAULT_LIMIT_COUNT, SitemapFile
from .sitemap_index import SitemapIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RotationSettings:
    """
    Naming, compression and size limits for the files opened by a rotation.

    Attributes:
        site_base_url: Base URL the sitemap items and index entries are resolved against.
        filename_root: Root of every file name; the ordinal is appended as `-NNNNN`.
        site_sitemap_path: Site path under which the sitemap files are served.
        compress: Write `.xml.gz` files.
        local_directory: Staging directory for the local files.
        limit_count: Item limit per file.
        limit_bytes: Uncompressed byte limit per file.
    """

    site_base_url: str
    filename_root: str
    site_sitemap_path: str = ""
    compress: bool = False
    local_directory: str = "/tmp/sitemaps"
    limit_count: int = DEFAULT_LIMIT_COUNT
    limit_bytes: int = DEFAULT_LIMIT_BYTES


def sitemap_url(settings: RotationSettings, filename: str) -> str:
    """Fully qualified URL under which a sitemap file is listed in the index."""
    return urljoin(settings.site_base_url, posixpath.join(settings.site_sitemap_path, filename))


def create_sitemap_add_to_index(settings: RotationSettings, state: RotationState, index: SitemapIndex) -> SitemapFile:
    """Opens a new sitemap at ordinal `state.count` and adds it to the index."""
    sitemap = SitemapFile(
        site_base_url=settings.site_base_url,
        filename_root=settings.filename_root,
        ordinal=state.count,
        compress=settings.compress,
        local_directory=settings.local_directory,
        limit_count=settings.limit_count,
        limit_bytes=settings.limit_bytes,
    )
    index.write({"url": sitemap_url(settings, sitemap.filename), "lastmod": now_iso()})
    return sitemap


def write_or_rotate_and_write(
    current_sitemap: Optional[SitemapFile],
    index: SitemapIndex,
    item: SitemapEntry,
    settings: RotationSettings,
    state: RotationState,
    disregard_byte_limit: bool = False,
) -> SitemapFile:
    """
    Writes `item` to the current sitemap, rotating to a new file if it is full.

    The rotated-out file is ended and appended to `state.completed`; the
    caller owns pushing and deleting it. The retry into the fresh file is not
    guarded against a second overflow, so an item larger than the limit ends
    up alone in its own file instead of looping forever.

    Args:
        current_sitemap: The open sitemap, or None to start the first file.
        index: The index that every new file is registered in.
        item: The entry to write.
        settings: Naming, compression and limits for new files.
        state: Rotation counter and completed files, updated in place.
        disregard_byte_limit: Passed through to the first write attempt.

    Returns:
        The sitemap that now holds `item`, which the caller continues with.
    """
    sitemap = current_sitemap
    if sitemap is None:
        state.count = 1
        sitemap = create_sitemap_add_to_index(settings, state, index)

    try:
        sitemap.write(item, disregard_byte_limit=disregard_byte_limit)
    except SitemapCapacityError:
        sitemap.end()
        state.completed.append(sitemap)
        prior = sitemap

        state.count += 1
        sitemap = create_sitemap_add_to_index(settings, state, index)
        logger.info(
            f"Sitemap {prior.filename} filled up ({prior.count} items, {prior.size_uncompressed} bytes); "
            f"starting {sitemap.filename}"
        )

        sitemap.write(item, disregard_byte_limit=True)

    return sitemap
