"""
Producer side of the index writer: turns sitemap entries into rotated files.

Files are pushed to `{s3_directory}/{type}/` before the index-writer message
announcing them is enqueued, so an index never points at a missing object.
"""

import logging
import os
import posixpath
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from mypy_boto3_kinesis import KinesisClient
from mypy_boto3_s3 import S3Client

from . import core
from .config import Config
from .exceptions import SitemapCapacityError
from .kinesis_pipeline import WritePipeline, create_pipeline
from .model import IndexEntry, IndexWriterMessage, RotationState, SitemapEntry, now_iso
from .rotate import RotationSettings, sitemap_url, write_or_rotate_and_write
from .sitemap_file import SitemapFile
from .sitemap_index import SitemapIndex

logger = logging.getLogger(__name__)


@dataclass
class WriteSitemapsResult:
    """
    Attributes:
        s3_paths: Primary sitemap objects, in ordinal order.
        infix_s3_paths: Infix copies of those objects.
        index_items: The index entries announced for the primary files.
        items_written: Entries written across all primary files.
        infix_items_skipped: Infix entries dropped because they did not fit.
        duplicates_skipped: Input entries replaced by a later entry for the same URL.
    """

    s3_paths: List[str] = field(default_factory=list)
    infix_s3_paths: List[str] = field(default_factory=list)
    index_items: List[IndexEntry] = field(default_factory=list)
    items_written: int = 0
    infix_items_skipped: int = 0
    duplicates_skipped: int = 0


def rotation_settings_for_type(config: Config, sitemap_type: str) -> RotationSettings:
    """Settings for the `{type}-NNNNN` files served from `{base sitemap path}/{type}/`."""
    return RotationSettings(
        site_base_url=config.site_base_url,
        filename_root=sitemap_type,
        site_sitemap_path=posixpath.join(config.site_base_sitemap_path, sitemap_type, ""),
        compress=config.compress_sitemap_files,
        local_directory=config.local_directory,
        limit_count=config.items_per_sitemap_limit,
    )


def create_index_writer_pipeline(kinesis_client: KinesisClient, config: Config) -> WritePipeline:
    """Pipeline publishing to the index-writer stream named in the config."""
    if not config.kinesis_index_writer_stream_name:
        raise ValueError("FATAL: KINESIS_INDEX_WRITER_STREAM_NAME is required to publish index-writer messages.")
    return create_pipeline(
        kinesis_client,
        config.kinesis_index_writer_stream_name,
        concurrency=config.kinesis_concurrency,
        max_attempts=config.boto_max_attempts,
    )


def compact_entries(entries: Iterable[SitemapEntry]) -> Tuple[List[SitemapEntry], int]:
    """
    Keeps the last entry for each URL, in the order each URL was first seen.

    Returns:
        The compacted entries and the number of duplicates dropped.
    """
    by_url: Dict[str, SitemapEntry] = {}
    duplicates = 0
    for entry in entries:
        if entry["url"] in by_url:
            duplicates += 1
        by_url[entry["url"]] = entry
    return list(by_url.values()), duplicates


def write_infix_copy(
    sitemap: SitemapFile,
    infix: str,
    s3_client: S3Client,
    bucket_name: str,
    s3_directory: str,
) -> Tuple[str, int]:
    """
    Writes the `{infix}-{filename}` copy of an ended sitemap.

    Only `url` and `lastmod` are kept, and each URL is moved under `/{infix}`.
    The longer URLs can push an item past the byte limit; such items are
    skipped rather than rotated, so the copy lines up with its primary.

    Returns:
        The `s3://` path of the copy and the number of skipped items.
    """
    infix_sitemap = SitemapFile(
        site_base_url=sitemap.site_base_url,
        filename_root=f"{infix}-{sitemap.filename_root}",
        ordinal=sitemap.ordinal,
        compress=sitemap.compress,
        limit_count=sitemap.limit_count,
        limit_bytes=sitemap.limit_bytes,
        local_directory=os.path.join(sitemap.local_directory, infix),
    )
    skipped = 0
    try:
        for item in sitemap.items:
            infix_item: SitemapEntry = {"url": core.infix_sitemap_url(item["url"], infix)}
            if item.get("lastmod"):
                infix_item["lastmod"] = item["lastmod"]
            try:
                infix_sitemap.write(infix_item)
            except SitemapCapacityError:
                skipped += 1
                logger.warning(f"Skipped item {infix_item['url']} that does not fit in {infix_sitemap.filename}")
        infix_sitemap.end()
        s3_path = infix_sitemap.push_to_s3(s3_client, bucket_name, posixpath.join(s3_directory, infix))
    finally:
        infix_sitemap.delete()
    return s3_path, skipped


def write_sitemaps(
    entries: Iterable[SitemapEntry],
    *,
    sitemap_type: str,
    settings: RotationSettings,
    s3_client: S3Client,
    bucket_name: str,
    s3_directory: str = "sitemaps/",
    infix_dirs: Sequence[str] = (),
    pipeline: Optional[WritePipeline] = None,
) -> WriteSitemapsResult:
    """
    Writes `entries` into rotated sitemap files and announces each file.

    Args:
        entries: Sitemap entries for a single type. Repeated URLs keep the last entry.
        sitemap_type: The type; used as the Kinesis partition key.
        settings: Naming, compression and limits of the rotated files.
        s3_client: The boto3 S3 client.
        bucket_name: Destination bucket.
        s3_directory: Index directory; files go in `{s3_directory}/{type}/`.
        infix_dirs: Infixes to write trimmed duplicate files for.
        pipeline: Where index-writer messages are enqueued. None skips publishing.

    Returns:
        A WriteSitemapsResult. The caller drains the pipeline.
    """
    type_directory = posixpath.join(s3_directory, sitemap_type)
    result = WriteSitemapsResult()
    compacted, result.duplicates_skipped = compact_entries(entries)
    if result.duplicates_skipped:
        logger.info(f"Skipped {result.duplicates_skipped} duplicate {sitemap_type} entries")
    state = RotationState()
    # Local registry of the files opened by the rotation; never uploaded
    index = SitemapIndex(
        filename_root=f"{sitemap_type}-index",
        compress=False,
        local_directory=settings.local_directory,
    )
    current: Optional[SitemapFile] = None
    published = 0

    def publish(sitemap: SitemapFile) -> None:
        result.s3_paths.append(sitemap.push_to_s3(s3_client, bucket_name, type_directory))
        result.items_written += sitemap.count
        for infix in infix_dirs:
            infix_path, skipped = write_infix_copy(sitemap, infix, s3_client, bucket_name, type_directory)
            result.infix_s3_paths.append(infix_path)
            result.infix_items_skipped += skipped

        index_item: IndexEntry = {"url": sitemap_url(settings, sitemap.filename), "lastmod": now_iso()}
        result.index_items.append(index_item)
        if pipeline is not None:
            message: IndexWriterMessage = {"type": sitemap_type, "action": "add", "indexItem": index_item}
            pipeline.enqueue(sitemap_type, message)

    try:
        for entry in compacted:
            current = write_or_rotate_and_write(current, index, entry, settings, state)
            while published < len(state.completed):
                publish(state.completed[published])
                published += 1

        if current is not None:
            current.end()
            publish(current)
    finally:
        for sitemap in state.completed:
            sitemap.delete()
        if current is not None:
            current.delete()
        index.delete()

    logger.info(
        f"Wrote {result.items_written} {sitemap_type} items to {len(result.s3_paths)} sitemap files "
        f"({len(result.infix_s3_paths)} infix copies)"
    )
    return result
