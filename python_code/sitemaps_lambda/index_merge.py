"""
Per-type reconciliation of a sitemap index against a batch of file changes.

For each type the existing index is loaded from S3, merged with the batch by
URL, sorted, and fully rewritten as a new index object. Infix copies are then
recomputed from the rewritten primary; they are never read back from S3.
"""

from typing import List

from aws_lambda_powertools import Logger
from mypy_boto3_s3 import S3Client

from . import core
from .config import Config
from .model import IndexEntry, IndexWriterMessage, MergeResult, TypeMetrics
from .sitemap_index import SitemapIndex


def index_filename_root(sitemap_type: str) -> str:
    return f"{sitemap_type}-index"


def write_index(
    s3_client: S3Client,
    config: Config,
    filename_root: str,
    items: List[IndexEntry],
) -> SitemapIndex:
    """
    Writes `items` into a fresh index and pushes it to S3.

    The local file is always deleted, whether or not the upload succeeded.

    Returns:
        The ended and persisted index, with its items still in memory.
    """
    index = SitemapIndex(
        filename_root=filename_root,
        compress=config.compress_sitemap_files,
        local_directory=config.local_directory,
    )
    try:
        index.write_array(items)
        index.end()
        index.push_to_s3(s3_client, config.s3_sitemaps_bucket_name, config.s3_directory)
    finally:
        index.delete()
    return index


def merge_type_index(
    sitemap_type: str,
    messages: List[IndexWriterMessage],
    s3_client: S3Client,
    config: Config,
    metrics: TypeMetrics,
    logger: Logger,
) -> MergeResult:
    """
    Runs the load, merge, sort, rewrite and infix cycle for one type.

    Args:
        sitemap_type: The type whose `{type}-index` file is rewritten.
        messages: This batch's messages for the type.
        s3_client: The boto3 S3 client.
        config: Bucket, directory, compression and infix settings.
        metrics: Per-type counters, updated in place.
        logger: The Powertools Logger instance for structured logging.

    Returns:
        A MergeResult describing the rewritten index and its infix copies.
    """
    filename_root = index_filename_root(sitemap_type)

    # The loaded index is read-only state; a fresh index is always written
    existing_index, existed, existing_items = SitemapIndex.from_s3(
        s3_client,
        bucket_name=config.s3_sitemaps_bucket_name,
        s3_directory=config.s3_directory,
        compress=config.compress_sitemap_files,
        filename_root=filename_root,
        local_directory=config.local_directory,
    )
    try:
        existing_index.end()
    finally:
        existing_index.delete()

    logger.info(
        "Opened sitemap index for type.",
        extra={
            "type": sitemap_type,
            "indexWasExisting": existed,
            "existingCount": len(existing_items),
            "lastSitemapFilename": existing_index.last_filename,
        },
    )

    merged_items = core.merge_index_items(existing_items, messages, metrics, logger)

    logger.info("Uploading sitemap index - starting.", extra={"type": sitemap_type, "count": len(merged_items)})
    new_index = write_index(s3_client, config, filename_root, merged_items)
    logger.info("Uploading sitemap index - finished.", extra={"type": sitemap_type, "s3Path": new_index.s3_path})

    result = MergeResult(
        type=sitemap_type,
        index_existed=existed,
        count_before=len(existing_items),
        count_after=new_index.count,
        last_filename=new_index.last_filename,
        s3_paths=[new_index.s3_path or ""],
    )

    for infix in config.infix_dirs:
        infix_index = write_index(
            s3_client,
            config,
            f"{filename_root}-{infix}",
            core.infix_index_items(new_index.items, infix),
        )
        result.s3_paths.append(infix_index.s3_path or "")
        logger.info("Wrote infix sitemap index.", extra={"type": sitemap_type, "infix": infix})

    return result
