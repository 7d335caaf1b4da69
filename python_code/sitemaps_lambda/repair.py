"""
Reconciles the DB's item ownership records with the content of an S3 sitemap.

Nothing here writes to the DB or S3. The caller persists the records in the
returned `OwnershipResult`:
  - `removed` records are saved by file name only, so the ItemID-keyed
    record (and with it ownership) stays with the file that owns the item.
  - `missing` records are saved under both keys and written back to the file.
"""

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Union

from mypy_boto3_s3 import S3Client

from .model import ItemRecord, SitemapEntry
from .sitemap_file import SitemapFile

logger = logging.getLogger(__name__)


def extract_item_id(url: str, item_id_regex: Union[str, Pattern[str]]) -> Optional[str]:
    """
    Pulls the item ID out of a sitemap URL.

    The `ItemID` named group is used when the pattern defines one, otherwise
    the first group. Returns None when the URL does not match.
    """
    pattern = re.compile(item_id_regex) if isinstance(item_id_regex, str) else item_id_regex
    match = pattern.search(url)
    if match is None:
        return None
    if "ItemID" in pattern.groupindex:
        return match.group("ItemID")
    if pattern.groups == 0:
        raise ValueError(f"item ID regex {pattern.pattern!r} does not capture any groups")
    return match.group(1)


def items_by_item_id(items: List[SitemapEntry], item_id_regex: Union[str, Pattern[str]]) -> Dict[str, SitemapEntry]:
    """
    Keys sitemap entries by item ID; later duplicates replace earlier ones.

    Raises:
        ValueError: An entry's URL does not yield an item ID.
    """
    result: Dict[str, SitemapEntry] = {}
    for item in items:
        item_id = extract_item_id(item["url"], item_id_regex)
        if item_id is None:
            raise ValueError(f"`{item['url']}` does not match the item ID regex")
        result[item_id] = item
    return result


def load_s3_items_by_item_id(
    s3_client: S3Client,
    *,
    bucket_name: str,
    s3_directory: str,
    sitemap_type: str,
    filename: str,
    item_id_regex: Union[str, Pattern[str]],
) -> Dict[str, SitemapEntry]:
    """Reads `{s3_directory}/{type}/{filename}`; a missing object reads as empty."""
    compress = filename.endswith(".gz")
    filename_root = filename[: -len(".xml.gz")] if compress else filename[: -len(".xml")]
    existed, items = SitemapFile.items_from_s3(
        s3_client,
        bucket_name=bucket_name,
        s3_directory=posixpath.join(s3_directory, sitemap_type),
        compress=compress,
        filename_root=filename_root,
    )
    if not existed:
        logger.error(f"Sitemap {filename} of type {sitemap_type} not found in s3://{bucket_name}/{s3_directory}")
    return items_by_item_id(items, item_id_regex)


@dataclass
class OwnershipResult:
    """
    Attributes:
        keep: S3 entries this file legitimately owns.
        removed: Ownership records of items owned by another file, re-pointed
            at this file and marked `removed`.
        missing: New `written` records for S3 entries the DB has never seen.
    """

    keep: Dict[str, SitemapEntry] = field(default_factory=dict)
    removed: List[ItemRecord] = field(default_factory=list)
    missing: List[ItemRecord] = field(default_factory=list)


def reconcile_ownership(
    filename: str,
    s3_items: Dict[str, SitemapEntry],
    db_records: Dict[str, ItemRecord],
    sitemap_type: str = "",
) -> OwnershipResult:
    """
    Decides, per item found in the S3 file, whether the file still owns it.

    The ItemID-keyed DB record always wins: an item it assigns to another
    file is dropped from this one, and an item with no DB record at all is
    claimed by this file.

    Args:
        filename: The file being repaired, e.g. `widget-00001.xml`.
        s3_items: Entries found in the S3 file, keyed by item ID.
        db_records: ItemID-keyed ownership records for those item IDs.
        sitemap_type: Type for records created for missing items.

    Returns:
        An OwnershipResult.
    """
    result = OwnershipResult()
    for item_id, s3_item in s3_items.items():
        record = db_records.get(item_id)

        if record is not None and record.FileName != filename:
            logger.warning(f"Item {item_id} is owned by {record.FileName}; removing it from {filename}")
            # Only the by-file-name record is saved, so ownership is not stolen back
            record.FileName = filename
            record.mark_removed()
            record.SitemapItem = s3_item
            result.removed.append(record)
        elif record is not None:
            result.keep[item_id] = s3_item
        else:
            logger.warning(f"Item {item_id} in {filename} has no DB record; repairing")
            missing = ItemRecord(
                Type=sitemap_type,
                ItemID=item_id,
                FileName=filename,
                SitemapItem=s3_item,
                ItemStatus="written",
            )
            result.missing.append(missing)
            result.keep[item_id] = s3_item
    return result
