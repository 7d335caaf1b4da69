"""
Sitemap index files: a `<sitemapindex>` listing the sitemap files of one type.
"""

import posixpath
from typing import Any, Dict, List, NamedTuple, Optional
from urllib.parse import urlsplit
from xml.etree.ElementTree import Element, SubElement

from mypy_boto3_s3 import S3Client

from .model import IndexEntry, normalize_index_entry
from .sitemap_file import (
    DEFAULT_LIMIT_BYTES,
    DEFAULT_LIMIT_COUNT,
    BoundedFile,
    build_filename,
    child_text,
)


class LoadedIndex(NamedTuple):
    index: "SitemapIndex"
    existed: bool
    items: List[IndexEntry]


def filename_from_url(url: str) -> str:
    """The last path segment of a sitemap URL, e.g. `widget-00001.xml`."""
    return posixpath.basename(urlsplit(url).path)


class SitemapIndex(BoundedFile):
    """
    Index whose entries reference sitemap files by URL and last-modified time.

    Entries are always reduced to `{url, lastmod}` so no rotation or writer
    metadata leaks into the index.
    """

    _root_tag = "sitemapindex"
    _entry_tag = "sitemap"
    _default_filename_root = "sitemap-index"

    def __init__(self, *, last_file: Optional[str] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self._last_file_url = last_file

    def _normalize(self, item: Dict[str, Any]) -> IndexEntry:
        return normalize_index_entry(item)

    def _to_element(self, item: IndexEntry) -> Element:
        sitemap_el = Element("sitemap")
        SubElement(sitemap_el, "loc").text = item["url"]
        if item.get("lastmod"):
            SubElement(sitemap_el, "lastmod").text = item["lastmod"]
        return sitemap_el

    @classmethod
    def _from_element(cls, element: Element) -> IndexEntry:
        entry: IndexEntry = {"url": child_text(element, "loc") or ""}
        lastmod = child_text(element, "lastmod")
        if lastmod:
            entry["lastmod"] = lastmod
        return entry

    def write(self, item: Dict[str, Any], disregard_byte_limit: bool = False) -> None:
        super().write(item, disregard_byte_limit=disregard_byte_limit)
        self._last_file_url = item["url"]

    @classmethod
    def from_s3(
        cls,
        s3_client: S3Client,
        *,
        bucket_name: str,
        s3_directory: str = "sitemaps/",
        compress: bool = True,
        filename_root: str = "sitemap-index",
        limit_count: int = DEFAULT_LIMIT_COUNT,
        limit_bytes: int = DEFAULT_LIMIT_BYTES,
        local_directory: str = "/tmp",
    ) -> LoadedIndex:
        """
        Loads an index from S3 into a new open index.

        A missing object is not an error: it yields `existed=False` and an
        empty index, which is the initial state of every type.
        """
        s3_key = posixpath.join(s3_directory, build_filename(filename_root, None, compress))
        existed, items = cls._items_from_s3(s3_client, bucket_name, s3_key)

        index = cls(
            filename_root=filename_root,
            compress=compress,
            limit_count=limit_count,
            limit_bytes=limit_bytes,
            local_directory=local_directory,
            last_file=items[-1]["url"] if items else None,
        )
        try:
            index.write_array(items, disregard_byte_limit=True)
        except Exception:
            index.delete()
            raise
        return LoadedIndex(index, existed, items)

    @property
    def last_filename(self) -> Optional[str]:
        """File name of the most recently added entry, if any."""
        if self._last_file_url is None:
            return None
        return filename_from_url(self._last_file_url)

    @property
    def items(self) -> List[IndexEntry]:
        return self._items
