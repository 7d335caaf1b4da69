"""
Size- and count-bounded sitemap files staged on local disk and persisted to S3.

`BoundedFile` owns the parts shared by sitemaps and sitemap indexes:
  - Filename derivation, including the zero-padded rotation ordinal.
  - Exact byte accounting, so a write that would cross the limit is rejected
    before anything reaches the file.
  - The OPEN -> FULL -> ENDED -> PERSISTED -> DELETED lifecycle. Calls made
    out of order raise `SitemapStateError` instead of corrupting the file.
  - Upload to S3 and streaming download/parse back from S3.

`SitemapFile` specializes it for `<urlset>` files with image, video, news and
alternate-language link extensions.
"""

import gzip
import logging
import os
import posixpath
from typing import IO, Any, Dict, Iterator, List, NamedTuple, Optional, Tuple
from urllib.parse import urljoin
from xml.etree.ElementTree import Element, SubElement, iterparse, tostring

from botocore.exceptions import ClientError
from mypy_boto3_s3 import S3Client

from .exceptions import SitemapAlreadyFull, SitemapStateError, SitemapWriteWouldOverflow
from .model import FileState, SitemapEntry, normalize_sitemap_entry

logger = logging.getLogger(__name__)

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"
IMAGE_NS = "http://www.google.com/schemas/sitemap-image/1.1"
VIDEO_NS = "http://www.google.com/schemas/sitemap-video/1.1"
NEWS_NS = "http://www.google.com/schemas/sitemap-news/0.9"
XHTML_NS = "http://www.w3.org/1999/xhtml"

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

# Search engines reject sitemaps over 50,000 entries or 50 MiB uncompressed
MAX_LIMIT_COUNT = 50_000
DEFAULT_LIMIT_COUNT = 50_000
DEFAULT_LIMIT_BYTES = 50 * 1024 * 1024

CACHE_CONTROL = f"max-age={15 * 60}; public"

VIDEO_FIELDS = (
    "thumbnail_loc",
    "title",
    "description",
    "content_loc",
    "player_loc",
    "duration",
    "expiration_date",
    "rating",
    "view_count",
    "publication_date",
    "family_friendly",
    "live",
)
IMAGE_FIELDS = ("caption", "geo_location", "title", "license")


def build_filename(filename_root: str, ordinal: Optional[int], compress: bool) -> str:
    """`{root}[-NNNNN].xml[.gz]`"""
    suffix = f"-{ordinal:05d}" if ordinal is not None else ""
    return f"{filename_root}{suffix}.xml{'.gz' if compress else ''}"


class BoundedFile:
    """
    Append-only XML file bounded by an item count and an uncompressed byte size.

    Subclasses provide the document header/footer and the per-entry
    serialization and parsing. Entries are normalized, serialized and measured
    before they are committed, and every committed entry is retained in
    `items` for later reuse (e.g. building infix copies).
    """

    _root_tag = ""
    _entry_tag = ""
    _default_filename_root = "sitemap"

    def __init__(
        self,
        *,
        filename_root: Optional[str] = None,
        compress: bool = True,
        ordinal: Optional[int] = None,
        limit_count: int = DEFAULT_LIMIT_COUNT,
        limit_bytes: int = DEFAULT_LIMIT_BYTES,
        local_directory: str = "/tmp",
    ):
        if limit_count > MAX_LIMIT_COUNT or limit_count <= 0:
            raise ValueError(f"Sitemaps must contain {MAX_LIMIT_COUNT:,} or less items")

        self._filename_root = filename_root or self._default_filename_root
        self._compress = compress
        self._ordinal = ordinal
        self._limit_count = limit_count
        self._limit_bytes = limit_bytes
        self._local_directory = local_directory
        self._filename = build_filename(self._filename_root, ordinal, compress)
        self._filename_and_path = os.path.join(local_directory, self._filename)

        self._count = 0
        self._items: List[Any] = []
        self._state = FileState.OPEN
        self._s3_path: Optional[str] = None

        header = self._header().encode("utf-8")
        footer = self._footer().encode("utf-8")
        # The closing tag is counted up front so the limit covers the finished file
        self._written_uncompressed_bytes = len(header) + len(footer)

        os.makedirs(local_directory, exist_ok=True)
        self._stream: Optional[IO[bytes]] = (
            gzip.open(self._filename_and_path, "wb") if compress else open(self._filename_and_path, "wb")
        )
        self._stream.write(header)

    # --- Serialization hooks ---

    def _header(self) -> str:
        return f'{XML_DECLARATION}<{self._root_tag} xmlns="{SITEMAP_NS}">\n'

    def _footer(self) -> str:
        return f"</{self._root_tag}>\n"

    def _normalize(self, item: Any) -> Any:
        raise NotImplementedError

    def _to_element(self, item: Any) -> Element:
        raise NotImplementedError

    @classmethod
    def _from_element(cls, element: Element) -> Any:
        raise NotImplementedError

    def _serialize(self, item: Any) -> bytes:
        return tostring(self._to_element(item), encoding="unicode").encode("utf-8") + b"\n"

    def item_size(self, item: Any) -> int:
        """Exact number of uncompressed bytes `item` would add to the file."""
        return len(self._serialize(self._normalize(item)))

    # --- Lifecycle ---

    def write(self, item: Any, disregard_byte_limit: bool = False) -> None:
        """
        Appends one entry to the file.

        Args:
            item: The entry to write.
            disregard_byte_limit: Skip the byte checks. Only for reproducing
                existing (possibly oversized) files faithfully.

        Raises:
            SitemapStateError: The file has already been ended.
            SitemapAlreadyFull: The count or byte limit is already reached.
            SitemapWriteWouldOverflow: The item does not fit in the remaining bytes.
        """
        if self._stream is None or self._state is not FileState.OPEN:
            raise SitemapStateError(f"Cannot write to sitemap after closed: {self._filename}")

        if self.full_count:
            raise SitemapAlreadyFull(
                f"Cannot write to already full sitemap: {self._count} of {self._limit_count} item limit, "
                f"{self._written_uncompressed_bytes} bytes of {self._limit_bytes} bytes limit"
            )

        entry = self._normalize(item)
        data = self._serialize(entry)

        if not disregard_byte_limit:
            if self.full_bytes:
                raise SitemapAlreadyFull(
                    f"Cannot write to already full sitemap: {self._count} of {self._limit_count} item limit, "
                    f"{self._written_uncompressed_bytes} bytes of {self._limit_bytes} bytes limit"
                )
            if self._written_uncompressed_bytes + len(data) > self._limit_bytes:
                raise SitemapWriteWouldOverflow(
                    f"Writing {len(data)} bytes would overflow sitemap with bytes limit {self._limit_bytes}, "
                    f"current bytes total {self._written_uncompressed_bytes}"
                )

        self._stream.write(data)
        self._count += 1
        self._written_uncompressed_bytes += len(data)
        self._items.append(entry)

    def write_array(self, items: List[Any], disregard_byte_limit: bool = False) -> None:
        for item in items:
            self.write(item, disregard_byte_limit=disregard_byte_limit)

    def end(self) -> str:
        """Writes the closing tag and closes the local file. Returns its path."""
        if self._stream is None or self._state is not FileState.OPEN:
            raise SitemapStateError(f"Cannot close sitemap after closed: {self._filename}")

        self._stream.write(self._footer().encode("utf-8"))
        self._stream.close()
        self._stream = None
        self._state = FileState.ENDED
        return self._filename_and_path

    def push_to_s3(self, s3_client: S3Client, bucket_name: str, s3_directory: str = "sitemaps/") -> str:
        """
        Uploads the finished file to `s3://{bucket_name}/{s3_directory}/{filename}`.

        Pushing a file that is already persisted does not upload it again.

        Returns:
            The `s3://` path of the object.

        Raises:
            SitemapStateError: The file has not been ended or was deleted.
        """
        if self._state is FileState.PERSISTED and self._s3_path is not None:
            logger.warning(f"Sitemap {self._filename} already pushed to {self._s3_path}; skipping upload.")
            return self._s3_path
        if self._state is not FileState.ENDED:
            raise SitemapStateError(f"Cannot push sitemap to S3 until closed: {self._filename} is {self.state.value}")

        s3_key = posixpath.join(s3_directory, self._filename)
        extra_args: Dict[str, str] = {"ContentType": "application/xml", "CacheControl": CACHE_CONTROL}
        if self._compress:
            extra_args["ContentEncoding"] = "gzip"

        # upload_file switches to parallel multi-part uploads for large files
        s3_client.upload_file(self._filename_and_path, bucket_name, s3_key, ExtraArgs=extra_args)

        self._s3_path = f"s3://{bucket_name}/{s3_key}"
        self._state = FileState.PERSISTED
        logger.info(f"Pushed {self._filename} ({self._count} items) to {self._s3_path}")
        return self._s3_path

    def delete(self) -> None:
        """Removes the local staging file. Safe to call in any state, any number of times."""
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        try:
            os.remove(self._filename_and_path)
        except FileNotFoundError:
            pass
        self._state = FileState.DELETED

    # --- Loading ---

    @staticmethod
    def _get_s3_body(s3_client: S3Client, bucket_name: str, s3_key: str) -> Optional[Any]:
        """Returns the object's streaming body, or None when the key does not exist."""
        try:
            return s3_client.get_object(Bucket=bucket_name, Key=s3_key)["Body"]
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                logger.info(f"No existing object at s3://{bucket_name}/{s3_key}")
                return None
            raise

    @classmethod
    def _iter_items(cls, stream: IO[bytes], compressed: bool) -> Iterator[Any]:
        """Stream-parses entries so large files never sit fully in memory as a tree."""
        source: IO[bytes] = gzip.GzipFile(fileobj=stream, mode="rb") if compressed else stream
        for _, element in iterparse(source, events=("end",)):
            if localname(element.tag) == cls._entry_tag:
                yield cls._from_element(element)
                element.clear()

    @classmethod
    def _items_from_s3(cls, s3_client: S3Client, bucket_name: str, s3_key: str) -> Tuple[bool, List[Any]]:
        body = cls._get_s3_body(s3_client, bucket_name, s3_key)
        if body is None:
            return False, []
        try:
            return True, list(cls._iter_items(body, compressed=s3_key.endswith(".gz")))
        finally:
            body.close()

    @classmethod
    def items_from_file(cls, source_file_and_path: str) -> List[Any]:
        """Parses the entries of a local (optionally .gz) file without creating a container."""
        with open(source_file_and_path, "rb") as f:
            return list(cls._iter_items(f, compressed=source_file_and_path.endswith(".gz")))

    # --- Properties ---

    @property
    def state(self) -> FileState:
        if self._state is FileState.OPEN and self.full:
            return FileState.FULL
        return self._state

    @property
    def ended(self) -> bool:
        return self._state is not FileState.OPEN

    @property
    def full(self) -> bool:
        return self.full_count or self.full_bytes

    @property
    def full_count(self) -> bool:
        return self._count >= self._limit_count

    @property
    def full_bytes(self) -> bool:
        return self._written_uncompressed_bytes >= self._limit_bytes

    @property
    def count(self) -> int:
        return self._count

    @property
    def size_uncompressed(self) -> int:
        return self._written_uncompressed_bytes

    @property
    def items(self) -> List[Any]:
        """All entries written via construction or `write`."""
        return self._items

    @property
    def filename(self) -> str:
        return self._filename

    @property
    def filename_and_path(self) -> str:
        return self._filename_and_path

    @property
    def filename_root(self) -> str:
        return self._filename_root

    @property
    def ordinal(self) -> Optional[int]:
        return self._ordinal

    @property
    def compress(self) -> bool:
        return self._compress

    @property
    def limit_count(self) -> int:
        return self._limit_count

    @property
    def limit_bytes(self) -> int:
        return self._limit_bytes

    @property
    def local_directory(self) -> str:
        return self._local_directory

    @property
    def s3_path(self) -> Optional[str]:
        return self._s3_path


class LoadedSitemap(NamedTuple):
    sitemap: "SitemapFile"
    existed: bool
    items: List[SitemapEntry]


def localname(tag: str) -> str:
    """`{namespace}loc` -> `loc`; tags without a namespace are returned as is."""
    if "}" in tag:
        return tag.rsplit("}", 1)[-1]
    return tag


def find_children(parent: Element, name: str) -> List[Element]:
    return [child for child in parent if localname(child.tag) == name]


def find_child(parent: Element, *path: str) -> Optional[Element]:
    """Follows `path` by local name, so namespaced and bare documents parse alike."""
    node: Optional[Element] = parent
    for name in path:
        if node is None:
            return None
        node = next((child for child in node if localname(child.tag) == name), None)
    return node


def child_text(parent: Element, *path: str) -> Optional[str]:
    child = find_child(parent, *path)
    if child is None or child.text is None:
        return None
    return child.text.strip()


class SitemapFile(BoundedFile):
    """A `<urlset>` sitemap file whose entries are `SitemapEntry` dicts."""

    _root_tag = "urlset"
    _entry_tag = "url"
    _default_filename_root = "sitemap"

    def __init__(self, *, site_base_url: str, **kwargs: Any):
        self._site_base_url = site_base_url
        super().__init__(**kwargs)

    def _header(self) -> str:
        return (
            f'{XML_DECLARATION}<urlset xmlns="{SITEMAP_NS}" xmlns:news="{NEWS_NS}" '
            f'xmlns:xhtml="{XHTML_NS}" xmlns:image="{IMAGE_NS}" xmlns:video="{VIDEO_NS}">\n'
        )

    def _normalize(self, item: SitemapEntry) -> SitemapEntry:
        return normalize_sitemap_entry(item)

    def _absolute(self, url: str) -> str:
        return urljoin(self._site_base_url, url) if self._site_base_url else url

    def _to_element(self, item: SitemapEntry) -> Element:
        url_el = Element("url")
        # Measure and write fully qualified URLs so new and reloaded items size the same
        SubElement(url_el, "loc").text = self._absolute(item["url"])
        if item.get("lastmod"):
            SubElement(url_el, "lastmod").text = item["lastmod"]
        if item.get("changefreq"):
            SubElement(url_el, "changefreq").text = item["changefreq"]
        if item.get("priority") is not None:
            SubElement(url_el, "priority").text = str(item["priority"])

        for img in item.get("img", []):
            img_el = SubElement(url_el, "image:image")
            SubElement(img_el, "image:loc").text = self._absolute(img["url"])
            for name in IMAGE_FIELDS:
                if img.get(name) is not None:
                    SubElement(img_el, f"image:{name}").text = str(img[name])

        for video in item.get("video", []):
            video_el = SubElement(url_el, "video:video")
            for name in VIDEO_FIELDS:
                if video.get(name) is not None:
                    SubElement(video_el, f"video:{name}").text = str(video[name])

        news = item.get("news")
        if news:
            news_el = SubElement(url_el, "news:news")
            publication = news.get("publication", {})
            pub_el = SubElement(news_el, "news:publication")
            SubElement(pub_el, "news:name").text = publication.get("name", "")
            SubElement(pub_el, "news:language").text = publication.get("language", "")
            SubElement(news_el, "news:publication_date").text = news.get("publication_date", "")
            SubElement(news_el, "news:title").text = news.get("title", "")

        for link in item.get("links", []):
            SubElement(url_el, "xhtml:link", {"rel": "alternate", "hreflang": link["lang"], "href": link["url"]})

        return url_el

    @classmethod
    def _from_element(cls, element: Element) -> SitemapEntry:
        entry: SitemapEntry = {"url": child_text(element, "loc") or ""}
        lastmod = child_text(element, "lastmod")
        if lastmod:
            entry["lastmod"] = lastmod
        changefreq = child_text(element, "changefreq")
        if changefreq:
            entry["changefreq"] = changefreq
        priority = child_text(element, "priority")
        if priority:
            entry["priority"] = float(priority)

        images = []
        for img_el in find_children(element, "image"):
            img: Dict[str, Any] = {"url": child_text(img_el, "loc") or ""}
            for name in IMAGE_FIELDS:
                value = child_text(img_el, name)
                if value is not None:
                    img[name] = value
            images.append(img)
        if images:
            entry["img"] = images

        videos = []
        for video_el in find_children(element, "video"):
            video: Dict[str, Any] = {}
            for name in VIDEO_FIELDS:
                value = child_text(video_el, name)
                if value is not None:
                    video[name] = int(float(value)) if name in ("duration", "view_count") else value
            videos.append(video)
        if videos:
            entry["video"] = videos

        news_el = find_child(element, "news")
        if news_el is not None:
            entry["news"] = {
                "publication": {
                    "name": child_text(news_el, "publication", "name") or "",
                    "language": child_text(news_el, "publication", "language") or "",
                },
                "publication_date": child_text(news_el, "publication_date") or "",
                "title": child_text(news_el, "title") or "",
            }

        links = [
            {"lang": link_el.get("hreflang", ""), "url": link_el.get("href", "")}
            for link_el in find_children(element, "link")
        ]
        if links:
            entry["links"] = links

        return entry

    @classmethod
    def items_from_s3(
        cls,
        s3_client: S3Client,
        *,
        bucket_name: str,
        s3_directory: str = "sitemaps/",
        compress: bool = True,
        filename_root: str = "sitemap",
        ordinal: Optional[int] = None,
    ) -> Tuple[bool, List[SitemapEntry]]:
        """Loads the entries of a sitemap from S3 without creating a new file."""
        s3_key = posixpath.join(s3_directory, build_filename(filename_root, ordinal, compress))
        return cls._items_from_s3(s3_client, bucket_name, s3_key)

    @classmethod
    def from_s3(
        cls,
        s3_client: S3Client,
        *,
        bucket_name: str,
        site_base_url: str,
        s3_directory: str = "sitemaps/",
        compress: bool = True,
        filename_root: str = "sitemap",
        ordinal: Optional[int] = None,
        limit_count: int = DEFAULT_LIMIT_COUNT,
        limit_bytes: int = DEFAULT_LIMIT_BYTES,
        local_directory: str = "/tmp",
    ) -> LoadedSitemap:
        """
        Loads a sitemap from S3 into a new open file.

        The byte limit is disregarded while loading: the file is reproduced as
        it is, and `full` can be checked afterwards.
        """
        existed, items = cls.items_from_s3(
            s3_client,
            bucket_name=bucket_name,
            s3_directory=s3_directory,
            compress=compress,
            filename_root=filename_root,
            ordinal=ordinal,
        )
        sitemap = cls(
            site_base_url=site_base_url,
            filename_root=filename_root,
            compress=compress,
            ordinal=ordinal,
            limit_count=limit_count,
            limit_bytes=limit_bytes,
            local_directory=local_directory,
        )
        try:
            sitemap.write_array(items, disregard_byte_limit=True)
        except Exception:
            sitemap.delete()
            raise
        return LoadedSitemap(sitemap, existed, items)

    @property
    def site_base_url(self) -> str:
        return self._site_base_url
