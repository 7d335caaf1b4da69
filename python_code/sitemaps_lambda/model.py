"""
Data models for the sitemaps pipeline.

This module defines the data contracts passed between the sitemap writer, the
index writer and the DynamoDB state model. Using dataclasses and TypedDicts
keeps the contracts explicit, statically checked by mypy, and self-documenting.
"""

import copy
import enum
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TypedDict


def now_iso() -> str:
    """UTC timestamp in the ISO format written to lastmod and the DB."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# --- Sitemap and index entries ---


class _SitemapEntryRequired(TypedDict):
    url: str


class SitemapEntry(_SitemapEntryRequired, total=False):
    """
    A single `<url>` element of a sitemap file.

    `url` is the natural key. It may be site-relative when written; it is
    serialized fully qualified against the file's site base URL.
    """

    lastmod: str
    changefreq: str
    priority: float
    img: List[Dict[str, Any]]
    video: List[Dict[str, Any]]
    news: Dict[str, Any]
    links: List[Dict[str, str]]


class _IndexEntryRequired(TypedDict):
    url: str


class IndexEntry(_IndexEntryRequired, total=False):
    """A `<sitemap>` element of an index file: a reference to a sitemap file."""

    lastmod: str


# Optional fields dropped from a SitemapEntry when they hold nothing
EMPTY_DROPPABLE_FIELDS = ("img", "video", "news", "links")


def normalize_sitemap_entry(entry: SitemapEntry) -> SitemapEntry:
    """
    Returns a canonical copy of a sitemap entry.

    Empty `img`, `video`, `news` and `links` fields are removed and video
    durations are truncated to whole seconds, so that an entry written fresh
    and the same entry read back from S3 serialize to identical bytes.
    """
    clean = copy.deepcopy(entry)
    for name in EMPTY_DROPPABLE_FIELDS:
        value = clean.get(name)
        if name in clean and (value is None or (isinstance(value, (list, dict)) and not value)):
            del clean[name]  # type: ignore[misc]
    for video in clean.get("video", []):
        if video.get("duration") is not None:
            video["duration"] = math.floor(float(video["duration"]))
    return clean


def normalize_index_entry(entry: Dict[str, Any]) -> IndexEntry:
    """Reduces any index item to exactly `url` and, if present, `lastmod`."""
    result: IndexEntry = {"url": entry["url"]}
    if entry.get("lastmod"):
        result["lastmod"] = entry["lastmod"]
    return result


# --- File lifecycle ---


class FileState(str, enum.Enum):
    """
    Lifecycle of a sitemap or index file.

    OPEN -> FULL -> ENDED -> PERSISTED -> DELETED. FULL is reported while the
    file is still open but has reached its count or byte limit.
    """

    OPEN = "open"
    FULL = "full"
    ENDED = "ended"
    PERSISTED = "persisted"
    DELETED = "deleted"


# --- Stream messages ---


class IndexWriterMessage(TypedDict):
    """
    Message on the index-writer Kinesis stream.

    Producer: sitemap_writer. Consumer: the index writer handler in app.py.
    """

    type: str
    action: str
    indexItem: IndexEntry


class KinesisData(TypedDict):
    data: str
    partitionKey: str
    sequenceNumber: str


class KinesisEventRecord(TypedDict):
    """
    Represents a single record of a Kinesis-triggered Lambda event.

    Only the fields this application reads are declared.
    """

    eventID: str
    kinesis: KinesisData


class PutRecordsEntry(TypedDict):
    """One entry of a Kinesis PutRecords request."""

    PartitionKey: str
    Data: bytes


# --- DynamoDB state model ---

FILE_STATUSES = ("empty", "dirty", "written", "malformed")
ITEM_STATUSES = ("written", "towrite", "toremove", "removed")


@dataclass
class FileRecord:
    """
    The DynamoDB record describing one sitemap XML file.

    Stored with the single-table key `PK=fileList#type#{type}`,
    `SK=fileName#{filename}` so every file of a type can be listed with one
    query.

    Attributes:
        Type: Namespace of the file; file names are unique within a type.
        FileName: Name of the file, e.g. `widget-00001.xml`.
        FileStatus: `empty`, `dirty` (items changed, rewrite needed),
                    `written` or `malformed`.
        CountWritten: Number of items in the last written copy.
        TimeFirstSeenISO: When the file was first recorded.
        TimeLastWrittenISO: When the file was last written to S3.
        TimeDirtiedISO: When an item of the file was most recently changed.
    """

    Type: str
    FileName: str
    FileStatus: str = "empty"
    CountWritten: int = 0
    TimeFirstSeenISO: str = field(default_factory=now_iso)
    TimeLastWrittenISO: str = field(default_factory=now_iso)
    TimeDirtiedISO: Optional[str] = None

    @property
    def PK(self) -> str:
        return f"fileList#type#{self.Type.lower()}"

    @property
    def SK(self) -> str:
        return f"fileName#{self.FileName.lower()}"

    def mark_dirty(self) -> None:
        self.FileStatus = "dirty"
        self.TimeDirtiedISO = now_iso()

    def mark_written(self, count_written: int) -> None:
        self.FileStatus = "written"
        self.CountWritten = count_written
        self.TimeLastWrittenISO = now_iso()
        self.TimeDirtiedISO = None

    def to_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "PK": self.PK,
            "SK": self.SK,
            "Type": self.Type,
            "FileName": self.FileName,
            "FileStatus": self.FileStatus,
            "CountWritten": self.CountWritten,
            "TimeFirstSeenISO": self.TimeFirstSeenISO,
            "TimeLastWrittenISO": self.TimeLastWrittenISO,
        }
        if self.TimeDirtiedISO is not None:
            item["TimeDirtiedISO"] = self.TimeDirtiedISO
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "FileRecord":
        if item.get("FileStatus", "empty") not in FILE_STATUSES:
            raise ValueError(f"Unknown FileStatus: {item.get('FileStatus')}")
        return cls(
            Type=item["Type"],
            FileName=item["FileName"],
            FileStatus=item.get("FileStatus", "empty"),
            CountWritten=int(item.get("CountWritten", 0)),
            TimeFirstSeenISO=item.get("TimeFirstSeenISO", now_iso()),
            TimeLastWrittenISO=item.get("TimeLastWrittenISO", now_iso()),
            TimeDirtiedISO=item.get("TimeDirtiedISO"),
        )


@dataclass
class ItemRecord:
    """
    The DynamoDB record describing one sitemap item.

    Each item is stored twice: keyed by ItemID (the ownership record, which
    names the single file that owns the item) and keyed by FileName (the
    per-file item list). On conflict the ItemID record wins.

    Attributes:
        Type: Namespace of the item.
        ItemID: Caller-defined unique ID within the type.
        FileName: The file that currently owns the item.
        SitemapItem: The sitemap entry as last written or to be written.
        ItemStatus: `written`, `towrite`, `toremove` or `removed`.
    """

    Type: str
    ItemID: str
    FileName: str
    SitemapItem: SitemapEntry
    ItemStatus: str = "written"
    TimeFirstSeenISO: str = field(default_factory=now_iso)
    TimeLastWrittenISO: str = field(default_factory=now_iso)
    TimeDirtiedISO: Optional[str] = None

    @property
    def pk_by_item_id(self) -> str:
        return f"itemID#{self.ItemID.lower()}#type#{self.Type.lower()}"

    @property
    def pk_by_file_name(self) -> str:
        return f"fileName#{self.FileName.lower()}#type#{self.Type.lower()}"

    def mark_to_write(self) -> None:
        self.ItemStatus = "towrite"
        self.TimeDirtiedISO = now_iso()

    def mark_to_remove(self) -> None:
        self.ItemStatus = "toremove"
        self.TimeDirtiedISO = now_iso()

    def mark_removed(self) -> None:
        self.ItemStatus = "removed"
        self.TimeLastWrittenISO = now_iso()
        self.TimeDirtiedISO = None

    def mark_written(self) -> None:
        self.ItemStatus = "written"
        self.TimeLastWrittenISO = now_iso()
        self.TimeDirtiedISO = None

    def to_item(self, by_file_name: bool = False) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "PK": self.pk_by_file_name if by_file_name else self.pk_by_item_id,
            "SK": f"itemID#{self.ItemID.lower()}" if by_file_name else "assetdata",
            "Type": self.Type,
            "ItemID": self.ItemID,
            "FileName": self.FileName,
            "SitemapItem": self.SitemapItem,
            "ItemStatus": self.ItemStatus,
            "TimeFirstSeenISO": self.TimeFirstSeenISO,
            "TimeLastWrittenISO": self.TimeLastWrittenISO,
        }
        if self.TimeDirtiedISO is not None:
            item["TimeDirtiedISO"] = self.TimeDirtiedISO
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "ItemRecord":
        if item.get("ItemStatus", "written") not in ITEM_STATUSES:
            raise ValueError(f"Unknown ItemStatus: {item.get('ItemStatus')}")
        return cls(
            Type=item["Type"],
            ItemID=item["ItemID"],
            FileName=item["FileName"],
            SitemapItem=item["SitemapItem"],
            ItemStatus=item.get("ItemStatus", "written"),
            TimeFirstSeenISO=item.get("TimeFirstSeenISO", now_iso()),
            TimeLastWrittenISO=item.get("TimeLastWrittenISO", now_iso()),
            TimeDirtiedISO=item.get("TimeDirtiedISO"),
        )


# --- Processing results ---


@dataclass
class RotationState:
    """
    Mutable state shared across calls to `rotate.write_or_rotate_and_write`.

    Attributes:
        count: Ordinal of the currently open file (0 before the first file).
        completed: Files that were ended by a rotation and still need to be
                   pushed and deleted by the caller.
    """

    count: int = 0
    completed: List[Any] = field(default_factory=list)


@dataclass
class TypeMetrics:
    """Per-type counters flushed with a `SitemapType` dimension."""

    TypeStarted: int = 0
    TypeDone: int = 0
    TypeFailed: int = 0
    ActionAdd: int = 0
    ActionUpdate: int = 0
    ActionUnknown: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class MergeResult:
    """
    Outcome of the index merge for one type.

    Attributes:
        type: The sitemap type that was merged.
        index_existed: Whether an index object was found in S3.
        count_before: Entries in the existing index.
        count_after: Entries in the rewritten index.
        last_filename: File name of the last entry of the rewritten index.
        s3_paths: Every index object written (primary first, then infixes).
    """

    type: str
    index_existed: bool = False
    count_before: int = 0
    count_after: int = 0
    last_filename: Optional[str] = None
    s3_paths: List[str] = field(default_factory=list)
