"""
Core business logic for the sitemaps index writer.

These functions are designed to be "pure" and testable, containing no AWS SDK
calls and no global state. They receive all dependencies, including the
Powertools logger, from the handler in app.py, allowing them to be
unit-tested in isolation.
"""

import base64
import binascii
import json
import posixpath
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

from aws_lambda_powertools import Logger

from .exceptions import FatalBatchError, MessageAnomalyError
from .model import IndexEntry, IndexWriterMessage, KinesisEventRecord, TypeMetrics, normalize_index_entry

KNOWN_ACTIONS = ("add", "update")


def parse_kinesis_records(records: List[KinesisEventRecord]) -> List[IndexWriterMessage]:
    """
    Decodes the index-writer messages carried by a Kinesis event.

    Raises:
        FatalBatchError: A record is not base64 JSON or lacks `type`,
            `action` or `indexItem.url`. Nothing in the batch is applied,
            so the stream can redeliver it intact.
    """
    messages: List[IndexWriterMessage] = []
    for record in records:
        event_id = record.get("eventID", "unknown")
        try:
            msg = json.loads(base64.b64decode(record["kinesis"]["data"]).decode("utf-8"))
            if not isinstance(msg, dict) or not msg["type"] or not msg["indexItem"]["url"]:
                raise ValueError("message must carry a type and an indexItem.url")
            msg.setdefault("action", "")
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise FatalBatchError(f"Malformed index writer record {event_id}: {e}") from e
        messages.append(msg)
    return messages


def group_messages_by_type(messages: List[IndexWriterMessage]) -> Dict[str, List[IndexWriterMessage]]:
    """
    Groups messages by sitemap type, preserving arrival order within a type.

    Records from many producer shards carry files of the same type; grouping
    lets each type's index be loaded and rewritten exactly once per batch.
    """
    by_type: Dict[str, List[IndexWriterMessage]] = {}
    for msg in messages:
        by_type.setdefault(msg["type"], []).append(msg)
    return by_type


def apply_message(items_by_url: Dict[str, IndexEntry], msg: IndexWriterMessage) -> None:
    """
    Upserts the message's index item keyed by URL; the last writer wins.

    Raises:
        MessageAnomalyError: The action is neither `add` nor `update`.
    """
    action = msg.get("action")
    if action not in KNOWN_ACTIONS:
        raise MessageAnomalyError(f"Unknown index writer action: {action!r}", action=action)
    item = normalize_index_entry(msg["indexItem"])
    items_by_url[item["url"]] = item


def merge_index_items(
    existing_items: List[IndexEntry],
    messages: List[IndexWriterMessage],
    metrics: TypeMetrics,
    logger: Logger,
) -> List[IndexEntry]:
    """
    Merges a batch of add/update messages into the items of an existing index.

    Args:
        existing_items: Items of the index as last persisted.
        messages: The batch's messages for a single type.
        metrics: Per-type counters updated with the actions seen.
        logger: The Powertools Logger instance for structured logging.

    Returns:
        The merged items, one per URL, sorted ascending by URL. Applying the
        same batch twice yields the same result as applying it once.
    """
    items_by_url: Dict[str, IndexEntry] = {}
    for item in existing_items:
        normalized = normalize_index_entry(item)
        items_by_url[normalized["url"]] = normalized

    for msg in messages:
        try:
            apply_message(items_by_url, msg)
        except MessageAnomalyError as e:
            metrics.ActionUnknown += 1
            logger.warning(
                "Unknown action type - skipping.",
                extra={"type": msg.get("type"), "action": e.action, "indexItem": msg.get("indexItem")},
            )
            continue
        if msg["action"] == "add":
            metrics.ActionAdd += 1
        else:
            metrics.ActionUpdate += 1

    # Lexicographic URL order approximates the order the files were created in
    return sorted(items_by_url.values(), key=lambda item: item["url"])


def infix_index_url(url: str, infix: str) -> str:
    """
    Points an index entry at the infix copy of its sitemap file.

    `https://ex.com/sitemaps/a/a-1.xml` with infix `de` becomes
    `https://ex.com/sitemaps/a/de/de-a-1.xml`.
    """
    parts = urlsplit(url)
    segments = parts.path.split("/")
    filename = segments.pop()
    path = "/" + posixpath.join(*[s for s in segments if s], infix, f"{infix}-{filename}")
    return urlunsplit(parts._replace(path=path))


def infix_sitemap_url(url: str, infix: str) -> str:
    """
    Moves a sitemap item's URL under the infix directory at the site root.

    `https://ex.com/widgets/1.html` with infix `de` becomes `/de/widgets/1.html`,
    which the infix sitemap resolves against its site base URL.
    """
    parts = urlsplit(url)
    path = "/" + posixpath.join(infix, parts.path.lstrip("/"))
    return f"{path}?{parts.query}" if parts.query else path


def infix_index_items(items: List[IndexEntry], infix: str) -> List[IndexEntry]:
    """Derives the trimmed `{url, lastmod}` entries of an infix index."""
    result: List[IndexEntry] = []
    for item in items:
        new_item: IndexEntry = {"url": infix_index_url(item["url"], infix)}
        if item.get("lastmod"):
            new_item["lastmod"] = item["lastmod"]
        result.append(new_item)
    return result


def emit_metrics(
    namespace: str,
    environment: str,
    status: str,
    metrics: Dict[str, float],
    dimensions: Optional[Dict[str, str]] = None,
    properties: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Prints metrics in CloudWatch Embedded Metric Format (EMF).

    EMF lines must be bare JSON on stdout, so they bypass the logger.
    Dashboards and alarms should filter/group by the 'Environment' dimension.

    Returns:
        The EMF document that was printed.
    """
    dims = {"Environment": environment, **(dimensions or {})}
    emf_payload = {
        "_aws": {
            "Timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            "CloudWatchMetrics": [
                {
                    "Namespace": namespace,
                    "Dimensions": [list(dims.keys())],
                    "Metrics": [
                        {"Name": k, "Unit": "Milliseconds" if k.endswith("MS") else "Count"} for k in metrics.keys()
                    ],
                }
            ],
        },
        **dims,
        "Status": status,
        **(properties or {}),
        **metrics,
    }
    print(json.dumps(emf_payload, default=str))
    return emf_payload
