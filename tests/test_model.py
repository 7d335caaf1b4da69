import re

import pytest

from sitemaps_lambda.model import (
    FileRecord,
    ItemRecord,
    TypeMetrics,
    normalize_index_entry,
    normalize_sitemap_entry,
    now_iso,
)


def test_now_iso_format():
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", now_iso())


def test_normalize_sitemap_entry_does_not_mutate_input():
    entry = {"url": "/a", "img": [], "video": [{"title": "v", "duration": 9.99}]}
    clean = normalize_sitemap_entry(entry)
    assert clean == {"url": "/a", "video": [{"title": "v", "duration": 9}]}
    assert entry["video"][0]["duration"] == 9.99
    assert "img" in entry


def test_normalize_index_entry():
    assert normalize_index_entry({"url": "u", "lastmod": "t", "other": 1}) == {"url": "u", "lastmod": "t"}
    assert normalize_index_entry({"url": "u", "lastmod": None}) == {"url": "u"}


def test_file_record_keys_and_lifecycle():
    record = FileRecord(Type="Widget", FileName="Widget-00001.xml")
    assert record.PK == "fileList#type#widget"
    assert record.SK == "fileName#widget-00001.xml"

    record.mark_dirty()
    assert record.FileStatus == "dirty"
    assert record.to_item()["TimeDirtiedISO"] == record.TimeDirtiedISO

    record.mark_written(12)
    item = record.to_item()
    assert item["FileStatus"] == "written"
    assert item["CountWritten"] == 12
    assert "TimeDirtiedISO" not in item
    assert FileRecord.from_item(item) == record


def test_file_record_rejects_unknown_status():
    with pytest.raises(ValueError):
        FileRecord.from_item({"Type": "widget", "FileName": "f.xml", "FileStatus": "bogus"})


def test_item_record_is_stored_under_two_keys():
    record = ItemRecord(Type="widget", ItemID="ABC", FileName="widget-00001.xml", SitemapItem={"url": "/a"})
    by_id = record.to_item()
    by_file = record.to_item(by_file_name=True)
    assert (by_id["PK"], by_id["SK"]) == ("itemID#abc#type#widget", "assetdata")
    assert (by_file["PK"], by_file["SK"]) == ("fileName#widget-00001.xml#type#widget", "itemID#abc")
    assert ItemRecord.from_item(by_id) == record


def test_item_record_status_transitions():
    record = ItemRecord(Type="widget", ItemID="1", FileName="f.xml", SitemapItem={"url": "/a"})
    record.mark_to_write()
    assert record.ItemStatus == "towrite" and record.TimeDirtiedISO is not None
    record.mark_written()
    assert record.ItemStatus == "written" and record.TimeDirtiedISO is None
    record.mark_to_remove()
    assert record.ItemStatus == "toremove"
    record.mark_removed()
    assert record.ItemStatus == "removed" and record.TimeDirtiedISO is None

    with pytest.raises(ValueError):
        ItemRecord.from_item({**record.to_item(), "ItemStatus": "gone"})


def test_type_metrics_as_dict():
    metrics = TypeMetrics(TypeStarted=1)
    metrics.ActionAdd += 2
    assert metrics.as_dict() == {
        "TypeStarted": 1,
        "TypeDone": 0,
        "TypeFailed": 0,
        "ActionAdd": 2,
        "ActionUpdate": 0,
        "ActionUnknown": 0,
    }
