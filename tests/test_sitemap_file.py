import gzip
import os

import pytest

from sitemaps_lambda.exceptions import SitemapAlreadyFull, SitemapStateError, SitemapWriteWouldOverflow
from sitemaps_lambda.model import FileState
from sitemaps_lambda.sitemap_file import SitemapFile, build_filename

BASE_URL = "https://www.example.com"


def make_sitemap(local_dir, **kwargs):
    kwargs.setdefault("compress", False)
    kwargs.setdefault("filename_root", "widget")
    return SitemapFile(site_base_url=BASE_URL, local_directory=local_dir, **kwargs)


def full_item():
    return {
        "url": "https://www.example.com/widgets/1.html",
        "lastmod": "2024-01-02T03:04:05.000Z",
        "changefreq": "daily",
        "priority": 0.8,
        "img": [{"url": "https://www.example.com/img/1.jpg", "caption": "A widget", "title": "Widget"}],
        "video": [
            {
                "thumbnail_loc": "https://www.example.com/thumb/1.jpg",
                "title": "Widget video",
                "description": "How to use a widget",
                "content_loc": "https://www.example.com/video/1.mp4",
                "duration": 61.7,
            }
        ],
        "news": {
            "publication": {"name": "Widget News", "language": "en"},
            "publication_date": "2024-01-02",
            "title": "Widgets are here",
        },
        "links": [{"lang": "de", "url": "https://www.example.com/de/widgets/1.html"}],
    }


@pytest.mark.parametrize(
    "root,ordinal,compress,expected",
    [
        ("widget", 1, False, "widget-00001.xml"),
        ("widget", 12345, True, "widget-12345.xml.gz"),
        ("widget-index", None, False, "widget-index.xml"),
        ("image-1", 1, False, "image-1-00001.xml"),
    ],
)
def test_build_filename(root, ordinal, compress, expected):
    assert build_filename(root, ordinal, compress) == expected


def test_rejects_count_limit_over_protocol_maximum(local_dir):
    with pytest.raises(ValueError):
        make_sitemap(local_dir, limit_count=50_001)
    with pytest.raises(ValueError):
        make_sitemap(local_dir, limit_count=0)


def test_exact_fit_succeeds_and_one_byte_over_raises(local_dir):
    item = {"url": "/widgets/1.html", "lastmod": "2024-01-02T03:04:05.000Z"}

    scratch = make_sitemap(local_dir, filename_root="scratch")
    envelope = scratch.size_uncompressed
    item_bytes = scratch.item_size(item)
    scratch.delete()

    exact = make_sitemap(local_dir, filename_root="exact", limit_bytes=envelope + item_bytes)
    exact.write(item)
    assert exact.size_uncompressed == envelope + item_bytes
    assert exact.full_bytes
    assert exact.state is FileState.FULL
    with pytest.raises(SitemapAlreadyFull):
        exact.write(item)
    exact.delete()

    short = make_sitemap(local_dir, filename_root="short", limit_bytes=envelope + item_bytes - 1)
    with pytest.raises(SitemapWriteWouldOverflow):
        short.write(item)
    assert short.count == 0
    assert short.size_uncompressed == envelope
    short.delete()


def test_size_accounting_matches_file_on_disk(local_dir):
    sitemap = make_sitemap(local_dir)
    sitemap.write_array([full_item(), {"url": "/widgets/2.html"}])
    path = sitemap.end()
    assert os.path.getsize(path) == sitemap.size_uncompressed
    sitemap.delete()


def test_disregard_byte_limit_allows_oversized_item(local_dir):
    sitemap = make_sitemap(local_dir, limit_bytes=10)
    sitemap.write({"url": "/widgets/1.html"}, disregard_byte_limit=True)
    assert sitemap.count == 1
    assert sitemap.full_bytes
    sitemap.delete()


def test_already_full_by_count(local_dir):
    sitemap = make_sitemap(local_dir, limit_count=2)
    sitemap.write({"url": "/widgets/1.html"})
    sitemap.write({"url": "/widgets/2.html"})
    assert sitemap.full_count
    with pytest.raises(SitemapAlreadyFull):
        sitemap.write({"url": "/widgets/3.html"})
    # The count limit applies even when the byte limit is disregarded
    with pytest.raises(SitemapAlreadyFull):
        sitemap.write({"url": "/widgets/3.html"}, disregard_byte_limit=True)
    sitemap.delete()


def test_lifecycle_errors(s3_client, bucket, local_dir):
    sitemap = make_sitemap(local_dir)
    sitemap.write({"url": "/widgets/1.html"})

    with pytest.raises(SitemapStateError):
        sitemap.push_to_s3(s3_client, bucket)

    sitemap.end()
    assert sitemap.state is FileState.ENDED
    with pytest.raises(SitemapStateError):
        sitemap.write({"url": "/widgets/2.html"})
    with pytest.raises(SitemapStateError):
        sitemap.end()

    first = sitemap.push_to_s3(s3_client, bucket)
    assert sitemap.state is FileState.PERSISTED
    assert sitemap.push_to_s3(s3_client, bucket) == first

    sitemap.delete()
    sitemap.delete()
    assert sitemap.state is FileState.DELETED
    assert not os.path.exists(sitemap.filename_and_path)


def test_end_on_empty_file_writes_valid_document(local_dir):
    sitemap = make_sitemap(local_dir)
    path = sitemap.end()
    assert SitemapFile.items_from_file(path) == []
    with open(path, "rb") as f:
        assert f.read().startswith(b'<?xml version="1.0" encoding="UTF-8"?>')
    sitemap.delete()


def test_normalization_drops_empty_extensions(local_dir):
    sitemap = make_sitemap(local_dir)
    sitemap.write({"url": "/widgets/1.html", "img": [], "video": [], "news": None, "links": []})
    assert sitemap.items == [{"url": "/widgets/1.html"}]
    sitemap.delete()


def test_relative_urls_are_written_fully_qualified(local_dir):
    sitemap = make_sitemap(local_dir)
    sitemap.write({"url": "/widgets/1.html"})
    path = sitemap.end()
    assert SitemapFile.items_from_file(path) == [{"url": "https://www.example.com/widgets/1.html"}]
    sitemap.delete()


@pytest.mark.parametrize("compress", [False, True])
def test_push_and_load_from_s3(s3_client, bucket, local_dir, compress):
    sitemap = make_sitemap(local_dir, compress=compress, ordinal=1)
    sitemap.write_array([full_item(), {"url": "https://www.example.com/widgets/2.html"}])
    sitemap.end()
    s3_path = sitemap.push_to_s3(s3_client, bucket, "sitemaps/widget")
    sitemap.delete()

    expected_key = f"sitemaps/widget/widget-00001.xml{'.gz' if compress else ''}"
    assert s3_path == f"s3://{bucket}/{expected_key}"

    head = s3_client.head_object(Bucket=bucket, Key=expected_key)
    assert head["ContentType"] == "application/xml"
    assert head["CacheControl"] == "max-age=900; public"
    if compress:
        assert head["ContentEncoding"] == "gzip"
        body = s3_client.get_object(Bucket=bucket, Key=expected_key)["Body"].read()
        assert gzip.decompress(body).startswith(b"<?xml")

    loaded, existed, items = SitemapFile.from_s3(
        s3_client,
        bucket_name=bucket,
        site_base_url=BASE_URL,
        s3_directory="sitemaps/widget",
        compress=compress,
        filename_root="widget",
        ordinal=1,
        local_directory=local_dir,
    )
    assert existed
    assert items == sitemap.items
    assert items[0]["video"][0]["duration"] == 61
    assert loaded.count == 2
    assert loaded.size_uncompressed == sitemap.size_uncompressed
    loaded.delete()


def test_from_s3_missing_object_yields_empty_open_file(s3_client, bucket, local_dir):
    loaded, existed, items = SitemapFile.from_s3(
        s3_client,
        bucket_name=bucket,
        site_base_url=BASE_URL,
        s3_directory="sitemaps/widget",
        compress=False,
        filename_root="widget",
        ordinal=7,
        local_directory=local_dir,
    )
    assert not existed
    assert items == []
    assert loaded.state is FileState.OPEN
    loaded.delete()


@pytest.mark.parametrize(
    "body",
    [
        b"<urlset><url><loc>https://www.example.com/a</loc><lastmod>2024-01-01</lastmod></url></urlset>",
        b'<sm:urlset xmlns:sm="http://www.sitemaps.org/schemas/sitemap/0.9">'
        b"<sm:url><sm:loc>https://www.example.com/a</sm:loc><sm:lastmod>2024-01-01</sm:lastmod></sm:url>"
        b"</sm:urlset>",
    ],
    ids=["no-namespace", "prefixed-namespace"],
)
def test_items_from_s3_ignores_the_namespace(s3_client, bucket, body):
    s3_client.put_object(Bucket=bucket, Key="sitemaps/widget/widget-00001.xml", Body=body)
    existed, items = SitemapFile.items_from_s3(
        s3_client,
        bucket_name=bucket,
        s3_directory="sitemaps/widget",
        compress=False,
        filename_root="widget",
        ordinal=1,
    )
    assert existed
    assert items == [{"url": "https://www.example.com/a", "lastmod": "2024-01-01"}]


def test_items_from_file_reads_bare_extensions(tmp_path):
    path = tmp_path / "widget-00001.xml"
    path.write_bytes(
        b"<urlset><url><loc>https://www.example.com/a</loc>"
        b"<image><loc>https://www.example.com/a.jpg</loc><title>A</title></image>"
        b"<news><publication><name>Daily</name><language>en</language></publication>"
        b"<publication_date>2024-01-01</publication_date><title>Headline</title></news>"
        b"</url></urlset>"
    )
    [item] = SitemapFile.items_from_file(str(path))
    assert item["img"] == [{"url": "https://www.example.com/a.jpg", "title": "A"}]
    assert item["news"] == {
        "publication": {"name": "Daily", "language": "en"},
        "publication_date": "2024-01-01",
        "title": "Headline",
    }
