import base64
import dataclasses
import json

import pytest

from sitemaps_lambda import app
from sitemaps_lambda.exceptions import FatalBatchError
from sitemaps_lambda.sitemap_index import SitemapIndex


class FakeContext:
    aws_request_id = "test-request-id"


def kinesis_event(messages):
    return {
        "Records": [
            {
                "eventID": f"shardId-000000000000:{n}",
                "kinesis": {"data": base64.b64encode(json.dumps(msg).encode("utf-8")).decode("ascii")},
            }
            for n, msg in enumerate(messages)
        ]
    }


def add(sitemap_type, n):
    return {
        "type": sitemap_type,
        "action": "add",
        "indexItem": {
            "url": f"https://www.example.com/sitemaps/{sitemap_type}/{sitemap_type}-{n:05d}.xml",
            "lastmod": "2024-01-01T00:00:00.000Z",
        },
    }


@pytest.fixture
def handler_env(monkeypatch, s3_client, config):
    monkeypatch.setattr(app, "S3", s3_client)
    monkeypatch.setattr(app, "CONFIG", config)
    return config


def index_items(s3_client, config, filename_root):
    index, _, items = SitemapIndex.from_s3(
        s3_client,
        bucket_name=config.s3_sitemaps_bucket_name,
        s3_directory=config.s3_directory,
        compress=False,
        filename_root=filename_root,
        local_directory=config.local_directory,
    )
    index.delete()
    return items


def test_empty_event(handler_env):
    response = app.handler({"Records": []}, FakeContext())
    assert response["statusCode"] == 200
    assert json.loads(response["body"]) == {"message": "No records to process."}


def test_single_add(handler_env, s3_client):
    response = app.handler(kinesis_event([add("image", 1)]), FakeContext())
    body = json.loads(response["body"])
    assert response["statusCode"] == 200
    assert body["failedTypes"] == []
    assert body["results"][0]["count_after"] == 1
    assert body["results"][0]["last_filename"] == "image-00001.xml"


def test_two_types_in_one_batch(handler_env, s3_client):
    messages = [add("image" if n % 2 else "video", n) for n in range(100, 0, -1)]
    response = app.handler(kinesis_event(messages), FakeContext())
    body = json.loads(response["body"])
    assert sorted(r["type"] for r in body["results"]) == ["image", "video"]

    for sitemap_type in ("image", "video"):
        urls = [i["url"] for i in index_items(s3_client, handler_env, f"{sitemap_type}-index")]
        assert len(urls) == 50
        assert urls == sorted(urls)
        assert all(f"/{sitemap_type}/" in url for url in urls)


def test_one_failing_type_does_not_stop_the_others(handler_env, s3_client, bucket):
    s3_client.put_object(Bucket=bucket, Key="sitemaps/image-index.xml", Body=b"<sitemapindex><oops>")
    response = app.handler(kinesis_event([add("image", 1), add("video", 1)]), FakeContext())
    body = json.loads(response["body"])
    assert response["statusCode"] == 200
    assert body["failedTypes"] == ["image"]
    assert [r["type"] for r in body["results"]] == ["video"]
    assert len(index_items(s3_client, handler_env, "video-index")) == 1


def test_malformed_record_fails_the_whole_batch(handler_env, list_keys):
    event = kinesis_event([add("image", 1)])
    event["Records"].append({"eventID": "bad", "kinesis": {"data": base64.b64encode(b"{not json").decode()}})
    with pytest.raises(FatalBatchError):
        app.handler(event, FakeContext())
    assert list_keys("sitemaps/") == []


def test_unknown_action_is_skipped(handler_env, s3_client):
    msg = add("image", 1)
    msg["action"] = "delete"
    response = app.handler(kinesis_event([msg, add("image", 2)]), FakeContext())
    body = json.loads(response["body"])
    assert body["results"][0]["count_after"] == 1
    assert body["results"][0]["last_filename"] == "image-00002.xml"


def test_metrics_are_emitted(monkeypatch, handler_env, capsys):
    monkeypatch.setattr(app, "CONFIG", dataclasses.replace(handler_env, emit_metrics=True))
    app.handler(kinesis_event([add("image", 1), add("image", 2)]), FakeContext())

    emf = [json.loads(line) for line in capsys.readouterr().out.splitlines() if '"_aws"' in line]
    per_type = [m for m in emf if m.get("SitemapType") == "image"]
    invocation = [m for m in emf if "EventReceived" in m]
    assert len(per_type) == 1
    assert per_type[0]["TypeDone"] == 1
    assert per_type[0]["ActionAdd"] == 2
    assert len(invocation) == 1
    assert invocation[0]["MsgReceived"] == 2
    assert invocation[0]["EventComplete"] == 1
    assert "DurationMS" in invocation[0]
