"""
Shared pytest fixtures for the sitemaps Lambda tests.

Environment variables are set at import time, before any test imports the
handler module, because `app` loads its configuration at cold start.
"""

import os

import boto3
import pytest
from aws_lambda_powertools import Logger
from moto import mock_aws

from sitemaps_lambda.config import Config

BUCKET = "test-sitemaps-bucket"
REGION = "us-east-1"

os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", REGION)
os.environ.setdefault("AWS_REGION", REGION)
os.environ.setdefault("S3_SITEMAPS_BUCKET_NAME", BUCKET)
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("EMIT_METRICS", "false")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "sitemaps-tests")


@pytest.fixture
def s3_client():
    """A moto S3 client with the sitemaps bucket already created."""
    with mock_aws():
        client = boto3.client("s3", region_name=REGION)
        client.create_bucket(Bucket=BUCKET)
        yield client


@pytest.fixture
def local_dir(tmp_path) -> str:
    return str(tmp_path / "sitemaps")


@pytest.fixture
def config(local_dir) -> Config:
    return Config(
        s3_sitemaps_bucket_name=BUCKET,
        s3_directory="sitemaps/",
        compress_sitemap_files=False,
        local_directory=local_dir,
        site_base_url="https://www.example.com",
        site_base_sitemap_path="sitemaps",
        environment="test",
        emit_metrics=False,
    )


@pytest.fixture
def logger() -> Logger:
    return Logger(service="sitemaps-tests")


@pytest.fixture
def list_keys(s3_client):
    """Returns a helper listing the sorted object keys under a prefix."""

    def _list(prefix: str = ""):
        response = s3_client.list_objects_v2(Bucket=BUCKET, Prefix=prefix)
        return sorted(obj["Key"] for obj in response.get("Contents", []))

    return _list


@pytest.fixture
def bucket() -> str:
    return BUCKET
