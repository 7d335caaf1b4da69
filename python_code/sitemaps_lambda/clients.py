"""
A factory module for creating and providing boto3 clients.

This module is the core of the Dependency Injection (DI) pattern for the
application. Handlers receive clients built here, tests pass clients created
under `moto` instead, and nothing below the handler ever constructs its own
client. Connection pooling and retry behavior are passed in explicitly as a
`ClientConfig`, never set as module-level state.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

import boto3
import botocore.config

from mypy_boto3_kinesis import KinesisClient
from mypy_boto3_s3 import S3Client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientConfig:
    """
    Transport settings for the AWS clients.

    Attributes:
        region: AWS region; falls back to `AWS_REGION` from the Lambda environment.
        max_attempts: Total attempts per API call, including the first.
        retry_mode: botocore retry mode. `adaptive` adds client-side rate limiting
                    on throttling, which suits bursts of PutRecords calls.
        max_pool_connections: Sockets kept per client; should cover the
                              background writer's concurrency plus S3 uploads.
    """

    region: Optional[str] = None
    max_attempts: int = 5
    retry_mode: str = "adaptive"
    max_pool_connections: int = 10

    def to_botocore(self) -> botocore.config.Config:
        return botocore.config.Config(
            retries={"max_attempts": self.max_attempts, "mode": self.retry_mode},
            max_pool_connections=self.max_pool_connections,
        )


def get_boto_clients(client_config: ClientConfig) -> Tuple[S3Client, KinesisClient]:
    """
    Returns a tuple of the AWS service clients used by the sitemaps functions.

    The AWS region is explicitly read from the environment to ensure consistent
    and predictable behavior across all clients.

    Returns:
        A tuple containing initialized boto3 clients in the following order:
        (s3_client, kinesis_client)
    """
    aws_region = client_config.region or os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    botocore_config = client_config.to_botocore()
    s3_client: S3Client = boto3.client("s3", region_name=aws_region, config=botocore_config)
    kinesis_client: KinesisClient = boto3.client("kinesis", region_name=aws_region, config=botocore_config)

    return s3_client, kinesis_client
