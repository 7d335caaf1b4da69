"""
Configuration for the sitemaps Lambda functions.

All settings come from environment variables and are validated once at cold
start, so a misconfigured function fails fast instead of mid-batch.
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple


def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None:
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


def get_bool_env_var(name: str, default: str = "false") -> bool:
    value = get_env_var(name, default).strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"FATAL: Environment variable '{name}' must be a boolean, got '{value}'.")


def get_int_env_var(name: str, default: str) -> int:
    value = get_env_var(name, default)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"FATAL: Environment variable '{name}' must be an integer, got '{value}'.") from None


def get_list_env_var(name: str) -> Tuple[str, ...]:
    """Comma-separated list; blanks are dropped."""
    return tuple(part.strip() for part in get_env_var(name, "").split(",") if part.strip())


@dataclass(frozen=True)
class Config:
    """
    Settings shared by the index writer and the sitemap writer.

    Attributes:
        s3_sitemaps_bucket_name: Bucket holding sitemap and index files.
        s3_directory: Key prefix of the index files; sitemaps go in `{s3_directory}/{type}/`.
        compress_sitemap_files: Write `.xml.gz` instead of `.xml`. CPU intensive.
        local_directory: Staging directory for files before upload.
        infix_dirs: Infixes to write as duplicate, trimmed sitemap/index sets.
        site_base_url: Base URL the sitemap files are served from.
        site_base_sitemap_path: Site path under which sitemap files are served.
        items_per_sitemap_limit: Item limit per sitemap file.
        environment: Deployment environment, used as the metrics dimension.
        log_level: Logger level.
        metrics_namespace: CloudWatch metrics namespace.
        emit_metrics: Print EMF metrics to the logs.
        kinesis_index_writer_stream_name: Stream the sitemap writer publishes file changes to.
        kinesis_concurrency: Concurrent PutRecords calls in flight.
        boto_max_attempts: botocore retry attempts.
        boto_max_pool_connections: Connection pool size of each client.
    """

    s3_sitemaps_bucket_name: str
    s3_directory: str = "sitemaps/"
    compress_sitemap_files: bool = False
    local_directory: str = "/tmp/sitemaps"
    infix_dirs: Tuple[str, ...] = ()
    site_base_url: str = "https://www.example.com"
    site_base_sitemap_path: str = "sitemaps"
    items_per_sitemap_limit: int = 50_000
    environment: str = "dev"
    log_level: str = "INFO"
    metrics_namespace: str = "Sitemaps"
    emit_metrics: bool = True
    kinesis_index_writer_stream_name: str = ""
    kinesis_concurrency: int = 1
    boto_max_attempts: int = 5
    boto_max_pool_connections: int = 10


def load_config() -> Config:
    """Builds the Config from the environment; raises ValueError on bad input."""
    config = Config(
        s3_sitemaps_bucket_name=get_env_var("S3_SITEMAPS_BUCKET_NAME"),
        s3_directory=get_env_var("S3_DIRECTORY", "sitemaps/"),
        compress_sitemap_files=get_bool_env_var("COMPRESS_SITEMAP_FILES", "false"),
        local_directory=get_env_var("LOCAL_DIRECTORY", "/tmp/sitemaps"),
        infix_dirs=get_list_env_var("INFIX_DIRS"),
        site_base_url=get_env_var("SITE_BASE_URL", "https://www.example.com"),
        site_base_sitemap_path=get_env_var("SITE_BASE_SITEMAP_PATH", "sitemaps"),
        items_per_sitemap_limit=get_int_env_var("ITEMS_PER_SITEMAP_LIMIT", "50000"),
        environment=get_env_var("ENVIRONMENT", "dev"),
        log_level=get_env_var("LOG_LEVEL", "INFO").upper(),
        metrics_namespace=get_env_var("METRICS_NAMESPACE", "Sitemaps"),
        emit_metrics=get_bool_env_var("EMIT_METRICS", "true"),
        kinesis_index_writer_stream_name=get_env_var("KINESIS_INDEX_WRITER_STREAM_NAME", ""),
        kinesis_concurrency=get_int_env_var("KINESIS_CONCURRENCY", "1"),
        boto_max_attempts=get_int_env_var("BOTO_MAX_ATTEMPTS", "5"),
        boto_max_pool_connections=get_int_env_var("BOTO_MAX_POOL_CONNECTIONS", "10"),
    )
    if not 0 < config.items_per_sitemap_limit <= 50_000:
        raise ValueError("FATAL: ITEMS_PER_SITEMAP_LIMIT must be between 1 and 50000.")
    if config.kinesis_concurrency < 1:
        raise ValueError("FATAL: KINESIS_CONCURRENCY must be at least 1.")
    return config
