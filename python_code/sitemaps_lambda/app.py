"""
Main AWS Lambda handler for the sitemaps index writer.

This module serves as the entry point and orchestrator for the function.
Its responsibilities include:
  - Loading and validating configuration from environment variables.
  - Creating the AWS clients once per execution environment.
  - Receiving batches of index-writer messages from the Kinesis trigger.
  - Running the per-type index merge from the 'index_merge' module, so one
    failing type never stops the others.
  - Emitting per-type and per-invocation metrics.
"""

import json
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from aws_lambda_powertools import Logger

from . import clients, config, core, index_merge
from .model import IndexWriterMessage, MergeResult, TypeMetrics

# --- 1. SETUP: Configuration, Validation, and Clients ---

# Loaded once at cold start; raises ValueError on a missing or invalid variable
CONFIG = config.load_config()

logger = Logger(service="sitemaps-index-writer", level=CONFIG.log_level)

S3, KINESIS = clients.get_boto_clients(
    clients.ClientConfig(
        max_attempts=CONFIG.boto_max_attempts,
        max_pool_connections=CONFIG.boto_max_pool_connections,
    )
)


def _emit(status: str, metrics: Dict[str, float], dimensions: Optional[Dict[str, str]] = None) -> None:
    if CONFIG.emit_metrics:
        core.emit_metrics(CONFIG.metrics_namespace, CONFIG.environment, status, metrics, dimensions)


# --- 2. ORCHESTRATION ---


def process_type(sitemap_type: str, messages: List[IndexWriterMessage]) -> Optional[MergeResult]:
    """
    Merges one type's messages into its index, isolating any failure.

    Returns:
        The MergeResult, or None when the type failed. Failures are logged
        and counted, never raised, so the remaining types still run.
    """
    metrics = TypeMetrics(TypeStarted=1)
    status = "Failure"
    try:
        result = index_merge.merge_type_index(sitemap_type, messages, S3, CONFIG, metrics, logger)
        metrics.TypeDone = 1
        status = "Success"
        return result
    except Exception:
        metrics.TypeFailed = 1
        logger.exception("Sitemap index update failed for type.", extra={"type": sitemap_type})
        return None
    finally:
        _emit(status, metrics.as_dict(), {"SitemapType": sitemap_type})


def _build_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """Centralized helper to build the final Lambda response."""
    return {"statusCode": status_code, "body": json.dumps(body, default=str)}


# --- 3. LAMBDA HANDLER ---


def handler(event: Dict, context: Any):
    """
    Main Lambda entry point. Applies a batch of file changes to the indexes.

    This function is triggered by a Kinesis batch and returns a dictionary for
    logging and unit testing convenience. It re-raises a batch that cannot be
    decoded so that Kinesis redelivers it.

    This function follows these steps:
    1. Decodes every record of the batch; any malformed record aborts it.
    2. Groups the messages by sitemap type.
    3. For each type, loads, merges, sorts and rewrites the index, then its
       infix copies.
    4. Emits invocation metrics, including the duration.
    """
    start_time = datetime.now(timezone.utc)
    records = event.get("Records", [])
    invocation_metrics: Dict[str, float] = {"EventReceived": 1, "MsgReceived": len(records)}
    status = "Failure"

    if context is not None:
        logger.append_keys(request_id=getattr(context, "aws_request_id", None))

    try:
        if not records:
            invocation_metrics["EventComplete"] = 1
            status = "Success"
            return _build_response(200, {"message": "No records to process."})

        logger.info(f"Received {len(records)} records to process.")
        messages_by_type = core.group_messages_by_type(core.parse_kinesis_records(records))

        results: List[Dict[str, Any]] = []
        failed_types: List[str] = []
        for sitemap_type, messages in messages_by_type.items():
            result = process_type(sitemap_type, messages)
            if result is None:
                failed_types.append(sitemap_type)
            else:
                results.append(asdict(result))

        invocation_metrics["EventComplete"] = 1
        invocation_metrics["TypesFailed"] = len(failed_types)
        status = "Success" if not failed_types else "PartialFailure"
        logger.info("Finished processing batch.", extra={"types": len(results), "failedTypes": failed_types})
        return _build_response(200, {"results": results, "failedTypes": failed_types})

    except Exception as e:
        invocation_metrics["EventFailed"] = 1
        logger.error(
            "Processing failed.",
            extra={"error_type": type(e).__name__, "error_message": str(e)},
            exc_info=True,
        )
        raise

    finally:
        invocation_metrics["DurationMS"] = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        _emit(status, invocation_metrics)
