"""Forwards engine events to a Kinesis stream.

Downstream consumers (audit, analytics, paging) read the stream so the
engine never calls them directly. Publishing failure never blocks the
alert path; the payload is logged at CRITICAL for manual processing.
"""
import json
import logging
import os
from typing import Optional

from .bus import EngineEvent

logger = logging.getLogger(__name__)


class KinesisEventSink:
    """EventBus subscriber that puts each event on a Kinesis stream."""

    def __init__(
        self,
        stream_name: str = "careline-crisis-events",
        enabled: bool = True,
        region: Optional[str] = None,
        client=None,
    ):
        self.stream_name = stream_name
        self.enabled = enabled
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kinesis_client = client

        logger.info(
            "EVENT_SINK_INITIALIZED",
            extra={
                "stream_name": stream_name,
                "enabled": enabled,
                "region": self.region,
            }
        )

    @classmethod
    def from_env(cls) -> "KinesisEventSink":
        return cls(
            stream_name=os.getenv("CARELINE_EVENT_STREAM", "careline-crisis-events"),
            enabled=os.getenv("CARELINE_EVENT_STREAM_ENABLED", "false").lower() == "true",
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None and self.enabled:
            try:
                import boto3
                self._kinesis_client = boto3.client(
                    "kinesis",
                    region_name=self.region,
                )
            except Exception as e:
                logger.error(
                    "KINESIS_CLIENT_INIT_FAILED",
                    extra={"error": str(e)}
                )
        return self._kinesis_client

    def __call__(self, event: EngineEvent) -> None:
        self.publish(event)

    def publish(self, event: EngineEvent) -> bool:
        """Put one event on the stream.

        Returns:
            True if published, False otherwise. Never raises.
        """
        if not self.enabled:
            return False

        payload = event.to_event_payload()

        try:
            if self.kinesis_client is None:
                logger.critical(
                    "ENGINE_EVENT_FALLBACK_LOG",
                    extra={
                        "event_id": event.event_id,
                        "event_type": event.event_type.value,
                        "payload": json.dumps(payload, default=str),
                        "reason": "kinesis_client_unavailable",
                        "action": "MANUAL_PROCESSING_REQUIRED",
                    }
                )
                return False

            response = self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(payload, default=str),
                PartitionKey=event.subject_id,  # same alert -> same shard
            )

            logger.info(
                "ENGINE_EVENT_PUBLISHED",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type.value,
                    "shard_id": response.get("ShardId"),
                    "sequence_number": response.get("SequenceNumber"),
                }
            )
            return True

        except Exception as e:
            logger.critical(
                "ENGINE_EVENT_PUBLISH_FAILED",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_REVIEW_REQUIRED",
                    "payload": json.dumps(payload, default=str),
                }
            )
            return False
