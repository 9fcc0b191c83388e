from __future__ import annotations

import json
import logging
from typing import Any

from kafka import KafkaProducer

from story_render.models.domain import RenderJob


class JobEventPublisher:
    """Publishes render job snapshots to Kafka so pollers can be replaced by subscribers."""

    def __init__(self, bootstrap_servers: str, topic: str, logger: logging.Logger | None = None) -> None:
        if not bootstrap_servers:
            raise ValueError("bootstrap_servers is required")
        if not topic:
            raise ValueError("topic is required")
        self._topic = topic
        self._logger = logger or logging.getLogger(__name__)
        self._producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            value_serializer=lambda payload: json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            linger_ms=5,
        )

    def publish_job(self, job: RenderJob) -> None:
        payload: dict[str, Any] = {"job": job.model_dump(mode="json")}
        try:
            self._producer.send(self._topic, key=job.story_id.encode("utf-8"), value=payload)
        except Exception:
            self._logger.warning(
                "failed to publish job event",
                extra={"job_id": str(job.id), "topic": self._topic},
                exc_info=True,
            )

    def close(self) -> None:
        try:
            self._producer.flush()
            self._producer.close()
        except Exception:
            self._logger.debug("job event publisher close failed", exc_info=True)
