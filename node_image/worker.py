"""
Pipeline Worker — node_image

Consumes pipeline run jobs from a Redis queue and executes them one at a
time.  Each run writes its receipt under ``<artifacts>/<run_id>/``; the
API reads status from there.

Runs are never retried here: a FAILED receipt with ``retryable=true`` is
the signal for whoever submitted the job to resubmit it.
"""
import json
import logging
import os
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

import redis

from node_image.config import PipelineSettings, get_settings
from node_image.policy.profile import PipelineProfile
from node_image.runner import run_pipeline

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("pipeline_worker")

QUEUE_NAME = "pipeline:queue"


class PipelineWorker:
    """
    Worker that pulls pipeline jobs from Redis and runs them.
    Receipts are written to disk next to the published artifacts.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        redis_host: str = "redis",
        redis_port: int = 6379,
        stage_factory=None,
        http_client=None,
    ):
        self.settings = settings or get_settings()
        self.redis_host = redis_host
        self.redis_port = redis_port
        self.stage_factory = stage_factory
        self.http_client = http_client
        self.redis_client: Optional[redis.Redis] = None

    def connect(self):
        """Establish the Redis connection."""
        logger.info("Connecting to Redis...")
        self.redis_client = redis.Redis(
            host=self.redis_host,
            port=self.redis_port,
            decode_responses=True,
        )
        self.redis_client.ping()
        logger.info("Redis connected")

    def run(self):
        """Main worker loop — blocking pop from the Redis queue."""
        self.connect()
        logger.info("Pipeline worker started, waiting for jobs...")

        while True:
            try:
                if self.redis_client is None:
                    raise RuntimeError("Redis client not connected")

                result = self.redis_client.blpop([QUEUE_NAME], timeout=5)
                if result is None:
                    continue

                _, job_data = result  # type: ignore
                job = json.loads(job_data)

                if job.get("job_type") != "pipeline_run":
                    logger.warning(f"Unknown job type '{job.get('job_type')}', skipping")
                    continue

                logger.info(f"Received pipeline run: {job['run_id']}")
                self.process_run(job)

            except KeyboardInterrupt:
                logger.info("Worker shutting down...")
                break
            except redis.ConnectionError as e:
                logger.error(f"Redis connection lost: {e}")
                time.sleep(5)
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                time.sleep(5)

    def profile_for(self, job: dict) -> PipelineProfile:
        profile = PipelineProfile.from_settings(self.settings)
        if job.get("image_tag"):
            profile = replace(profile, image_tag=job["image_tag"])
        return profile

    def process_run(self, job: dict):
        """Run one pipeline job to READY or FAILED."""
        run_id = job["run_id"]
        receipt = run_pipeline(
            Path(job["source_dir"]),
            profile=self.profile_for(job),
            machine_id=job.get("machine_id") or self.settings.machine_id,
            output_root=self.settings.artifacts_path,
            run_id=run_id,
            stage_factory=self.stage_factory,
            http_client=self.http_client,
        )
        if receipt.error:
            logger.error(
                f"Run {run_id} FAILED in {receipt.error.step}: "
                f"[{receipt.error.kind}] retryable={receipt.error.retryable}"
            )
        else:
            logger.info(f"Run {run_id} READY: {receipt.image.ref if receipt.image else '?'}")
        return receipt


# =============================================================================
# Entry point
# =============================================================================

if __name__ == "__main__":
    worker = PipelineWorker(
        redis_host=os.getenv("REDIS_HOST", "redis"),
        redis_port=int(os.getenv("REDIS_PORT", "6379")),
    )
    worker.run()
