"""Upload finished archives to an S3-compatible object store."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import PublishConfig
from ..logging import get_logger


class PublishError(RuntimeError):
    """Raised when a finished archive cannot be handed to the object store."""


class Publisher:
    """Publishes archives under their canonical key; a no-op in simulation mode."""

    def __init__(
        self,
        config: PublishConfig,
        client: Any | None = None,
        client_factory: Callable[[PublishConfig], Any] | None = None,
    ) -> None:
        self.config = config
        self._client = client
        self._client_factory = client_factory or self._default_client
        self._client_lock = threading.Lock()
        self.logger = get_logger("publish")

    def key_for(self, file_name: str) -> str:
        prefix = self.config.key_prefix.strip("/")
        return f"{prefix}/{file_name}" if prefix else file_name

    def publish(self, local_path: Path, key: str) -> bool:
        """Upload ``local_path`` as ``key``. Returns False when nothing was uploaded."""
        if self.config.sim:
            self.logger.info("Simulation mode: skipping upload of %s as %s", local_path, key)
            return False

        try:
            client = self._get_client()
            client.upload_file(
                Filename=str(local_path),
                Bucket=self.config.bucket,
                Key=key,
            )
        except (BotoCoreError, ClientError) as exc:
            raise PublishError(f"Upload of {local_path} as {key} failed: {exc}") from exc
        except OSError as exc:
            raise PublishError(f"Cannot read {local_path} for upload: {exc}") from exc

        self.logger.info("Uploaded %s to s3://%s/%s", local_path, self.config.bucket, key)
        return True

    # ------------------------------------------------------------------
    # Helpers

    def _get_client(self) -> Any:
        # boto3 clients are thread-safe, creating them is not.
        with self._client_lock:
            if self._client is None:
                self._client = self._client_factory(self.config)
            return self._client

    @staticmethod
    def _default_client(config: PublishConfig) -> Any:
        return boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
        )


__all__ = ["PublishError", "Publisher"]
