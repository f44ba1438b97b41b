from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from db_backup.job_engine import UploadFailure

LOG = logging.getLogger(__name__)

# One attempt per upload; botocore would otherwise retry transient errors.
SINGLE_ATTEMPT = Config(retries={"total_max_attempts": 1, "mode": "standard"})


class S3Uploader:
    """Streams archives into an S3 or S3-compatible bucket."""

    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self._bucket = bucket
        self._client = client if client is not None else self._build_client(region, endpoint)

    @staticmethod
    def _build_client(region: str, endpoint: Optional[str]) -> Any:
        options: Dict[str, Any] = {"region_name": region, "config": SINGLE_ATTEMPT}
        if endpoint:
            LOG.info("Using custom endpoint: %s", endpoint)
            options["endpoint_url"] = endpoint
        return boto3.client("s3", **options)

    def upload(self, local_path: Path, remote_key: str) -> None:
        LOG.info("Uploading backup %s to S3...", local_path)
        try:
            with local_path.open("rb") as body:
                self._client.put_object(Bucket=self._bucket, Key=remote_key, Body=body)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            raise UploadFailure(
                f"{error.get('Code', 'ClientError')}: {error.get('Message', exc)}"
            ) from exc
        except (BotoCoreError, OSError) as exc:
            raise UploadFailure(str(exc)) from exc

        LOG.info("Backup %s uploaded to S3...", remote_key)
