"""
Storage backends for the episode store.

Two physical stores:
- Object store: binary audio, keyed "<date>.<ext>"
- Metadata store: one fixed-schema JSON record per date, keyed "<date>"

Each has a local-filesystem implementation and an S3-compatible one
(AWS S3, Cloudflare R2, MinIO) built on boto3. boto3 calls are blocking,
so they run in a worker thread.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from workflow.errors import (
    REASON_PUBLISH_EXHAUSTED,
    PermanentUnitError,
    TransientRemoteError,
    is_transient_status,
)

logger = logging.getLogger(__name__)


def _classify_boto_error(e: Exception) -> Exception:
    if isinstance(e, ClientError):
        status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        if is_transient_status(status) or e.response.get('Error', {}).get('Code') in ('SlowDown', 'RequestTimeout'):
            return TransientRemoteError(f"S3 {status}: {e}")
        return PermanentUnitError(f"S3 {status}: {e}", reason=REASON_PUBLISH_EXHAUSTED)
    if isinstance(e, (EndpointConnectionError, BotoCoreError)):
        return TransientRemoteError(f"S3 connection error: {e}")
    return e


def _atomic_write(path: str, data: bytes) -> None:
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, 'wb') as f:
        f.write(data)
    os.replace(tmp_path, path)


# ============================================================================
# Object store
# ============================================================================

class ObjectStore(ABC):

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> None:
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        pass


class LocalObjectStore(ObjectStore):

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        _atomic_write(os.path.join(self.base_dir, key), data)

    async def get(self, key: str) -> Optional[bytes]:
        path = os.path.join(self.base_dir, key)
        if not os.path.exists(path):
            return None
        with open(path, 'rb') as f:
            return f.read()


class S3ObjectStore(ObjectStore):

    def __init__(self, client, bucket: str, prefix: str = ''):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket, Key=self.prefix + key, Body=data, ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise _classify_boto_error(e) from e

    async def get(self, key: str) -> Optional[bytes]:
        try:
            response = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=self.prefix + key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('NoSuchKey', '404'):
                return None
            raise _classify_boto_error(e) from e
        except BotoCoreError as e:
            raise _classify_boto_error(e) from e
        return await asyncio.to_thread(response['Body'].read)


# ============================================================================
# Metadata store
# ============================================================================

class MetadataStore(ABC):

    @abstractmethod
    async def put(self, key: str, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_keys(self) -> List[str]:
        pass


class LocalMetadataStore(MetadataStore):

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    async def put(self, key: str, record: Dict[str, Any]) -> None:
        data = json.dumps(record, indent=2, ensure_ascii=False).encode('utf-8')
        _atomic_write(os.path.join(self.base_dir, f"{key}.json"), data)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = os.path.join(self.base_dir, f"{key}.json")
        if not os.path.exists(path):
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    async def list_keys(self) -> List[str]:
        if not os.path.isdir(self.base_dir):
            return []
        return sorted(name[:-5] for name in os.listdir(self.base_dir) if name.endswith('.json'))


class S3MetadataStore(MetadataStore):

    def __init__(self, client, bucket: str, prefix: str = 'metadata/'):
        self.objects = S3ObjectStore(client, bucket, prefix)
        self.client = client
        self.bucket = bucket
        self.prefix = prefix

    async def put(self, key: str, record: Dict[str, Any]) -> None:
        data = json.dumps(record, ensure_ascii=False).encode('utf-8')
        await self.objects.put(f"{key}.json", data, 'application/json')

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        data = await self.objects.get(f"{key}.json")
        return json.loads(data) if data is not None else None

    async def list_keys(self) -> List[str]:
        def _list() -> List[str]:
            keys = []
            paginator = self.client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(self.prefix):]
                    if name.endswith('.json'):
                        keys.append(name[:-5])
            return sorted(keys)

        try:
            return await asyncio.to_thread(_list)
        except (ClientError, BotoCoreError) as e:
            raise _classify_boto_error(e) from e


def build_s3_client(endpoint_url: Optional[str], region: str):
    """Credentials come from the standard AWS_* environment variables."""
    return boto3.client('s3', endpoint_url=endpoint_url, region_name=region)
