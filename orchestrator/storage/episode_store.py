"""
Stage 7: Publish

An episode is one logical record spread over two physical stores: the audio
object under "<date>.<ext>" and the metadata record under "<date>". The
object is written first; metadata is written only after the object write is
confirmed, so readers never see a metadata record pointing at missing audio.
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import List, Optional

from config import settings
from storage.backends import (
    LocalMetadataStore,
    LocalObjectStore,
    MetadataStore,
    ObjectStore,
    S3MetadataStore,
    S3ObjectStore,
    build_s3_client,
)
from workflow.errors import PipelineError, PublishError
from workflow.models import Episode
from workflow.retry import RetryPolicy

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    'mp3': 'audio/mpeg',
    'wav': 'audio/wav',
    'opus': 'audio/ogg',
    'aac': 'audio/aac',
    'flac': 'audio/flac',
}

# Fields that define an episode's content; a republish with identical values is skipped.
CONTENT_FIELDS = ('title', 'description', 'long_form', 'segments', 'items', 'audio_sha256')


def content_hash(audio: bytes) -> str:
    return hashlib.sha256(audio).hexdigest()


class EpisodeStore:

    def __init__(
        self,
        objects: ObjectStore,
        metadata: MetadataStore,
        policy: RetryPolicy,
        audio_format: str = settings.AUDIO_FORMAT,
    ):
        self.objects = objects
        self.metadata = metadata
        self.policy = policy
        self.audio_format = audio_format

    @classmethod
    def from_settings(cls, policy: RetryPolicy) -> 'EpisodeStore':
        if settings.STORE_BACKEND == 's3':
            client = build_s3_client(settings.S3_ENDPOINT_URL, settings.S3_REGION)
            return cls(
                S3ObjectStore(client, settings.S3_BUCKET, settings.S3_AUDIO_PREFIX),
                S3MetadataStore(client, settings.S3_BUCKET, settings.S3_METADATA_PREFIX),
                policy,
            )
        return cls(
            LocalObjectStore(f"{settings.LOCAL_STORE_DIR}/audio"),
            LocalMetadataStore(f"{settings.LOCAL_STORE_DIR}/metadata"),
            policy,
        )

    def audio_key(self, date: str) -> str:
        return f"{date}.{self.audio_format}"

    async def publish(self, episode: Episode, audio: bytes) -> Episode:
        """
        Publish audio + metadata for episode['date'].

        Returns:
            The stored metadata record

        Raises:
            PublishError: a store step ran out of retries; when the object
                write failed nothing was published
        """
        date = episode['date']
        key = self.audio_key(date)
        sha256 = content_hash(audio)

        try:
            existing = await self.policy.call(lambda: self.metadata.get(date), label=f"publish {date} (read)")
        except PipelineError as e:
            raise PublishError(f"Metadata store unavailable for {date}: {e}") from e

        record: Episode = {
            **episode,
            'audio_key': key,
            'audio_sha256': sha256,
            'status': 'published',
        }
        if existing and existing.get('status') == 'published' and all(
            existing.get(field) == record.get(field) for field in CONTENT_FIELDS
        ):
            logger.info(f"[episode_store] {date} already published with identical content, skipping")
            return existing

        if await self._object_matches(key, sha256):
            logger.info(f"[episode_store] {key} already stored, skipping audio write")
        else:
            try:
                await self.policy.call(
                    lambda: self.objects.put(key, audio, CONTENT_TYPES.get(self.audio_format, 'application/octet-stream')),
                    label=f"publish {key}",
                )
            except PipelineError as e:
                raise PublishError(f"Audio write failed for {date}: {e}") from e
            logger.info(f"[episode_store] Stored {key} ({len(audio)} bytes)")

        record['published_at'] = datetime.now(timezone.utc).isoformat()
        try:
            await self.policy.call(lambda: self.metadata.put(date, record), label=f"publish {date} (metadata)")
        except PipelineError as e:
            raise PublishError(f"Metadata write failed for {date}: {e}") from e

        if existing and existing.get('status') == 'published':
            logger.info(f"[episode_store] Republished {date} (corrective)")
        else:
            logger.info(f"[episode_store] Published {date}")
        return record

    async def _object_matches(self, key: str, sha256: str) -> bool:
        try:
            stored = await self.policy.call(lambda: self.objects.get(key), label=f"publish {key} (read)")
        except PipelineError as e:
            logger.warning(f"[episode_store] Could not read back {key}: {e}")
            return False
        return stored is not None and content_hash(stored) == sha256

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get(self, date: str) -> Optional[Episode]:
        record = await self.metadata.get(date)
        if record is None or record.get('status') != 'published':
            return None
        return record

    async def list(self) -> List[Episode]:
        episodes = []
        for date in await self.metadata.list_keys():
            record = await self.get(date)
            if record is not None:
                episodes.append(record)
        return episodes

    async def get_audio(self, date: str) -> Optional[bytes]:
        record = await self.get(date)
        if record is None:
            return None
        return await self.objects.get(record['audio_key'])
