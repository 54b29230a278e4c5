"""
Storage package for published episodes.

Provides:
- Object and metadata store backends, local and S3-compatible (backends)
- Publish-atomic episode persistence and read access (episode_store)
"""

from .episode_store import EpisodeStore

__all__ = ['EpisodeStore']
