"""
Collaborators of the workflow, built from settings.

Tests and alternative deployments pass overrides instead of real clients:

    deps = default_deps(synthesizer=FakeSynthesizer(), store=InMemoryStore())
"""

from dataclasses import dataclass
from typing import Any

from config import settings
from workflow.retry import RetryPolicy


@dataclass
class WorkflowDeps:
    source: Any
    extractor: Any
    summarizer: Any
    composer: Any
    synthesizer: Any
    assembler: Any
    store: Any


def default_deps(**overrides) -> WorkflowDeps:
    """
    Build the default collaborators. Overrides: source=..., extractor=...,
    summarizer=..., composer=..., synthesizer=..., assembler=..., store=...
    Only collaborators that are not overridden are constructed.
    """
    from openai import AsyncOpenAI

    from agents.collector import SourceFetcher
    from agents.fulltext_enricher import ContentExtractor
    from agents.script_writer import ScriptComposer
    from agents.summarizer import Summarizer
    from script_writer_agent.moderation import ModerationGate
    from storage.episode_store import EpisodeStore
    from synthesis.assembler import AssemblerClient
    from synthesis.synthesizer import Synthesizer
    from synthesis.tts_backends import build_backends

    base_policy = RetryPolicy.from_settings()
    client = None
    moderation = None

    def openai_client():
        nonlocal client
        if client is None:
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY or None, timeout=settings.LLM_TIMEOUT_SEC, max_retries=0)
        return client

    def moderation_gate():
        nonlocal moderation
        if moderation is None:
            moderation = ModerationGate(
                openai_client(),
                base_policy.with_timeout(settings.LLM_TIMEOUT_SEC),
                enabled=settings.MODERATION_ENABLED,
                blocklist=settings.MODERATION_BLOCKLIST,
            )
        return moderation

    builders = {
        'source': lambda: SourceFetcher(),
        'extractor': lambda: ContentExtractor.from_settings(
            base_policy.with_timeout(settings.EXTRACT_HTTP_TIMEOUT_SEC * 2)
        ),
        'summarizer': lambda: Summarizer(
            openai_client(),
            moderation_gate(),
            base_policy.with_timeout(settings.LLM_TIMEOUT_SEC),
        ),
        'composer': lambda: ScriptComposer(
            openai_client(),
            moderation_gate(),
            base_policy.with_timeout(settings.LLM_TIMEOUT_SEC * 2),
        ),
        'synthesizer': lambda: Synthesizer(
            build_backends(
                settings.TTS_BACKENDS,
                openai_client() if 'openai' in settings.TTS_BACKENDS else None,
            ),
            base_policy.with_timeout(settings.TTS_TIMEOUT_SEC),
        ),
        'assembler': lambda: AssemblerClient(),
        'store': lambda: EpisodeStore.from_settings(base_policy),
    }
    unknown = set(overrides) - set(builders)
    if unknown:
        raise TypeError(f"Unknown workflow collaborators: {sorted(unknown)}")

    built = {name: overrides[name] if name in overrides else build() for name, build in builders.items()}
    return WorkflowDeps(**built)
