"""
Podcast Script Writer - building blocks

Helpers used by agents.script_writer to turn summaries into a two-speaker script.

Modules:
- schemas: pydantic shapes for the drafted script and per-line rewrites
- duo_script: brief building, prompts, same-speaker merging and dense indexing
- moderation: moderation gate with bounded rewrites and a local blocklist
"""
