"""
Stage 4: Script Composition - LangGraph Orchestrator

Multi-node workflow that turns rank-ordered summaries into the episode script:
- DuoScript: drafts the two-host dialogue, title, description and show notes
- Moderation: rewrites flagged lines (dropping those that stay flagged) and
  checks title/description
- Finalize: merges same-speaker runs so hosts alternate, assigns dense indices
"""

import logging
from typing import Any, Dict, List, Optional, TypedDict

from langgraph.graph import StateGraph, END

from config import settings
from script_writer_agent.duo_script import draft_script, index_segments, merge_same_speaker
from script_writer_agent.moderation import ModerationGate
from workflow.errors import REASON_EMPTY_SCRIPT, WholeRunError
from workflow.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ScriptWriterState(TypedDict):
    """State for the script composition workflow."""
    date: str
    entries: List[Dict[str, Any]]
    draft: Optional[Dict[str, Any]]
    lines: List[Dict[str, Any]]
    title: str
    description: str
    long_form: str
    segments: List[Dict[str, Any]]


class ScriptComposer:

    def __init__(self, client, moderation: ModerationGate, policy: RetryPolicy, *, model: str = settings.OPENAI_MODEL):
        self.client = client
        self.moderation = moderation
        self.policy = policy
        self.model = model
        self.app = self._build_workflow()

    def _build_workflow(self):
        graph = StateGraph(ScriptWriterState)

        graph.add_node("duo_script", self._node_draft)
        graph.add_node("moderation", self._node_moderate)
        graph.add_node("finalize", self._node_finalize)

        graph.set_entry_point("duo_script")
        graph.add_edge("duo_script", "moderation")
        graph.add_edge("moderation", "finalize")
        graph.add_edge("finalize", END)

        return graph.compile()

    async def compose(self, date: str, entries: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Compose the episode script.

        Args:
            date: Episode date key
            entries: [{'item': Item, 'summary': Summary | None}] in rank order

        Returns:
            Dict with title, description, long_form, segments

        Raises:
            WholeRunError: nothing left to say after moderation
        """
        logger.info(f"[script_writer] ===== COMPOSING SCRIPT ({len(entries)} items) =====")
        initial_state: ScriptWriterState = {
            "date": date,
            "entries": entries,
            "draft": None,
            "lines": [],
            "title": "",
            "description": "",
            "long_form": "",
            "segments": [],
        }
        result = await self.app.ainvoke(initial_state)

        if not result["segments"]:
            raise WholeRunError("Composed script is empty", reason=REASON_EMPTY_SCRIPT)

        logger.info(f"[script_writer] Script complete: {len(result['segments'])} segments, '{result['title']}'")
        return {
            "title": result["title"],
            "description": result["description"],
            "long_form": result["long_form"],
            "segments": result["segments"],
        }

    async def _node_draft(self, state: ScriptWriterState) -> ScriptWriterState:
        draft = await draft_script(
            self.client,
            self.policy,
            state["entries"],
            date=state["date"],
            model=self.model,
        )
        state["draft"] = draft
        state["lines"] = draft["lines"]
        return state

    async def _node_moderate(self, state: ScriptWriterState) -> ScriptWriterState:
        draft = state["draft"]
        state["lines"] = await self.moderation.clean_lines(state["lines"])

        default_title = f"{settings.SCRIPT_DEFAULT_TITLE}: {state['date']}"
        state["title"] = await self.moderation.clean(draft["title"]) or default_title
        state["description"] = await self.moderation.clean(draft["description"]) or default_title
        long_form = draft.get("long_form") or ""
        state["long_form"] = (await self.moderation.clean(long_form) or "") if long_form else ""
        return state

    async def _node_finalize(self, state: ScriptWriterState) -> ScriptWriterState:
        state["segments"] = index_segments(merge_same_speaker(state["lines"]))
        return state
