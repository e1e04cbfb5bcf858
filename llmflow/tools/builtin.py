"""Tools shipped with the runtime, referenced from agent definitions as `llmflow.tools.builtin:<name>`."""

from __future__ import annotations

from typing import Any, Dict

from llmflow.context import ToolContext


async def load_memory(query: str, tool_context: ToolContext) -> Dict[str, Any]:
    """Search past conversations with this user for anything relevant to the query."""
    entries = await tool_context.search_memory(query)
    return {
        "memories": [
            {
                "author": entry.author,
                "text": "".join(p.text or "" for p in entry.content.parts),
            }
            for entry in entries
        ]
    }
