"""Assistant-driven search: a bounded tool-calling loop over ``search_web``.

The model plans its own queries, calls ``search_web`` as often as it needs
(up to ``max_iterations`` rounds), then answers with a ``discoveries`` JSON
object. The answer goes through the same candidate parsing and source
validation as newsletter content.
"""

from __future__ import annotations

import json
from typing import Any

from tracker.db.models import Project
from tracker.discovery.transformer import DiscoveryCandidate, DiscoveryTransformer
from tracker.errors import BackendError
from tracker.llm.client import LLMClient
from tracker.log import get_logger
from tracker.search.web import WebSearch

logger = get_logger(__name__)

SEARCH_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "search_web",
        "description": "Search the web and return a list of results (title, url, snippet).",
        "parameters": {
            "type": "object",
            "properties": {"query": {"type": "string", "description": "Search query"}},
            "required": ["query"],
        },
    },
}

_SYSTEM = (
    "You are an assistant that tracks developments in {domain} for a project with the "
    "goals: {goals}. Use the search_web tool to find relevant tools, research, news and "
    "articles. When you are done, reply with JSON only:\n"
    '{{"discoveries": [{{"title": "...", "description": "...", "source": "<URL from a search '
    'result>", "relevanceScore": <1-10>, "type": "Article|Discussion|News|Research|Tool|Other", '
    '"categories": ["..."], "why": "relevance to the goals"}}]}}'
)


def _tool_call_dict(call: Any) -> dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.function.name, "arguments": call.function.arguments},
    }


class AssistantSearch:
    """Runs the tool loop for one project and query.

    Args:
        llm: Client that supports tool calls.
        web: Provider backing the ``search_web`` tool.
        transformer: Parses and validates the final answer.
        max_iterations: Upper bound on model rounds.
    """

    def __init__(
        self,
        llm: LLMClient,
        web: WebSearch,
        transformer: DiscoveryTransformer,
        max_iterations: int = 5,
    ) -> None:
        self._llm = llm
        self._web = web
        self._transformer = transformer
        self.max_iterations = max_iterations

    def run(self, project: Project, query: str) -> list[DiscoveryCandidate]:
        """Return validated candidates for *query*.

        Raises:
            BackendError: A model call failed, or no final answer arrived
                within ``max_iterations`` rounds.
        """
        messages: list[dict[str, Any]] = [
            {
                "role": "system",
                "content": _SYSTEM.format(
                    domain=project.domain or "the project's field",
                    goals=", ".join(project.goals) or "(none given)",
                ),
            },
            {
                "role": "user",
                "content": (
                    f"Search for advancements in {project.domain} related to: {query}. "
                    f"Project interests: {', '.join(project.interests)}."
                ),
            },
        ]

        for round_no in range(1, self.max_iterations + 1):
            message = self._llm.chat(messages, tools=[SEARCH_TOOL])
            calls = getattr(message, "tool_calls", None) or []
            if not calls:
                candidates = self._transformer.parse_candidates(message.content or "")
                logger.info(
                    "Assistant search %r finished after %d round(s): %d candidates",
                    query,
                    round_no,
                    len(candidates),
                )
                return self._transformer.validate_candidates(candidates)

            messages.append(
                {
                    "role": "assistant",
                    "content": message.content or "",
                    "tool_calls": [_tool_call_dict(c) for c in calls],
                }
            )
            for call in calls:
                messages.append(
                    {"role": "tool", "tool_call_id": call.id, "content": self._run_tool(call)}
                )

        raise BackendError(f"Assistant search gave no answer within {self.max_iterations} rounds")

    def _run_tool(self, call: Any) -> str:
        """Execute one tool call; errors go back to the model as tool output."""
        if call.function.name != "search_web":
            return json.dumps({"error": f"unknown tool {call.function.name}"})
        try:
            args = json.loads(call.function.arguments or "{}")
            query = str(args["query"])
        except (json.JSONDecodeError, KeyError, TypeError):
            return json.dumps({"error": "search_web needs a 'query' string"})
        try:
            results = self._web.search(query)
        except Exception as exc:  # any provider failure goes back to the model
            logger.warning("search_web(%r) failed: %s", query, exc)
            return json.dumps({"error": str(exc)})
        return json.dumps(
            [{"title": r.title, "url": r.url, "snippet": r.description} for r in results]
        )
