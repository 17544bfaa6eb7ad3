"""Tool declarations and dispatch for live-session function calls.

Every call gets a response.  Retrieval failures, timeouts and unknown tool
names all turn into sentinel results so the backend never waits on a tool
reply that does not come.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from google.genai import types

from kiosk_relay.models import KnowledgeHit, ToolCall, ToolCallEntry

logger = logging.getLogger(__name__)

NO_INFORMATION = "No information found."
NO_RELEVANT_INFORMATION = "No relevant information found in the knowledge base."
NO_PRODUCTS = "No products found in database."
PRODUCT_LIST_FAILED = "Failed to retrieve product list."
PASSAGE_DELIMITER = "\n\n---\n\n"

PRODUCT_NAMES = [
    "Meet in touch",
    "Co Desk",
    "Visitar",
    "Smart Locker",
    "W+ app",
    "Meeting pod",
    "Access Control",
]


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

_DECLARATIONS: dict[str, dict[str, Any]] = {
    "search_knowledge": {
        "description": "Search for information about Exzy co.ltd products.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "query": {"type": "STRING", "description": "The search query."},
                "source": {
                    "type": "STRING",
                    "description": (
                        "Optional: Filter by specific source file if known "
                        "(e.g., 'Visitar - Visitor Management System.pdf')."
                    ),
                },
            },
            "required": ["query"],
        },
    },
    "list_products": {
        "description": "List all available products from the knowledge base.",
        "parameters": {"type": "OBJECT", "properties": {}},
    },
    "return_user_text": {
        "description": "Returns the text that the user said. Use this to confirm what you heard.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "text": {"type": "STRING", "description": "The text spoken by the user."},
            },
            "required": ["text"],
        },
    },
    "product_card": {
        "description": "Show card Carousel.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "action": {
                    "type": "STRING",
                    "description": 'Action to perform on the product card (e.g., "show", "hide").',
                },
            },
            "required": ["action"],
        },
    },
    "show_product": {
        "description": "Show a specific product card (e.g., Meet in touch, Co Desk).",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "product": {
                    "type": "STRING",
                    "description": "The name of the product to show.",
                    "enum": PRODUCT_NAMES,
                },
            },
            "required": ["product"],
        },
    },
    "WebCam_Control": {
        "description": "Control the webcam device.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "action": {
                    "type": "STRING",
                    "description": 'Action to perform on the webcam (e.g., "cam-start", "cam-stop").',
                },
            },
            "required": ["action"],
        },
    },
    "Game_Control": {
        "description": "Control the game device.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "action": {
                    "type": "STRING",
                    "description": 'Action to perform on the game (e.g., "tapgame-start", "tapgame-stop").',
                },
            },
            "required": ["action"],
        },
    },
}


def declarations_for(names: Iterable[str]) -> list[types.FunctionDeclaration]:
    """Function declarations for the named tools, in the given order."""
    declarations = []
    for name in names:
        schema = _DECLARATIONS.get(name)
        if schema is None:
            logger.warning("No declaration for tool %r, not offering it", name)
            continue
        declarations.append(types.FunctionDeclaration(name=name, **schema))
    return declarations


# ---------------------------------------------------------------------------
# Function-call log
# ---------------------------------------------------------------------------

class FunctionCallLog:
    """Bounded append-only log of dispatched calls (oldest evicted first)."""

    def __init__(self, maxlen: int = 500) -> None:
        self._entries: deque[ToolCallEntry] = deque(maxlen=maxlen)

    def append(self, entry: ToolCallEntry) -> None:
        self._entries.append(entry)

    def snapshot(self) -> list[ToolCallEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class KnowledgeSource(Protocol):
    def search(
        self, query: str, n_results: int = ..., filter_source: Optional[str] = ...
    ) -> list[KnowledgeHit]: ...

    def list_sources(self) -> list[str]: ...


ToolHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

SIGNAL_TOOLS = ("return_user_text", "product_card", "show_product", "WebCam_Control", "Game_Control")


class ToolDispatcher:
    """Executes backend tool calls by name.

    Parameters
    ----------
    knowledge : KnowledgeSource
        Retrieval collaborator (``search`` and ``list_sources``).  Its calls
        are blocking and run in the default executor.
    top_k : int
        Passages requested per search.
    min_score : float
        Passages scoring below this are dropped.
    excluded_sources : iterable of str
        Sources that are not products.
    timeout : float
        Upper bound in seconds for any single tool.
    """

    def __init__(
        self,
        knowledge: KnowledgeSource,
        top_k: int = 15,
        min_score: float = 0.5,
        excluded_sources: Iterable[str] = (),
        timeout: float = 8.0,
    ) -> None:
        self.knowledge = knowledge
        self.top_k = top_k
        self.min_score = min_score
        self.excluded_sources = set(excluded_sources)
        self.timeout = timeout
        self._handlers: dict[str, ToolHandler] = {
            "search_knowledge": self._search_knowledge,
            "list_products": self._list_products,
        }
        for name in SIGNAL_TOOLS:
            self._handlers[name] = _echo_args

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, call: ToolCall) -> ToolCallEntry:
        """Run ``call`` and return its log entry. Never raises."""
        handler = self._handlers.get(call.name)
        if handler is None:
            logger.warning("Unknown tool %r requested (id=%s)", call.name, call.id)
            response = {**call.args, "result": NO_INFORMATION}
        else:
            try:
                response = await asyncio.wait_for(handler(call.args), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning("Tool %s timed out after %.1fs", call.name, self.timeout)
                response = {"result": NO_INFORMATION}
            except Exception:
                logger.exception("Tool %s failed", call.name)
                response = {"result": NO_INFORMATION}

        logger.info("[function_response] id=%s name=%s", call.id or "n/a", call.name)
        return ToolCallEntry(id=call.id, name=call.name, args=call.args, response=response)

    # -- handlers -----------------------------------------------------------

    async def _search_knowledge(self, args: dict[str, Any]) -> dict[str, Any]:
        query = str(args.get("query") or "").strip()
        if not query:
            return {"result": NO_INFORMATION}
        source = args.get("source") or None

        loop = asyncio.get_running_loop()
        hits = await loop.run_in_executor(
            None, lambda: self.knowledge.search(query, n_results=self.top_k, filter_source=source)
        )
        relevant = [h for h in hits if h.score >= self.min_score]
        logger.info(
            "search_knowledge query=%r source=%s hits=%d relevant=%d",
            query, source, len(hits), len(relevant),
        )
        if not hits:
            return {"result": NO_INFORMATION}
        if not relevant:
            return {"result": NO_RELEVANT_INFORMATION}
        return {"result": PASSAGE_DELIMITER.join(h.to_passage() for h in relevant)}

    async def _list_products(self, args: dict[str, Any]) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        try:
            sources = await loop.run_in_executor(None, self.knowledge.list_sources)
        except Exception:
            logger.exception("Listing products failed")
            return {"result": PRODUCT_LIST_FAILED}

        products = [s for s in sources if s not in self.excluded_sources]
        if not products:
            return {"result": NO_PRODUCTS}
        return {"result": "Available Products:\n- " + "\n- ".join(products)}


async def _echo_args(args: dict[str, Any]) -> dict[str, Any]:
    # UI signalling tools: the response is the request.
    return dict(args)
