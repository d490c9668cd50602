"""
Retrieval stages. Both are optional and never fatal: a failing knowledge base
or search provider produces an explanatory step and an empty result list.
"""
import logging
import time
from typing import Dict

from langchain_core.runnables import RunnableConfig

from .base_agent import emit_step, get_dependencies
from ..schemas import ConversationState, StepKind, make_step

logger = logging.getLogger(__name__)


async def query_knowledge_base(state: ConversationState, config: RunnableConfig) -> Dict:
    dependencies = get_dependencies(config)
    started_at = time.monotonic()

    try:
        references = await dependencies.knowledge_base.find_relevant_references(
            state["user_query"], dependencies.knowledge_query_limit
        )
        listing = "\n".join(f"- {ref.document_title}" for ref in references)
        content = f"Found {len(references)} relevant documents in knowledge base:\n{listing}"
    except Exception as e:
        logger.exception("Knowledge base query failed")
        references = []
        content = f"Error querying knowledge base: {e}"

    step = make_step(StepKind.KNOWLEDGE_QUERY, "Knowledge Base Search", content, started_at)
    await emit_step(dependencies, step)

    return {
        "current_step": "query_knowledge_base",
        "thinking_steps": [step],
        "knowledge_base_references": references,
    }


async def perform_web_search(state: ConversationState, config: RunnableConfig) -> Dict:
    dependencies = get_dependencies(config)
    started_at = time.monotonic()

    try:
        search = await dependencies.web_search.search(state["user_query"])
        results = search.results
        if search.search_performed:
            content = f"Found {len(results)} web search results for current information."
        else:
            content = "Web search skipped: the query does not call for current information."
    except Exception as e:
        logger.exception("Web search failed")
        results = []
        content = f"Error performing web search: {e}"

    step = make_step(StepKind.WEB_SEARCH, "Web Search", content, started_at)
    await emit_step(dependencies, step)

    return {
        "current_step": "perform_web_search",
        "thinking_steps": [step],
        "web_search_results": results,
    }
