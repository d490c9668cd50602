import logging
import time
from typing import Dict, List

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig

from .base_agent import emit_step, get_dependencies
from ..memory.compression import compress_text_to_fit_context
from ..schemas import ConversationState, KnowledgeBaseReference, StepKind, WebSearchResult, make_step

logger = logging.getLogger(__name__)


def format_sources(
    references: List[KnowledgeBaseReference], web_results: List[WebSearchResult]
) -> str:
    """Knowledge base and web sections of the synthesis prompt (empty sections omitted)."""
    sections = []
    if references:
        lines = "\n".join(f"- {ref.document_title}: {ref.excerpt}" for ref in references)
        sections.append(f"Knowledge Base References:\n{lines}")
    if web_results:
        lines = "\n".join(f"- {result.title}: {result.snippet}" for result in web_results)
        sections.append(f"Web Search Results:\n{lines}")
    return "\n\n".join(sections)


async def synthesize_information(state: ConversationState, config: RunnableConfig) -> Dict:
    dependencies = get_dependencies(config)
    started_at = time.monotonic()

    sources = format_sources(state["knowledge_base_references"], state["web_search_results"])
    sources = compress_text_to_fit_context(sources, dependencies.completion_client.model)

    synthesis_prompt = f"""
    Synthesize information from multiple sources to prepare a comprehensive response.

    User Query: "{state['user_query']}"

    Available Information:
    {sources}

    Create a synthesis that:
    1. Identifies key themes and insights
    2. Resolves any conflicts between sources
    3. Highlights the most relevant information
    4. Notes any gaps that still exist
    """

    synthesis = await dependencies.completion_client.complete([
        SystemMessage(content="You are an expert information synthesizer. Create clear, coherent summaries."),
        HumanMessage(content=synthesis_prompt),
    ])

    step = make_step(StepKind.SYNTHESIS, "Information Synthesis", synthesis, started_at)
    await emit_step(dependencies, step)

    return {
        "current_step": "synthesize_information",
        "thinking_steps": [step],
        "messages": [AIMessage(content=synthesis)],
    }
