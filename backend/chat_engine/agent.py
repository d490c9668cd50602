"""
Reasoning pipeline using LangGraph - main graph definition.

    analyze_query -> plan_approach -> [query_knowledge_base] -> [perform_web_search]
                  -> synthesize_information -> generate_response -> END
"""
import logging
from typing import List, Optional, Sequence

from langchain_core.messages import BaseMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import StateGraph, END

from .agents.analyzer import analyze_query
from .agents.base_agent import PipelineDependencies, StepObserver
from .agents.planner import plan_approach
from .agents.responder import generate_response
from .agents.retriever import perform_web_search, query_knowledge_base
from .agents.synthesizer import synthesize_information
from .config import settings
from .knowledge.base import KnowledgeBaseManager
from .models.completion_client import CompletionClient
from .schemas import ConversationState, PipelineResult, StepKind, ThinkingStep, create_initial_state
from .tools.web_search import WebSearchClient

logger = logging.getLogger(__name__)

LANGGRAPH_RECURSION_LIMIT = 15

# Step kinds in the order stages run; the two retrieval kinds are optional
STAGE_ORDER = [
    StepKind.ANALYSIS,
    StepKind.PLANNING,
    StepKind.KNOWLEDGE_QUERY,
    StepKind.WEB_SEARCH,
    StepKind.SYNTHESIS,
    StepKind.REASONING,
]
OPTIONAL_STAGES = {StepKind.KNOWLEDGE_QUERY, StepKind.WEB_SEARCH}


def validate_step_order(steps: Sequence[ThinkingStep], complete: bool = True) -> bool:
    """
    Checks a step trace against the pipeline: every required stage exactly
    once, optional stages at most once, all in stage order.

    With complete=False a prefix of a valid trace (a turn that failed part way) also passes.
    """
    position = 0
    for step in steps:
        # Skip optional stages that did not run
        while position < len(STAGE_ORDER) and STAGE_ORDER[position] != step.step_type:
            if STAGE_ORDER[position] not in OPTIONAL_STAGES:
                return False
            position += 1
        if position == len(STAGE_ORDER):
            return False
        position += 1

    if not complete:
        return True
    return all(kind in OPTIONAL_STAGES for kind in STAGE_ORDER[position:])


# --- Routing --- #

def route_after_planning(state: ConversationState) -> str:
    if state["needs_knowledge_base"]:
        return "query_knowledge_base"
    if state["needs_web_search"]:
        return "perform_web_search"
    return "synthesize_information"


def route_after_knowledge_base(state: ConversationState) -> str:
    if state["needs_web_search"]:
        return "perform_web_search"
    return "synthesize_information"


# --- Graph Definition --- #

def build_thinking_graph():
    workflow = StateGraph(ConversationState)

    workflow.add_node("analyze_query", analyze_query)
    workflow.add_node("plan_approach", plan_approach)
    workflow.add_node("query_knowledge_base", query_knowledge_base)
    workflow.add_node("perform_web_search", perform_web_search)
    workflow.add_node("synthesize_information", synthesize_information)
    workflow.add_node("generate_response", generate_response)

    workflow.set_entry_point("analyze_query")
    workflow.add_edge("analyze_query", "plan_approach")
    workflow.add_conditional_edges(
        "plan_approach",
        route_after_planning,
        {
            "query_knowledge_base": "query_knowledge_base",
            "perform_web_search": "perform_web_search",
            "synthesize_information": "synthesize_information",
        }
    )
    workflow.add_conditional_edges(
        "query_knowledge_base",
        route_after_knowledge_base,
        {
            "perform_web_search": "perform_web_search",
            "synthesize_information": "synthesize_information",
        }
    )
    workflow.add_edge("perform_web_search", "synthesize_information")
    workflow.add_edge("synthesize_information", "generate_response")
    workflow.add_edge("generate_response", END)

    return workflow.compile()


thinking_graph = build_thinking_graph()


class ThinkingPipeline:
    """
    Runs one turn through the graph. Holds only immutable collaborators, so a
    single instance can serve concurrent turns: each run gets its own state.
    """

    def __init__(
        self,
        completion_client: CompletionClient,
        knowledge_base: Optional[KnowledgeBaseManager] = None,
        web_search: Optional[WebSearchClient] = None,
        knowledge_query_limit: int = settings.KNOWLEDGE_QUERY_LIMIT,
    ):
        self.completion_client = completion_client
        self.knowledge_base = knowledge_base
        self.web_search = web_search
        self.knowledge_query_limit = knowledge_query_limit

    async def execute_thinking(
        self,
        user_query: str,
        user_id: str,
        chat_id: str,
        conversation_history: Optional[List[BaseMessage]] = None,
        on_step: Optional[StepObserver] = None,
        knowledge_base_enabled: bool = True,
        web_search_enabled: bool = True,
    ) -> PipelineResult:
        """
        Args:
            user_query: The message to answer.
            user_id: The caller (owner of the knowledge base consulted).
            chat_id: The conversation.
            conversation_history: Prior turns from the memory manager.
            on_step: Called with each step as its stage completes, in order.
            knowledge_base_enabled: False forbids the knowledge base stage.
            web_search_enabled: False forbids the web search stage.

        Returns:
            The final answer with the full step trace and retrieval results.

        Raises:
            CompletionError: from the analysis, planning, synthesis or response stage.
                Steps already handed to on_step stay with the caller.
        """
        dependencies = PipelineDependencies(
            completion_client=self.completion_client,
            knowledge_base=self.knowledge_base,
            web_search=self.web_search,
            on_step=on_step,
            knowledge_query_limit=self.knowledge_query_limit,
            knowledge_base_enabled=knowledge_base_enabled,
            web_search_enabled=web_search_enabled,
        )
        config: RunnableConfig = {
            "configurable": {"pipeline": dependencies},
            "recursion_limit": LANGGRAPH_RECURSION_LIMIT,
        }
        initial_state = create_initial_state(user_query, user_id, chat_id, conversation_history)

        logger.info(f"Starting thinking pipeline for chat {chat_id}")
        final_state = await thinking_graph.ainvoke(initial_state, config=config)
        logger.info(f"Thinking pipeline finished for chat {chat_id}: {len(final_state['thinking_steps'])} steps")

        return PipelineResult(
            response=final_state["final_response"],
            thinking_steps=final_state["thinking_steps"],
            knowledge_base_references=final_state["knowledge_base_references"],
            web_search_results=final_state["web_search_results"],
        )
