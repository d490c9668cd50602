import logging
import time
from typing import Dict, NamedTuple

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig

from .base_agent import emit_step, get_dependencies
from ..schemas import ConversationState, StepKind, make_step

logger = logging.getLogger(__name__)

KNOWLEDGE_BASE_MARKER = "KNOWLEDGE_BASE: YES"
WEB_SEARCH_MARKER = "WEB_SEARCH: YES"


class PlanDecision(NamedTuple):
    needs_knowledge_base: bool
    needs_web_search: bool


def parse_plan_decision(plan_text: str) -> PlanDecision:
    """
    Reads the retrieval decisions out of the planner's reply.

    Only the exact markers count: "KNOWLEDGE_BASE: YES" and "WEB_SEARCH: YES".
    Any other wording (lower case, "Yes", missing line) means no.
    """
    return PlanDecision(
        needs_knowledge_base=KNOWLEDGE_BASE_MARKER in plan_text,
        needs_web_search=WEB_SEARCH_MARKER in plan_text,
    )


async def plan_approach(state: ConversationState, config: RunnableConfig) -> Dict:
    """
    Second stage: decides which retrieval stages run.

    The request-level switches can turn a retrieval stage off but never on.
    """
    dependencies = get_dependencies(config)
    started_at = time.monotonic()

    previous_analysis = state["thinking_steps"][-1].content if state["thinking_steps"] else ""
    planning_prompt = f"""
    Based on the query analysis, create a plan for answering the user's question.

    User Query: "{state['user_query']}"
    Previous Analysis: {previous_analysis}

    Determine:
    1. Do we need to search the user's knowledge base? (YES/NO)
    2. Do we need to perform a web search for current information? (YES/NO)
    3. What's the best approach to structure the response?

    Respond with:
    KNOWLEDGE_BASE: YES/NO
    WEB_SEARCH: YES/NO
    APPROACH: [your reasoning approach]
    """

    plan_text = await dependencies.completion_client.complete([
        SystemMessage(content="You are a strategic planner. Make clear decisions about information needs."),
        HumanMessage(content=planning_prompt),
    ])
    decision = parse_plan_decision(plan_text)

    needs_knowledge_base = (
        decision.needs_knowledge_base
        and dependencies.knowledge_base_enabled
        and dependencies.knowledge_base is not None
    )
    needs_web_search = (
        decision.needs_web_search
        and dependencies.web_search_enabled
        and dependencies.web_search is not None
    )
    if decision != (needs_knowledge_base, needs_web_search):
        logger.info(
            f"Plan {tuple(decision)} narrowed by request settings to "
            f"({needs_knowledge_base}, {needs_web_search})"
        )

    step = make_step(StepKind.PLANNING, "Approach Planning", plan_text, started_at)
    await emit_step(dependencies, step)

    return {
        "current_step": "plan_approach",
        "thinking_steps": [step],
        "needs_knowledge_base": needs_knowledge_base,
        "needs_web_search": needs_web_search,
        "messages": [AIMessage(content=plan_text)],
    }
