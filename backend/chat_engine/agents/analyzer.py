import logging
import time
from typing import Dict

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig

from .base_agent import emit_step, get_dependencies
from ..schemas import ConversationState, StepKind, make_step

logger = logging.getLogger(__name__)


async def analyze_query(state: ConversationState, config: RunnableConfig) -> Dict:
    """
    First stage: intent, complexity and information needs of the user's query.

    Returns:
        A state delta with the `analysis` step and the model's reply appended to messages.
    """
    dependencies = get_dependencies(config)
    started_at = time.monotonic()

    analysis_prompt = f"""
    Analyze the following user query and determine:
    1. The main intent and topic
    2. The complexity level (simple, moderate, complex)
    3. What type of information might be needed
    4. Whether it requires current/real-time information
    5. Whether it might benefit from domain-specific knowledge

    User Query: "{state['user_query']}"

    Provide your analysis in a structured format.
    """

    analysis = await dependencies.completion_client.complete([
        SystemMessage(content="You are an expert query analyzer. Provide clear, structured analysis."),
        HumanMessage(content=analysis_prompt),
    ])

    step = make_step(StepKind.ANALYSIS, "Query Analysis", analysis, started_at)
    await emit_step(dependencies, step)

    return {
        "current_step": "analyze_query",
        "thinking_steps": [step],
        "messages": [AIMessage(content=analysis)],
    }
