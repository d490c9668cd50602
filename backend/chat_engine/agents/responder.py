import logging
import time
from typing import Dict

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig

from .base_agent import emit_step, get_dependencies
from ..schemas import ConversationState, StepKind, make_step

logger = logging.getLogger(__name__)

RESPONSE_STEP_CONTENT = "Generated final response based on synthesized information."


async def generate_response(state: ConversationState, config: RunnableConfig) -> Dict:
    """
    Final stage: writes the answer from the synthesis, with the prior
    conversation turns in front so follow-up questions keep their context.
    """
    dependencies = get_dependencies(config)
    started_at = time.monotonic()

    synthesis = next(
        (step.content for step in reversed(state["thinking_steps"]) if step.step_type == StepKind.SYNTHESIS),
        "",
    )
    response_prompt = f"""
    Generate a comprehensive, helpful response to the user's query based on all the analysis and information gathered.

    User Query: "{state['user_query']}"

    Synthesis: {synthesis}

    Create a response that:
    1. Directly addresses the user's question
    2. Is well-structured and easy to understand
    3. Cites sources when appropriate
    4. Acknowledges limitations if any exist
    5. Is helpful and actionable
    """

    final_response = await dependencies.completion_client.complete([
        SystemMessage(content="You are a helpful AI assistant. Provide clear, accurate, and useful responses."),
        *state["conversation_history"],
        HumanMessage(content=response_prompt),
    ])

    step = make_step(StepKind.REASONING, "Response Generation", RESPONSE_STEP_CONTENT, started_at)
    await emit_step(dependencies, step)

    return {
        "current_step": "generate_response",
        "thinking_steps": [step],
        "final_response": final_response,
        "messages": [AIMessage(content=final_response)],
    }
