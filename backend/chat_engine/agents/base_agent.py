import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from langchain_core.runnables import RunnableConfig

from ..config import settings
from ..knowledge.base import KnowledgeBaseManager
from ..models.completion_client import CompletionClient
from ..schemas import ThinkingStep
from ..tools.web_search import WebSearchClient

logger = logging.getLogger(__name__)

StepObserver = Callable[[ThinkingStep], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class PipelineDependencies:
    """
    Collaborators for one pipeline run, passed to every stage through
    config["configurable"]["pipeline"].

    The enabled flags come from the request and can only switch a retrieval
    stage off; the planner still decides whether it is needed.
    """
    completion_client: CompletionClient
    knowledge_base: Optional[KnowledgeBaseManager] = None
    web_search: Optional[WebSearchClient] = None
    on_step: Optional[StepObserver] = None
    knowledge_query_limit: int = settings.KNOWLEDGE_QUERY_LIMIT
    knowledge_base_enabled: bool = True
    web_search_enabled: bool = True


def get_dependencies(config: RunnableConfig) -> PipelineDependencies:
    dependencies: Any = (config or {}).get("configurable", {}).get("pipeline")
    if not isinstance(dependencies, PipelineDependencies):
        raise RuntimeError("Pipeline stage invoked without PipelineDependencies in config['configurable']['pipeline']")
    return dependencies


async def emit_step(dependencies: PipelineDependencies, step: ThinkingStep) -> None:
    """Hands a completed step to the observer before the next stage starts."""
    logger.info(f"Step completed: {step.title} ({step.duration} ms)")
    if dependencies.on_step is None:
        return
    result = dependencies.on_step(step)
    if inspect.isawaitable(result):
        await result
