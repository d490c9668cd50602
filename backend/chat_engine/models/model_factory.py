import logging

from .completion_client import CompletionClient, CompletionOptions
from .model_registry import get_model_spec
from ..config import settings # Import the validated settings

logger = logging.getLogger(__name__)

# Cache for instantiated clients to avoid redundant creation.
# Clients are immutable, so sharing them across requests is safe.
_client_cache = {}

def create_completion_client(model_name: str, **kwargs) -> CompletionClient:
    """
    Factory function to create and return a completion client for the model,
    using the defaults listed in the registry. Uses cached instances if available.

    Args:
        model_name: The provider model id (e.g., 'meta-llama/llama-3.2-3b-instruct').
        **kwargs: Option overrides (temperature, max_tokens).

    Returns:
        A CompletionClient configured for the model.

    Raises:
        ValueError: If no API key is configured.
    """
    cache_key = (model_name, tuple(sorted(kwargs.items())))
    if cache_key in _client_cache:
        return _client_cache[cache_key]

    logger.info(f"Creating new completion client for: {model_name} with kwargs: {kwargs}")
    spec = get_model_spec(model_name)
    if not spec:
        logger.warning(f"Model spec not found for '{model_name}'. Using default parameters.")

    default_params = {"temperature": 0.0, "max_tokens": settings.MAX_COMPLETION_TOKENS}
    default_params.update(spec.get("default_params", {}))
    final_params = {**default_params, **kwargs}

    client = CompletionClient(
        api_key=settings.OPENROUTER_API_KEY,
        options=CompletionOptions(model=model_name, **final_params),
        base_url=settings.OPENROUTER_BASE_URL,
        timeout=settings.COMPLETION_TIMEOUT,
        rate_limit_retry_delay=settings.RATE_LIMIT_RETRY_DELAY,
        app_title=settings.APP_TITLE,
    )
    _client_cache[cache_key] = client
    return client

# --- Helper functions to get specific clients based on config ---

def get_main_client(**kwargs) -> CompletionClient:
    """Gets the client for the main pipeline model specified in settings."""
    return create_completion_client(settings.MAIN_MODEL_NAME, **kwargs)

def get_summary_client(**kwargs) -> CompletionClient:
    """Gets the client used for conversation summaries.
       Defaults to MAIN_MODEL_NAME when SUMMARY_MODEL_NAME is empty.
    """
    model_name = settings.SUMMARY_MODEL_NAME or settings.MAIN_MODEL_NAME
    return create_completion_client(model_name, temperature=0, **kwargs)
