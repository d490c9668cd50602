# backend/chat_engine/models/model_registry.py

# Defines specifications for supported LLMs (all served through OpenRouter)
MODEL_SPECS = {
    "meta-llama/llama-3.2-3b-instruct": {
        "provider": "openrouter",
        "context_length": 131072,
        "default_params": {"temperature": 0.1, "max_tokens": 500}
    },
    "openai/gpt-4o-mini": {
        "provider": "openrouter",
        "context_length": 128000,
        "default_params": {"temperature": 0, "max_tokens": 1000}
    },
    "google/gemini-2.0-flash-001": {
        "provider": "openrouter",
        "context_length": 1048576,
        "default_params": {"temperature": 0, "max_tokens": 1000}
    },
}

DEFAULT_CONTEXT_LENGTH = 4096

def get_model_spec(model_name: str) -> dict:
    """Retrieves the specification for a given model name (empty if unknown)."""
    return MODEL_SPECS.get(model_name, {})

def get_context_length(model_name: str) -> int:
    """Returns the context length (in tokens) for a model."""
    spec = get_model_spec(model_name)
    return spec.get("context_length", DEFAULT_CONTEXT_LENGTH)
