import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Settings(BaseSettings):
    # --- API Keys ---
    OPENROUTER_API_KEY: str = os.getenv("OPENROUTER_API_KEY", "")
    SERPER_API_KEY: str = os.getenv("SERPER_API_KEY", "")
    TAVILY_API_KEY: str = os.getenv("TAVILY_API_KEY", "")

    # --- Completion Provider ---
    # Any OpenAI-compatible chat/completions endpoint works here
    OPENROUTER_BASE_URL: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    APP_TITLE: str = os.getenv("APP_TITLE", "Thinking Chat")
    MAIN_MODEL_NAME: str = os.getenv("MAIN_MODEL_NAME", "meta-llama/llama-3.2-3b-instruct")
    # Model used for conversation summaries; defaults to the main model
    SUMMARY_MODEL_NAME: str = os.getenv("SUMMARY_MODEL_NAME", MAIN_MODEL_NAME)
    MAX_COMPLETION_TOKENS: int = int(os.getenv("MAX_COMPLETION_TOKENS", 500))
    COMPLETION_TIMEOUT: float = float(os.getenv("COMPLETION_TIMEOUT", 60)) # Seconds per request
    RATE_LIMIT_RETRY_DELAY: float = float(os.getenv("RATE_LIMIT_RETRY_DELAY", 60)) # Cool-down before the single 429 retry

    # --- Web Search ---
    SEARCH_PROVIDER: str = os.getenv("SEARCH_PROVIDER", "serper") # "serper" or "tavily"
    SERPER_BASE_URL: str = os.getenv("SERPER_BASE_URL", "https://google.serper.dev")
    WEB_SEARCH_MAX_RESULTS: int = int(os.getenv("WEB_SEARCH_MAX_RESULTS", 3))
    WEB_SEARCH_TIMEOUT: float = float(os.getenv("WEB_SEARCH_TIMEOUT", 15))

    # --- Conversation Memory ---
    MEMORY_STRATEGY: str = os.getenv("MEMORY_STRATEGY", "summary") # "simple", "summary" or "vector"
    MAX_MEMORY_TOKENS: int = int(os.getenv("MAX_MEMORY_TOKENS", 4000))
    SIMPLE_BUFFER_MESSAGE_LIMIT: int = int(os.getenv("SIMPLE_BUFFER_MESSAGE_LIMIT", 20))
    SUMMARY_CONSOLIDATION_THRESHOLD: int = int(os.getenv("SUMMARY_CONSOLIDATION_THRESHOLD", 3))
    SUMMARY_KEEP_RECENT: int = int(os.getenv("SUMMARY_KEEP_RECENT", 2))

    # --- Knowledge Base ---
    CHUNK_SIZE: int = int(os.getenv("CHUNK_SIZE", 1000)) # Characters per chunk
    CHUNK_OVERLAP: int = int(os.getenv("CHUNK_OVERLAP", 200))
    MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", 50 * 1024 * 1024))
    KNOWLEDGE_QUERY_LIMIT: int = int(os.getenv("KNOWLEDGE_QUERY_LIMIT", 3)) # Documents consulted per turn
    EMBEDDING_MODEL_NAME: str = os.getenv("EMBEDDING_MODEL_NAME", "text-embedding-ada-002")
    EMBEDDING_DIMENSIONS: int = int(os.getenv("EMBEDDING_DIMENSIONS", 1536))

    # --- Persistence ---
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory") # "memory" or "weaviate"
    WEAVIATE_URL: str = os.getenv("WEAVIATE_URL", "")
    WEAVIATE_API_KEY: str = os.getenv("WEAVIATE_API_KEY", "")
    WEAVIATE_RECORDS_CLASS: str = os.getenv("WEAVIATE_RECORDS_CLASS", "ChatRecords")
    BLOB_STORAGE_DIR: str = os.getenv("BLOB_STORAGE_DIR", "") # Empty keeps uploads in memory

    # --- API ---
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # --- Logging ---
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    class Config:
        env_file = '.env'
        env_file_encoding = 'utf-8'
        extra = 'ignore' # Ignore extra fields from environment

# Create a single instance of the settings to be imported across the application
settings = Settings()
