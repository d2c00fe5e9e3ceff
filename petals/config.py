from pydantic import BaseModel
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# Load .env file if it exists (before reading os.getenv)
_env_path = Path(__file__).resolve().parent.parent / ".env"
if _env_path.exists():
    with open(_env_path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                # Only set if not already in environment (env vars take precedence)
                if key not in os.environ:
                    os.environ[key] = value


def _sanitize_ascii(val: str) -> str:
    """Strip non-ASCII characters from config values (prevents encoding errors)"""
    return val.encode('ascii', errors='ignore').decode('ascii').strip()


_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


class Settings(BaseModel):
    # Network
    http_host: str = os.getenv("PETALS_HTTP_HOST", "0.0.0.0")
    http_port: int = int(os.getenv("PETALS_HTTP_PORT", "8000"))

    # Remote backend (OpenAI-compatible chat completions)
    openai_api_key: str = _sanitize_ascii(os.getenv("OPENAI_API_KEY", ""))
    openai_base_url: str = _sanitize_ascii(os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"))
    openai_chat_model: str = _sanitize_ascii(os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini"))

    # Local backend (Ollama)
    ollama_base_url: str = _sanitize_ascii(os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"))
    ollama_model: str = _sanitize_ascii(os.getenv("OLLAMA_MODEL", "llama3.1"))
    ollama_num_ctx: int = int(os.getenv("OLLAMA_NUM_CTX", "16384"))

    default_backend: str = os.getenv("DEFAULT_BACKEND", "remote")  # "remote" | "local"
    llm_timeout_s: float = float(os.getenv("LLM_TIMEOUT_S", "120"))

    # Tool trigger classifier
    # Word-vector file (GloVe / fastText .vec); empty uses the sentence encoder below
    embeddings_path: str = os.getenv("EMBEDDINGS_PATH", "")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2")
    tool_trigger_threshold: float = float(os.getenv("TOOL_TRIGGER_THRESHOLD", "0.75"))

    # Tool execution
    max_tool_permission: str = os.getenv("MAX_TOOL_PERMISSION", "sensitive")
    tool_timeout_s: float = float(os.getenv("TOOL_TIMEOUT_S", "0"))  # 0 = no timeout

    # Canvas LMS
    canvas_base_url: str = _sanitize_ascii(os.getenv("CANVAS_BASE_URL", "https://canvas.instructure.com/api/v1"))
    canvas_api_token: str = _sanitize_ascii(os.getenv("CANVAS_API_TOKEN", ""))

    # Storage
    database_url: str = os.getenv("DATABASE_URL", f"sqlite+aiosqlite:///{_DATA_DIR / 'petals.db'}")

    # Conversation
    max_history: int = int(os.getenv("MAX_HISTORY", "20"))


settings = Settings()

# Log config for debugging
_oai_key = '***' + settings.openai_api_key[-4:] if len(settings.openai_api_key) > 4 else 'EMPTY'
logger.info(f"Config: remote → {settings.openai_base_url} (key={_oai_key}), model={settings.openai_chat_model}")
logger.info(f"Config: local → {settings.ollama_base_url}, model={settings.ollama_model}")
logger.info(f"Config: default backend={settings.default_backend}, trigger threshold={settings.tool_trigger_threshold}")
logger.info(f"Config: embeddings={settings.embeddings_path or 'sentence-transformers/' + settings.embedding_model}")
