"""
Configuration: loads settings from .knowledge_engine.yaml, environment
variables, and built-in defaults (in that priority order: CLI args > env >
YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "db_path": os.path.join(".knowledge_engine", "knowledge.db"),
    "embedding_provider": "ollama",
    "embedding_model": "nomic-embed-text",
    "vector_dim": 768,
    "ollama_base_url": "http://localhost:11434",
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
    "embed_concurrency": 4,
    "embed_max_retries": 2,
    "embed_retry_delay": 0.5,
    "request_timeout": 30.0,
    "keyword_max_scan": 10000,
    "default_search_method": "hybrid",
    "default_limit": 10,
    "default_chunk_strategy": "paragraph",
    "log_level": "WARNING",
}

# Config file search locations
_CONFIG_FILENAMES = [".knowledge_engine.yaml", ".knowledge_engine.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """Engine configuration.

    Settings are resolved in priority order:
    1. Keyword overrides (CLI arguments, handled by caller)
    2. Environment variables
    3. .knowledge_engine.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None, **overrides):
        yd = yaml_data or {}

        # Helper: override > env var > yaml > default
        def _get(env_key: str, yaml_key: str, cast=str):
            if overrides.get(yaml_key) is not None:
                return cast(overrides[yaml_key])
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return _DEFAULTS[yaml_key]

        self.DB_PATH = _get("KB_DB_PATH", "db_path")

        self.EMBEDDING_PROVIDER = _get("KB_EMBEDDING_PROVIDER",
                                       "embedding_provider").lower()
        self.EMBEDDING_MODEL = _get("KB_EMBEDDING_MODEL", "embedding_model")
        self.VECTOR_DIM = _get("KB_VECTOR_DIM", "vector_dim", cast=int)

        self.OLLAMA_BASE_URL = _get("OLLAMA_BASE_URL", "ollama_base_url")

        # OpenAI / cloud provider
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = (overrides.get("openai_api_key")
                               or os.getenv("OPENAI_API_KEY")
                               or openai_section.get("api_key",
                                                     _DEFAULTS["openai_api_key"]))
        self.OPENAI_BASE_URL = (overrides.get("openai_base_url")
                                or os.getenv("OPENAI_BASE_URL")
                                or openai_section.get("base_url",
                                                      _DEFAULTS["openai_base_url"]))

        # Embedding worker pool and retry policy
        self.EMBED_CONCURRENCY = _get("KB_EMBED_CONCURRENCY",
                                      "embed_concurrency", cast=int)
        self.EMBED_MAX_RETRIES = _get("KB_EMBED_MAX_RETRIES",
                                      "embed_max_retries", cast=int)
        self.EMBED_RETRY_DELAY = _get("KB_EMBED_RETRY_DELAY",
                                      "embed_retry_delay", cast=float)
        self.REQUEST_TIMEOUT = _get("KB_REQUEST_TIMEOUT",
                                    "request_timeout", cast=float)

        # Retrieval
        self.KEYWORD_MAX_SCAN = _get("KB_KEYWORD_MAX_SCAN",
                                     "keyword_max_scan", cast=int)
        self.DEFAULT_SEARCH_METHOD = _get("KB_SEARCH_METHOD",
                                          "default_search_method")
        self.DEFAULT_LIMIT = _get("KB_SEARCH_LIMIT", "default_limit", cast=int)

        # Ingestion
        self.DEFAULT_CHUNK_STRATEGY = _get("KB_CHUNK_STRATEGY",
                                           "default_chunk_strategy")

        self.LOG_LEVEL = _get("KB_LOG_LEVEL", "log_level").upper()

    @classmethod
    def load(cls, config_path: str | None = None, **overrides) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data, **overrides)
