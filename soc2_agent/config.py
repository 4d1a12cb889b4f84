# soc2_agent/config.py

"""
Configuration
=============
Loads environment variables from a .env file using python-dotenv.

Environment Variables:
    OLLAMA_BASE_URL                 - Ollama server for the semantic model
    SOC2_MODEL                      - Chat model name (default: qwen3:4b)
    SOC2_TEMPERATURE                - Sampling temperature (default: 0.0)
    SOC2_SCAN_MODE                  - regex_only | smart | analyze_all (default: smart)
    SOC2_COST_LIMIT_USD             - Per-scan ceiling for semantic spend (default: 5.0)
    SOC2_COST_LIMIT_INCREMENT_USD   - Ceiling raise granted on "continue" (default: the limit)
    SOC2_LINE_TOLERANCE             - Max line distance for hybrid merges (default: 3)
    SOC2_SEMANTIC_TIMEOUT_SECONDS   - Timeout for one semantic call (default: 30)
    SOC2_MAX_CONCURRENT_FILES       - Worker pool size for the CLI host (default: 10)
    SOC2_MAX_FILE_BYTES             - Files larger than this are skipped by the CLI
    SOC2_LOG_LEVEL                  - Logging level (default: INFO)
    SOC2_LOG_DIR                    - Directory for the daily log file (unset: console only)
"""
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
MODEL_NAME = os.getenv("SOC2_MODEL", "qwen3:4b")
TEMPERATURE = float(os.getenv("SOC2_TEMPERATURE", 0.0))

SCAN_MODE = os.getenv("SOC2_SCAN_MODE", "smart")

COST_LIMIT_USD = float(os.getenv("SOC2_COST_LIMIT_USD", 5.0))
COST_LIMIT_INCREMENT_USD = _optional_float("SOC2_COST_LIMIT_INCREMENT_USD")

# Hybrid merge window, in lines, between a pattern and a semantic finding
LINE_TOLERANCE = int(os.getenv("SOC2_LINE_TOLERANCE", 3))

SEMANTIC_TIMEOUT_SECONDS = float(os.getenv("SOC2_SEMANTIC_TIMEOUT_SECONDS", 30))

MAX_CONCURRENT_FILES = int(os.getenv("SOC2_MAX_CONCURRENT_FILES", 10))
MAX_FILE_BYTES = int(os.getenv("SOC2_MAX_FILE_BYTES", 200_000))

LOG_LEVEL = os.getenv("SOC2_LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("SOC2_LOG_DIR")


def build_llm(model: Optional[str] = None, temperature: Optional[float] = None):
    """Create the chat model used by the semantic analyzer and fix synthesizer."""
    # Imported lazily so regex-only runs never need the Ollama client
    from langchain_ollama import ChatOllama

    return ChatOllama(
        model=model or MODEL_NAME,
        temperature=TEMPERATURE if temperature is None else temperature,
        base_url=OLLAMA_BASE_URL,
    )
