from __future__ import annotations

import os

from dotenv import load_dotenv

from .agents import build_agent_registry
from .config import DEFAULT_HISTORY_WINDOW, KERNEL_WRAPPER, ensure_runtime_dirs
from .execution import LocalCodeExecutor
from .llm_client import CompletionService, LocalLLMClient
from .orchestrator import WorkflowRouter
from .planner import IntentPlanner
from .session_store import SessionRegistry


# Load environment variables
load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        print(f"[WARNING] Invalid {name}={os.getenv(name)!r}; using {default}")
        return default


# Runtime dirs
ensure_runtime_dirs()

# LLM client (local Ollama / OpenAI-compatible only)
llm_provider = os.getenv("LLM_PROVIDER", "ollama").strip().lower()
if llm_provider != "ollama":
    raise ValueError("Only local Ollama is supported. Set LLM_PROVIDER=ollama")

ollama_base_url = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434/v1")
ollama_api_key = os.getenv("OLLAMA_API_KEY", "ollama")
llm_timeout_sec = _env_float("LLM_TIMEOUT_SEC", 120)
llm_client = LocalLLMClient(base_url=ollama_base_url, api_key=ollama_api_key, timeout=llm_timeout_sec)

llm_model_planner = os.getenv("LLM_MODEL_PLANNER") or os.getenv("LLM_MODEL") or "qwen2.5:7b-instruct"
llm_model_agent = os.getenv("LLM_MODEL_AGENT") or os.getenv("LLM_MODEL") or "qwen2.5:7b-instruct"
agent_temperature = _env_float("LLM_TEMPERATURE", 0.2)

print(
    "[DEBUG] LLM provider: "
    f"{llm_provider}, planner_model: {llm_model_planner}, agent_model: {llm_model_agent}"
)

planner_completion = CompletionService(llm_client, llm_model_planner, temperature=0.1)
agent_completion = CompletionService(llm_client, llm_model_agent, temperature=agent_temperature)

# Code execution (one executor per session, created lazily by the registry)
execution_timeout_sec = _env_float("EXECUTION_TIMEOUT_SEC", 120)
use_code_execution = _env_flag("USE_CODE_EXECUTION", True)


def make_executor() -> LocalCodeExecutor:
    return LocalCodeExecutor(
        wrapper=KERNEL_WRAPPER,
        default_timeout_sec=execution_timeout_sec,
        enabled=use_code_execution,
    )


print(f"[DEBUG] Code execution enabled: {use_code_execution} (timeout {execution_timeout_sec}s)")

history_window = int(_env_float("PLANNER_HISTORY_WINDOW", DEFAULT_HISTORY_WINDOW))

planner = IntentPlanner(planner_completion, history_window=history_window)
agents = build_agent_registry(agent_completion)
sessions = SessionRegistry(executor_factory=make_executor)
router = WorkflowRouter(planner, agents, sessions)
