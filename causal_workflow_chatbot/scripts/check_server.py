#!/usr/bin/env python3
"""
Quick check script to verify the server can start and identify issues
"""

import os
import sys
from pathlib import Path

import requests
from dotenv import load_dotenv

# Resolve project root and add it to import path
CHATBOT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(CHATBOT_ROOT))

print("=" * 60)
print("Checking Causal Workflow Server Setup")
print("=" * 60)
print()

# Check imports
print("1. Checking imports...")
try:
    from chatbot_server import app, sessions, router
    print("   ✓ Server imports successful")
except Exception as e:
    print(f"   ✗ Import failed: {e}")
    import traceback
    traceback.print_exc()
    sys.exit(1)

# Check LLM configuration
print("\n2. Checking LLM configuration...")
load_dotenv()
provider = os.getenv("LLM_PROVIDER", "ollama").strip().lower()
base_url = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434/v1")
if provider != "ollama":
    print("   ✗ Unsupported LLM_PROVIDER. Use: LLM_PROVIDER=ollama")
else:
    print(
        "   ✓ Local Ollama configured "
        f"(planner_model={os.getenv('LLM_MODEL_PLANNER') or os.getenv('LLM_MODEL', 'qwen2.5:7b-instruct')}, "
        f"agent_model={os.getenv('LLM_MODEL_AGENT') or os.getenv('LLM_MODEL', 'qwen2.5:7b-instruct')}, "
        f"base={base_url})"
    )

# Check the completion endpoint is reachable
print("\n3. Checking completion service...")
try:
    response = requests.get(f"{base_url.rstrip('/')}/models", timeout=5)
    if response.status_code < 400:
        print("   ✓ Completion service reachable")
    else:
        print(f"   ⚠️  Completion service answered {response.status_code}; the planner will use keyword fallback")
except requests.RequestException as e:
    print(f"   ⚠️  Completion service unreachable ({e}); the planner will use keyword fallback")

# Check stage agents
print("\n4. Checking stage agents...")
for stage, agent in router.agents.items():
    print(f"   ✓ {stage.value}: {agent.name} (writes: {', '.join(agent.writes)})")

# Check code execution
print("\n5. Checking code execution...")
executor = sessions.executor_factory() if sessions.executor_factory else None
if executor is not None and executor.is_ready():
    print(f"   ✓ Execution wrapper found at {executor.wrapper}")
else:
    print("   ⚠️  Code execution disabled; generated code will be shown for manual use")

# Check directories
print("\n6. Checking directories...")
dirs = [
    "causal_workflow/runtime/uploads",
    "causal_workflow/runtime/execution",
]
for d in dirs:
    dir_path = CHATBOT_ROOT / d
    if dir_path.exists():
        print(f"   ✓ {d}/ exists")
    else:
        print(f"   ⚠️  {d}/ does not exist (will be created on first use)")

# Check FastAPI app
print("\n7. Checking FastAPI app...")
routes = [r.path for r in app.routes]
print(f"   ✓ FastAPI app initialized with {len(routes)} routes")
print(f"   Routes: {', '.join(routes)}")

print("\n" + "=" * 60)
print("Check Complete!")
print("=" * 60)
print("\nTo start the server, run:")
print("  python chatbot_server.py")
