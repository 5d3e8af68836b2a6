"""
Compatibility entrypoint for the chatbot server.

Keeps `python chatbot_server.py` working from the project directory; the
runtime code lives in the `causal_workflow` package.
"""

from causal_workflow.chatbot_server import *  # noqa: F401,F403


if __name__ == "__main__":
    import runpy

    runpy.run_module("causal_workflow.chatbot_server", run_name="__main__")
