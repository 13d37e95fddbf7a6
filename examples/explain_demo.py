"""Minimal demonstration of streaming a code explanation."""

import sys

from explainer_core import create_orchestrator

if __name__ == "__main__":
    orchestrator = create_orchestrator()
    code = "for i in range(3):\n    print(i)"
    outcome = orchestrator.submit_streaming(code, "python")
    if outcome == "configuration_required":
        sys.exit("Set OPENAI_API_KEY or GEMINI_API_KEY (and DEFAULT_PROVIDER) first.")
    for message in orchestrator.messages[-2:]:
        print(f"{message.sender}: {message.content}")
