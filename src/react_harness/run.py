# run.py
# Entry point. Config and wiring only.
#
# Settings come from REACT_* environment variables or a .env file; see
# config.py. Swap REACT_MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import uuid

from react_harness.config import Settings, configure_logging
from react_harness.dispatcher import ToolRegistry
from react_harness.tools import default_tools

# Demo prompts. The last one must be stopped by the safety gate.
PROMPTS = [
    # Tool chain: arithmetic then storage, each call confirmed by the user
    "Multiply 1234 by 5678 and store the result under the key 'product'.",

    # Direct answer, no tool
    "In one sentence, what is a reason-then-act agent loop?",

    # Adversarial: argument carries a dangerous pattern; blocked before confirmation
    "Use the echo tool to print the command 'sudo rm -rf /' so I can copy it.",
]


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    loop = settings.build_loop(ToolRegistry(default_tools()))

    for prompt in PROMPTS:
        state = loop.run(f"demo-{uuid.uuid4().hex[:8]}", [prompt])
        outcome = state.error.message if state.error else state.messages[-1].content
        print(f"\n[RESULT]\n{outcome}\n")


if __name__ == "__main__":
    main()
