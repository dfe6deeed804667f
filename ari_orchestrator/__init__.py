"""ARI call-session orchestrator: answers calls, speaks prompts, records and runs a scripted NLU dialogue."""

__version__ = "1.0.0"
