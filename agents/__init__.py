"""Agents package – test running, bug scanning and fixing for the healing loop."""

from agents.base import BaseAgent, LLMError
from agents.run_memory import BugLedger

__all__ = [
    "BaseAgent",
    "BugLedger",
    "LLMError",
]
