"""Global determinism settings for model calls.

The bug scanner and the fix engineer spread these into every
OpenAI-compatible payload so the same file and failure context produce the
same scan and the same patch.
"""

LLM_TEMPERATURE: float = 0.0
LLM_TOP_P: float = 1.0  # Gemini requires top_p > 0; 1.0 is default / neutral

# NOTE: Gemini's OpenAI-compatible API does not support the ``seed``
# parameter and rejects ``top_p=0.0``.
LLM_DETERMINISTIC_PARAMS: dict[str, object] = {
    "temperature": LLM_TEMPERATURE,
    "top_p": LLM_TOP_P,
}
