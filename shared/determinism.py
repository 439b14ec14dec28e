"""Global determinism settings.

Every inference call spreads these parameters into its payload so that
identical logs always produce identical prompts and sampling behaviour.
"""

# Inference sampling parameters, fully deterministic.
LLM_TEMPERATURE: float = 0.0
LLM_TOP_P: float = 1.0  # Gemini requires top_p > 0; 1.0 is default / neutral

# Convenience dict to spread into every OpenAI-compatible payload.
# NOTE: Gemini's OpenAI-compatible API does not support the ``seed``
# parameter and rejects ``top_p=0.0``.
LLM_DETERMINISTIC_PARAMS: dict[str, object] = {
    "temperature": LLM_TEMPERATURE,
    "top_p": LLM_TOP_P,
}

# Per-stage output budgets (max_tokens).
EXTRACTOR_MAX_TOKENS: int = 2000
CLASSIFIER_MAX_TOKENS: int = 1000
PATCH_MAX_TOKENS: int = 3000
VERIFIER_MAX_TOKENS: int = 500
