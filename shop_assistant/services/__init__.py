# =============================================================================
# Services Package — Supporting Logic
# =============================================================================
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - prompts.py: Active admin prompt lookup per agent and role
#   - execution_mode.py: Runtime-switchable sync/queue dispatch mode
#   - priorities.py: Session priority-order normalisation
# =============================================================================
