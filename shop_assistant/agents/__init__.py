# =============================================================================
# Agents Package — Query Pipeline and Agent Clients
# =============================================================================
#   - orchestrator.py: LangGraph graphs for query and feedback, plus the
#     session/result/choice use cases
#   - downstream.py: ASR, refine, location, intent split, presentation,
#     comparison (HTTP to the AI microservice, LLM for intent split)
#   - search.py: SEARCH agent client, ranked items
#   - queue.py: bounded FIFO scheduler for search jobs
#   - communication_log.py: best-effort inter-agent audit trail
# =============================================================================
