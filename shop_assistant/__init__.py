# =============================================================================
# Shop Assistant Backend
# =============================================================================
# A conversational shopping assistant: free text or voice in, ranked
# product results out, refined through feedback. Sub-tasks are routed to
# logical agents (COMMUNICATION, LOCATION, SEARCH, COMPARISON,
# PRESENTATION, ASR, LLM) and every hop is kept as an audit trail.
#
# Package structure:
#   shop_assistant/
#   ├── api/          → FastAPI route handlers (sessions, admin)
#   ├── agents/       → LangGraph query orchestrator, agent/search clients,
#   │                    agent queue, communication log
#   ├── db/           → Async engine, ORM models, persistence gateway
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → LLM providers, prompt lookup, execution mode,
#                        priority helpers
# =============================================================================
