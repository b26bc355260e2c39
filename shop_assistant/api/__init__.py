# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - sessions.py: query, feedback, results, choices, transcript, agent trail
#   - admin.py: runtime agent execution mode
#   - deps.py: process-wide orchestrator, queue and mode singletons
# =============================================================================
