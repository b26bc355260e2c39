# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, ORM models and the persistence
# gateway used by the query pipeline.
#
# Key exports:
#   - engine.async_session_factory: session factory for the configured DB
#   - models: ChatSession, Message, SearchRun, SearchResult, Choice,
#     AgentCommunication, AgentPrompt
#   - repository.Repository: typed CRUD over the records above
# =============================================================================
