# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API, kept SEPARATE from the ORM models
# in shop_assistant/db/models.py so the public contract and the storage
# layout can evolve independently.
# =============================================================================
