# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API. FastAPI turns
# shape errors (missing message, feedback longer than 2000 characters,
# unknown execution mode) into automatic 422 responses.
#
# DESIGN DECISION: Priorities are accepted as free strings.
# Unknown priority keys are dropped by the orchestrator rather than
# rejected here, so a client sending ["price", "speed"] still gets
# ["price"] applied instead of an error.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field

from shop_assistant.services.execution_mode import ExecutionMode


class CreateSessionRequest(BaseModel):
    """Request body for POST /sessions. Every field is optional."""

    user_id: str | None = Field(default=None, max_length=200)
    priorities: list[str] | None = Field(
        default=None,
        description="Ordered subset of price, quality, location. Unknown keys are ignored.",
        examples=[["price", "location"]],
    )
    profile_id: str | None = Field(default=None, max_length=200)


class QueryRequest(BaseModel):
    """
    Request body for POST /sessions/{id}/query.

    Send `text`, or `audio_url` for voice input. When both are blank the
    response is an empty result set with an explanatory message.

    Example:
        {"text": "I need a red jacket and running shoes", "priorities": ["price"]}
    """

    text: str | None = Field(default=None, max_length=2000)
    audio_url: str | None = Field(default=None, max_length=2000)
    priorities: list[str] | None = None
    profile_id: str | None = Field(default=None, max_length=200)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"text": "blue scarf"},
                {"audio_url": "https://cdn.example.com/voice/123.ogg"},
                {
                    "text": "I need a red jacket and running shoes",
                    "priorities": ["price", "location"],
                },
            ]
        }
    )


class FeedbackRequest(BaseModel):
    """Request body for POST /sessions/{id}/feedback."""

    message: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Free-text feedback on the latest results",
        examples=["cheaper please"],
    )
    # 0-based indices of results the user reacted positively to
    selected_indices: list[int] | None = Field(default=None, examples=[[0, 2]])
    priorities: list[str] | None = None
    profile_id: str | None = Field(default=None, max_length=200)


class ExecutionModeRequest(BaseModel):
    """Request body for PUT /admin/settings/agent-execution-mode."""

    mode: ExecutionMode = Field(description="'sync' (inline) or 'queue' (bounded agent queue)")
