# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
#
# Fields whose absence is a client error with a specific message (chat
# messages, company_id) are optional here and checked in the handler, so
# the response is a 400 with that message rather than a generic 422.
#
# `companyId` is accepted as an alias of `company_id` for browser clients
# that send camelCase.
# =============================================================================

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ContentPart(BaseModel):
    """One part of a multi-part message. Only `text` parts carry query text."""

    type: str
    text: str | None = None

    model_config = ConfigDict(extra="allow")


class ChatMessage(BaseModel):
    """
    A chat message. Content is either a plain string or a list of parts;
    clients that send `parts` instead of `content` are also accepted.
    """

    role: str
    content: str | list[ContentPart] | None = None
    parts: list[ContentPart] | None = None

    model_config = ConfigDict(extra="ignore")

    def text(self) -> str:
        """Plain text of the message, text parts joined with spaces."""
        if isinstance(self.content, str):
            return self.content
        parts = self.content if self.content is not None else (self.parts or [])
        return " ".join(p.text for p in parts if p.type == "text" and p.text)


class ChatRequest(BaseModel):
    """
    Request body for POST /chat.

    Example:
        {
            "messages": [{"role": "user", "content": "What is the capex plan?"}],
            "company_id": "3f0c1c2e-..."
        }
    """

    messages: list[ChatMessage] | None = None
    company_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("company_id", "companyId"),
    )


class RetrieveRequest(BaseModel):
    """
    Request body for POST /retrieve — fetch the context bundle directly.

    Bounds are validated by the retrieval service (400 on violation).
    """

    query: str = Field(
        ...,
        description="Natural-language question",
        examples=["What expansion projects are planned for next year?"],
    )
    company_id: str = Field(
        ...,
        validation_alias=AliasChoices("company_id", "companyId"),
        description="Tenant to search within",
    )
    limit: int | None = Field(
        default=None,
        description="Maximum number of chunks (default from settings)",
    )
    similarity_threshold: float | None = Field(
        default=None,
        validation_alias=AliasChoices("similarity_threshold", "similarityThreshold"),
        description="Minimum cosine similarity, inclusive (default from settings)",
    )
