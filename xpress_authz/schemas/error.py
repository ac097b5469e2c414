# This project was developed with assistance from AI tools.
"""Problem Details (RFC 7807) body returned by every error response."""

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Problem Details with two extension members.

    ``request_id`` correlates the response with log lines; ``errors`` lists
    individual failures when request validation rejects several fields.
    """

    type: str = Field(default="about:blank", description="Problem type URI.")
    title: str = Field(description="Reason phrase for the status code.")
    status: int
    detail: str = Field(
        default="",
        description="Reason code or message for this occurrence.",
    )
    request_id: str = Field(default="", description="Correlation ID for log lookup.")
    errors: list[str] = Field(default_factory=list)
