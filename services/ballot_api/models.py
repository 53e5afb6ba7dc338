"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, validator


class IdeaRequest(BaseModel):
    """Idea submission request model."""

    name: str = Field(..., description="Submitter display name")
    email: str = Field(..., description="Submitter email (one idea per email)")
    title: str = Field(..., description="Idea title")
    description: str = Field(..., description="Idea description")
    functionalities: Optional[str] = Field(default=None, description="Main functionalities")
    agentRole: Optional[str] = Field(default=None, description="Role of the agent")
    tools: Optional[str] = Field(default=None, description="Tools the idea relies on")

    @validator("name", "email", "title", "description")
    def not_blank(cls, v):
        """Reject required fields that are empty after trimming."""
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Ada",
                "email": "ada@example.com",
                "title": "Meeting summarizer",
                "description": "An agent that turns meeting notes into action items",
                "functionalities": "Transcription, summarization",
                "agentRole": "Assistant",
                "tools": "Calendar, email"
            }
        }


class IdeaSummary(BaseModel):
    """Identifier and headline of a newly submitted idea."""

    id: str
    name: str
    title: str


class SubmitResponse(BaseModel):
    """Idea submission response model."""

    success: bool = True
    idea: IdeaSummary


class IdeaView(BaseModel):
    """Public view of an idea (never includes the submitter email)."""

    id: str
    name: str
    title: str
    description: str
    functionalities: Optional[Any] = None
    agentRole: Optional[Any] = None
    tools: Optional[Any] = None
    votes: int
    createdAt: str


class IdeasResponse(BaseModel):
    """Idea listing response model."""

    ideas: list[IdeaView]
    deadline: str = Field(..., description="Deadline as ISO-8601 UTC")
    isPastDeadline: bool


class VoteRequest(BaseModel):
    """Vote submission request model."""

    ideaId: str = Field(..., description="Identifier of the idea voted for")
    email: str = Field(..., description="Voter email (one vote per email)")

    @validator("ideaId", "email")
    def not_blank(cls, v):
        """Reject fields that are empty after trimming."""
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "ideaId": "m1x2k9q0a3f91c2d7e40",
                "email": "grace@example.com"
            }
        }


class VoteResponse(BaseModel):
    """Vote submission response model."""

    success: bool = True
    votes: int = Field(..., description="New vote count of the idea")


class ResultsResponse(BaseModel):
    """Standings response model."""

    ideas: list[IdeaView]
    winner: Optional[IdeaView] = None
    isPastDeadline: bool
    totalVotes: int = Field(..., description="Number of ballots cast")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(..., description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    type: str = Field(..., description="Error type")
    details: list[str] = Field(default_factory=list, description="Per-field problems")
