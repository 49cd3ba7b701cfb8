# app/api/models/merchant.py
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ComputeRequest(BaseModel):
    """
    Request body for the computation service.
    """
    operation: Optional[str] = Field(None, description="Operation to run.")
    input: Optional[Any] = Field(None, description="Operation input.")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Operation parameters.")


class ImageRequest(BaseModel):
    """
    Request body for AI image generation.
    """
    prompt: str = Field("A beautiful landscape", description="Text prompt.")
    style: str = Field("realistic", description="Rendering style.")
    size: str = Field("1024x1024", description="Image size as WIDTHxHEIGHT.")


class AgentTaskRequest(BaseModel):
    """
    Request body for agent task execution.
    """
    taskType: str = Field("general", description="Kind of task.")
    instructions: str = Field("Execute default task", description="What the agent should do.")
    context: Dict[str, Any] = Field(default_factory=dict, description="Extra context for the agent.")


class ServiceResponse(BaseModel):
    """
    Envelope returned by every paid endpoint.
    """
    success: bool = True
    data: Dict[str, Any]
    message: str
    payment: Optional[Dict[str, Any]] = Field(None, description="Settlement receipt for this request.")
