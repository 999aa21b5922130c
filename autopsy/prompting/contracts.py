from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ScoutOutput(BaseModel):
    """Scout phase: the single file most likely responsible for the failure."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    file_path: str = Field("", alias="filePath")


class SurgeonOutput(BaseModel):
    """
    Surgeon phase (and single-phase v1): diagnosis plus the complete corrected file.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    root_cause: str = Field(..., alias="rootCause")
    file_path: str = Field("", alias="filePath")
    suggested_fix: str = Field(..., alias="suggestedFix", min_length=1)
    explanation: str = ""
