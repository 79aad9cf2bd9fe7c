from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

API_BASE = "https://api.replicate.com/v1"


class Job(BaseModel):
    model_config = ConfigDict(extra="allow")

    params: dict[str, Any] = Field(default_factory=dict)
    input: Optional[dict[str, Any]] = None

    @field_validator("params", mode="before")
    @classmethod
    def _default_params(cls, value: Any) -> Any:
        return {} if value is None else value

    def input_filenames(self) -> list[str]:
        """Filenames of the files staged for this job, in declared order."""
        files = (self.input or {}).get("files")
        if not isinstance(files, list):
            return []
        names: list[str] = []
        for entry in files:
            if isinstance(entry, dict) and entry.get("filename"):
                names.append(str(entry["filename"]))
        return names


class Prediction(BaseModel):
    """Remote prediction as returned by the API; field shapes are not enforced."""

    model_config = ConfigDict(extra="allow")

    id: Any = None
    status: Any = None
    model: Any = None
    version: Any = None
    output: Any = None
    error: Any = None
    metrics: Any = None
    urls: Any = None


class RunnerConfig(BaseModel):
    api_token: str
    api_base: str = API_BASE
    tool: str = "image"
    model: str
    prompt: str
    wait_seconds: float = Field(5, ge=1, le=60)
    poll_interval: float = Field(1.0, ge=0.25)
    timeout: float = Field(300.0, ge=1.0)
    cancel_after: Optional[str] = None


class PredictionSummary(BaseModel):
    prediction_id: Any = None
    model: Any = None
    version: Any = None
    status: Any = None
    metrics: Any = Field(default_factory=dict)
    output: Any = None


class ProgressEvent(BaseModel):
    xy: int = 1
    progress: float


class CompletedEvent(BaseModel):
    xy: int = 1
    code: int = 0
    data: PredictionSummary
    files: List[str]


class ErrorEvent(BaseModel):
    xy: int = 1
    code: str
    description: str
