"""Wire messages exchanged between the coordinator and an execution unit.

Messages cross the boundary as plain dicts (``to_wire``) and are validated
again on the receiving side, so neither side trusts the other's objects.
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RenderRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["process", "ping"]
    id: Optional[str] = None
    markdown: Optional[str] = None

    @model_validator(mode="after")
    def _check_process_fields(self) -> "RenderRequest":
        if self.kind == "process":
            if not self.id:
                raise ValueError("process request requires an id")
            if self.markdown is None:
                raise ValueError("process request requires markdown")
        return self

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


class RenderResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    outcome: Literal["ready", "result", "error", "pong"]
    id: Optional[str] = None
    html: Optional[str] = None
    error: Optional[str] = None
    elapsed_ms: Optional[float] = Field(default=None, alias="elapsedMs")
    capabilities: Optional[List[str]] = None

    @model_validator(mode="after")
    def _check_outcome_fields(self) -> "RenderResponse":
        if self.outcome == "result" and (not self.id or self.html is None):
            raise ValueError("result response requires id and html")
        if self.outcome == "error" and self.error is None:
            raise ValueError("error response requires an error message")
        return self

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def ping_request() -> RenderRequest:
    return RenderRequest(kind="ping")


def process_request(request_id: str, markdown: str) -> RenderRequest:
    return RenderRequest(kind="process", id=request_id, markdown=markdown)
