"""
Pydantic schemas of the local control API.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, validator


class JoinRequest(BaseModel):
    code: str

    @validator("code", pre=True)
    def _strip(cls, value: object) -> str:
        return str(value or "").strip()


class SessionStatusModel(BaseModel):
    state: str = "idle"
    role: Optional[str] = None
    code: Optional[str] = None
    media_attached: bool = Field(default=False, alias="mediaAttached")
    error: Optional[str] = None
    error_type: Optional[str] = Field(default=None, alias="errorType")
    model_config = ConfigDict(populate_by_name=True)


class HostResponse(BaseModel):
    code: str
    state: str


class StateEventModel(BaseModel):
    type: str = "state"
    previous: Optional[str] = None
    state: str
    role: Optional[str] = None
    code: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = Field(default=None, alias="errorType")
    model_config = ConfigDict(populate_by_name=True)


class ProfilesModel(BaseModel):
    active: str
    profiles: Dict[str, Dict[str, object]] = Field(default_factory=dict)
    names: List[str] = Field(default_factory=list)
