from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_request: str | list[dict[str, Any]] | None = Field(default=None, alias="userRequest")
    repository_url: str | None = Field(default=None, alias="repositoryUrl")
    branch: str | None = None
    auto_commit: bool = Field(default=False, alias="autoCommit")
    resume_session_id: str | None = Field(default=None, alias="resumeSessionId")


class SessionRenameRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_request: str | None = Field(default=None, alias="userRequest")
