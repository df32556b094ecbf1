from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class IntegrationStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: str
    connected: bool
    credentials_usable: bool
    external_id: str | None
    updated_at: datetime | None
    last_sync: datetime | None = None


class IntegrationStatusResponse(BaseModel):
    integrations: list[IntegrationStatusOut]


class ChangeItemOut(BaseModel):
    provider: str
    external_id: str
    type: str
    title: str
    description: str | None = None
    status: str | None = None
    url: str | None = None
    assignee: str | None = None
    labels: list[str] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ChangeItemListResponse(BaseModel):
    items: list[ChangeItemOut]
    count: int


class JiraSiteOut(BaseModel):
    id: str
    name: str
    url: str


class JiraIssueListResponse(ChangeItemListResponse):
    site: JiraSiteOut
    jql: str


class GithubRepositoryOut(BaseModel):
    id: int | None = None
    name: str
    full_name: str
    owner: str | None = None
    private: bool = False
    description: str | None = None
    html_url: str | None = None
    default_branch: str | None = None
    updated_at: datetime | None = None


class GithubRepositoryListResponse(BaseModel):
    repositories: list[GithubRepositoryOut]
    count: int


class JiraProjectOut(BaseModel):
    id: str
    key: str
    name: str
    description: str | None = None
    project_type_key: str | None = None
    lead: str | None = None


class JiraProjectListResponse(BaseModel):
    projects: list[JiraProjectOut]
    count: int
    site: JiraSiteOut


class LinearTeamOut(BaseModel):
    id: str
    key: str | None = None
    name: str
    description: str | None = None
    private: bool = False


class LinearTeamListResponse(BaseModel):
    teams: list[LinearTeamOut]
    count: int


class ConnectionCheckOut(BaseModel):
    name: str
    status: str
    message: str


class ConnectionTestResponse(BaseModel):
    provider: str
    success: bool
    checks: list[ConnectionCheckOut]
