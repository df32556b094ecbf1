from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from relnotes.models.enums import IntegrationProvider

GITHUB_API_URL = "https://api.github.com"
ATLASSIAN_RESOURCES_URL = "https://api.atlassian.com/oauth/token/accessible-resources"
ATLASSIAN_API_URL = "https://api.atlassian.com/ex/jira"
LINEAR_GRAPHQL_URL = "https://api.linear.app/graphql"

JIRA_ISSUE_FIELDS = [
    "summary",
    "status",
    "assignee",
    "created",
    "updated",
    "description",
    "issuetype",
    "priority",
    "fixVersions",
    "labels",
]

LINEAR_ISSUES_QUERY = """
query Issues($first: Int!, $filter: IssueFilter) {
  issues(first: $first, filter: $filter, orderBy: updatedAt) {
    nodes {
      id
      identifier
      title
      description
      url
      priority
      createdAt
      updatedAt
      state { name }
      assignee { name displayName }
      labels { nodes { name } }
    }
  }
}
"""

LINEAR_TEAMS_QUERY = """
query Teams($first: Int!, $includeArchived: Boolean) {
  teams(first: $first, includeArchived: $includeArchived) {
    nodes {
      id
      key
      name
      description
      private
    }
  }
}
"""

LINEAR_VIEWER_QUERY = """
query Viewer {
  viewer {
    id
    name
    displayName
    email
    organization { id name urlKey }
  }
}
"""


class ProviderApiError(RuntimeError):
    def __init__(self, *, provider: IntegrationProvider, status_code: int | None, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


@dataclass(frozen=True)
class JiraSite:
    id: str
    name: str
    url: str


@dataclass(frozen=True)
class ProviderIdentity:
    """Account behind an access token, as reported by the provider."""

    provider: IntegrationProvider
    external_id: str | None
    display_name: str | None = None
    # Merged into integrations.config.
    config: dict[str, Any] = field(default_factory=dict)


def _bearer(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}


def _github_headers(access_token: str) -> dict[str, str]:
    return {**_bearer(access_token), "Accept": "application/vnd.github+json"}


def _json_or_raise(res: httpx.Response, *, provider: IntegrationProvider, message: str) -> Any:
    if res.status_code >= 400:
        raise ProviderApiError(provider=provider, status_code=res.status_code, message=message)
    try:
        return res.json()
    except ValueError as e:
        raise ProviderApiError(
            provider=provider, status_code=res.status_code, message=f"{message}: invalid JSON"
        ) from e


def _send(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    provider: IntegrationProvider,
    message: str,
    **kwargs: Any,
) -> Any:
    try:
        res = client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        raise ProviderApiError(provider=provider, status_code=None, message=f"{message}: transport error") from e
    return _json_or_raise(res, provider=provider, message=message)


def _linear_query(
    client: httpx.Client,
    *,
    access_token: str,
    query: str,
    variables: dict[str, Any] | None = None,
    message: str,
) -> dict[str, Any]:
    payload = _send(
        client,
        "POST",
        LINEAR_GRAPHQL_URL,
        provider=IntegrationProvider.linear,
        message=message,
        json={"query": query, "variables": variables or {}},
        headers=_bearer(access_token),
    )
    if not isinstance(payload, dict) or payload.get("errors"):
        raise ProviderApiError(
            provider=IntegrationProvider.linear,
            status_code=200,
            message=f"{message}: GraphQL errors",
        )
    return payload.get("data") or {}


def list_github_pull_requests(
    client: httpx.Client,
    *,
    access_token: str,
    owner: str,
    repo: str,
    state: str = "closed",
    per_page: int = 30,
    page: int = 1,
) -> list[dict[str, Any]]:
    payload = _send(
        client,
        "GET",
        f"{GITHUB_API_URL}/repos/{owner}/{repo}/pulls",
        provider=IntegrationProvider.github,
        message="GitHub pull request list failed",
        params={
            "state": state,
            "sort": "updated",
            "direction": "desc",
            "per_page": max(1, min(100, per_page)),
            "page": max(1, page),
        },
        headers=_github_headers(access_token),
    )
    if not isinstance(payload, list):
        return []
    return [p for p in payload if isinstance(p, dict) and "number" in p]


def list_github_commits(
    client: httpx.Client,
    *,
    access_token: str,
    owner: str,
    repo: str,
    sha: str | None = None,
    path: str | None = None,
    since: str | None = None,
    until: str | None = None,
    per_page: int = 30,
    page: int = 1,
) -> list[dict[str, Any]]:
    params: dict[str, Any] = {"per_page": max(1, min(100, per_page)), "page": max(1, page)}
    for key, value in (("sha", sha), ("path", path), ("since", since), ("until", until)):
        if value:
            params[key] = value

    payload = _send(
        client,
        "GET",
        f"{GITHUB_API_URL}/repos/{owner}/{repo}/commits",
        provider=IntegrationProvider.github,
        message="GitHub commit list failed",
        params=params,
        headers=_github_headers(access_token),
    )
    if not isinstance(payload, list):
        return []
    return [c for c in payload if isinstance(c, dict) and isinstance(c.get("sha"), str)]


def list_github_repositories(
    client: httpx.Client,
    *,
    access_token: str,
    sort: str = "updated",
    direction: str = "desc",
    per_page: int = 50,
    page: int = 1,
) -> list[dict[str, Any]]:
    payload = _send(
        client,
        "GET",
        f"{GITHUB_API_URL}/user/repos",
        provider=IntegrationProvider.github,
        message="GitHub repository list failed",
        params={
            "sort": sort,
            "direction": direction,
            "per_page": max(1, min(100, per_page)),
            "page": max(1, page),
        },
        headers=_github_headers(access_token),
    )
    if not isinstance(payload, list):
        return []
    return [r for r in payload if isinstance(r, dict) and isinstance(r.get("full_name"), str)]


def fetch_github_identity(client: httpx.Client, *, access_token: str) -> ProviderIdentity:
    payload = _send(
        client,
        "GET",
        f"{GITHUB_API_URL}/user",
        provider=IntegrationProvider.github,
        message="GitHub user lookup failed",
        headers=_github_headers(access_token),
    )
    if not isinstance(payload, dict):
        payload = {}
    user_id = payload.get("id")
    login = payload.get("login") if isinstance(payload.get("login"), str) else None
    return ProviderIdentity(
        provider=IntegrationProvider.github,
        external_id=str(user_id) if isinstance(user_id, int) else None,
        display_name=login,
        config={"user": {"id": user_id, "login": login, "name": payload.get("name")}},
    )


def list_jira_sites(client: httpx.Client, *, access_token: str) -> list[JiraSite]:
    payload = _send(
        client,
        "GET",
        ATLASSIAN_RESOURCES_URL,
        provider=IntegrationProvider.jira,
        message="Jira accessible resources lookup failed",
        headers=_bearer(access_token),
    )
    sites: list[JiraSite] = []
    for item in payload if isinstance(payload, list) else []:
        if not isinstance(item, dict) or not isinstance(item.get("id"), str):
            continue
        sites.append(
            JiraSite(
                id=item["id"],
                name=item.get("name") or "Unknown Site",
                url=item.get("url") or "",
            )
        )
    return sites


def fetch_jira_identity(client: httpx.Client, *, access_token: str) -> ProviderIdentity:
    sites = list_jira_sites(client, access_token=access_token)
    resources = [{"id": s.id, "name": s.name, "url": s.url} for s in sites]
    if not sites:
        return ProviderIdentity(
            provider=IntegrationProvider.jira,
            external_id=None,
            config={"resources": resources},
        )

    payload = _send(
        client,
        "GET",
        f"{ATLASSIAN_API_URL}/{sites[0].id}/rest/api/3/myself",
        provider=IntegrationProvider.jira,
        message="Jira user lookup failed",
        headers=_bearer(access_token),
    )
    if not isinstance(payload, dict):
        payload = {}
    account_id = payload.get("accountId")
    return ProviderIdentity(
        provider=IntegrationProvider.jira,
        external_id=account_id if isinstance(account_id, str) else None,
        display_name=payload.get("displayName"),
        config={
            "resources": resources,
            "user": {"accountId": account_id, "displayName": payload.get("displayName")},
        },
    )


def search_jira_issues(
    client: httpx.Client,
    *,
    access_token: str,
    site_id: str,
    jql: str,
    max_results: int = 50,
    start_at: int = 0,
) -> list[dict[str, Any]]:
    payload = _send(
        client,
        "GET",
        f"{ATLASSIAN_API_URL}/{site_id}/rest/api/3/search",
        provider=IntegrationProvider.jira,
        message="Jira issue search failed",
        params={
            "jql": jql,
            "startAt": max(0, start_at),
            "maxResults": max(1, min(100, max_results)),
            "fields": ",".join(JIRA_ISSUE_FIELDS),
        },
        headers=_bearer(access_token),
    )
    issues = payload.get("issues") if isinstance(payload, dict) else None
    return [i for i in issues or [] if isinstance(i, dict) and "key" in i]


def list_jira_projects(
    client: httpx.Client,
    *,
    access_token: str,
    site_id: str,
    max_results: int = 50,
    start_at: int = 0,
) -> list[dict[str, Any]]:
    payload = _send(
        client,
        "GET",
        f"{ATLASSIAN_API_URL}/{site_id}/rest/api/3/project/search",
        provider=IntegrationProvider.jira,
        message="Jira project list failed",
        params={
            "startAt": max(0, start_at),
            "maxResults": max(1, min(100, max_results)),
            "expand": "description,lead",
        },
        headers=_bearer(access_token),
    )
    values = payload.get("values") if isinstance(payload, dict) else None
    return [p for p in values or [] if isinstance(p, dict) and "key" in p]


def list_linear_issues(
    client: httpx.Client,
    *,
    access_token: str,
    team_id: str | None = None,
    first: int = 50,
) -> list[dict[str, Any]]:
    variables: dict[str, Any] = {"first": max(1, min(100, first))}
    if team_id:
        variables["filter"] = {"team": {"id": {"eq": team_id}}}

    data = _linear_query(
        client,
        access_token=access_token,
        query=LINEAR_ISSUES_QUERY,
        variables=variables,
        message="Linear issue list failed",
    )
    nodes = (data.get("issues") or {}).get("nodes")
    return [n for n in nodes or [] if isinstance(n, dict) and "id" in n]


def list_linear_teams(
    client: httpx.Client,
    *,
    access_token: str,
    first: int = 50,
    include_archived: bool = False,
) -> list[dict[str, Any]]:
    data = _linear_query(
        client,
        access_token=access_token,
        query=LINEAR_TEAMS_QUERY,
        variables={"first": max(1, min(100, first)), "includeArchived": include_archived},
        message="Linear team list failed",
    )
    nodes = (data.get("teams") or {}).get("nodes")
    return [n for n in nodes or [] if isinstance(n, dict) and "id" in n]


def fetch_linear_identity(client: httpx.Client, *, access_token: str) -> ProviderIdentity:
    data = _linear_query(
        client,
        access_token=access_token,
        query=LINEAR_VIEWER_QUERY,
        message="Linear viewer lookup failed",
    )
    viewer = data.get("viewer")
    if not isinstance(viewer, dict):
        raise ProviderApiError(
            provider=IntegrationProvider.linear,
            status_code=200,
            message="Linear viewer lookup returned no viewer",
        )
    viewer_id = viewer.get("id")
    return ProviderIdentity(
        provider=IntegrationProvider.linear,
        external_id=viewer_id if isinstance(viewer_id, str) else None,
        display_name=viewer.get("displayName") or viewer.get("name"),
        config={
            "user": {k: viewer.get(k) for k in ("id", "name", "displayName", "email")},
            "organization": viewer.get("organization"),
        },
    )


_IDENTITY_LOOKUPS = {
    IntegrationProvider.github: fetch_github_identity,
    IntegrationProvider.jira: fetch_jira_identity,
    IntegrationProvider.linear: fetch_linear_identity,
}


def fetch_provider_identity(
    client: httpx.Client, *, provider: IntegrationProvider, access_token: str
) -> ProviderIdentity:
    return _IDENTITY_LOOKUPS[provider](client, access_token=access_token)
