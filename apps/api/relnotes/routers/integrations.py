from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from relnotes.core.crypto import EncryptionKeyError
from relnotes.core.deps import UserContext, require_csrf_header, require_user
from relnotes.core.http import get_http_client
from relnotes.db.session import get_session
from relnotes.models.enums import IntegrationProvider
from relnotes.schemas.integrations import (
    ChangeItemListResponse,
    ChangeItemOut,
    ConnectionCheckOut,
    ConnectionTestResponse,
    GithubRepositoryListResponse,
    GithubRepositoryOut,
    IntegrationStatusOut,
    IntegrationStatusResponse,
    JiraIssueListResponse,
    JiraProjectListResponse,
    JiraProjectOut,
    JiraSiteOut,
    LinearTeamListResponse,
    LinearTeamOut,
)
from relnotes.services.change_items import (
    ChangeItem,
    github_commit_to_change_item,
    github_pull_to_change_item,
    jira_issue_to_change_item,
    linear_issue_to_change_item,
)
from relnotes.services.connection_checks import run_connection_checks
from relnotes.services.integrations import (
    CredentialUnavailableError,
    IntegrationNotFoundError,
    disconnect_integration,
    get_integration_access_token,
    list_integration_statuses,
    mark_integration_synced,
)
from relnotes.services.provider_api import (
    JiraSite,
    ProviderApiError,
    list_github_commits,
    list_github_pull_requests,
    list_github_repositories,
    list_jira_projects,
    list_jira_sites,
    list_linear_issues,
    list_linear_teams,
    search_jira_issues,
)
from relnotes.services.query_params import build_jira_jql, parse_csv_param, parse_integer_param
from relnotes.services.ticket_cache import cache_change_items

logger = logging.getLogger("relnotes.integrations")

router = APIRouter(prefix="/integrations", tags=["integrations"])

DEFAULT_PAGE_SIZE = 30
DEFAULT_MAX_RESULTS = 50
MAX_ALLOWED_RESULTS = 100
GITHUB_PULL_STATES = {"open", "closed", "all"}
GITHUB_REPO_SORTS = {"created", "updated", "pushed", "full_name"}
SORT_DIRECTIONS = {"asc", "desc"}


def _access_token(*, session: Session, user: UserContext, provider: IntegrationProvider) -> str:
    try:
        return get_integration_access_token(
            session=session, organization_id=user.organization_id, provider=provider
        )
    except IntegrationNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{provider.value} integration not found",
        ) from e
    except CredentialUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{provider.value} credentials are unusable; reconnect the integration",
        ) from e
    except EncryptionKeyError as e:
        logger.error("INTEGRATIONS_ENCRYPTION_KEY is not usable")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Integration encryption is not configured",
        ) from e


def _provider_failure(e: ProviderApiError) -> HTTPException:
    logger.warning(
        "Provider request failed provider=%s status=%s: %s", e.provider.value, e.status_code, e
    )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"{e.provider.value} request failed",
    )


def _cache_and_respond(
    *,
    session: Session,
    user: UserContext,
    provider: IntegrationProvider,
    items: list[ChangeItem],
) -> list[ChangeItemOut]:
    cache_change_items(session=session, organization_id=user.organization_id, items=items)
    mark_integration_synced(
        session=session, organization_id=user.organization_id, provider=provider
    )
    session.commit()
    return [ChangeItemOut.model_validate(item.to_public()) for item in items]


@router.get("/status", response_model=IntegrationStatusResponse)
def integration_status(
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> IntegrationStatusResponse:
    statuses = list_integration_statuses(session=session, organization_id=user.organization_id)
    return IntegrationStatusResponse(
        integrations=[
            IntegrationStatusOut(
                provider=s.provider.value,
                connected=s.connected,
                credentials_usable=s.credentials_usable,
                external_id=s.external_id,
                updated_at=s.updated_at,
                last_sync=s.last_sync,
            )
            for s in statuses
        ]
    )


@router.delete("/{provider}", dependencies=[Depends(require_csrf_header)])
def disconnect(
    provider: IntegrationProvider,
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> dict[str, str]:
    removed = disconnect_integration(
        session=session, organization_id=user.organization_id, provider=provider
    )
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{provider.value} integration not found",
        )
    session.commit()
    logger.info("Disconnected provider=%s organization=%s", provider.value, user.organization_id)
    return {"status": "ok"}


@router.get(
    "/github/repositories/{owner}/{repo}/pulls",
    response_model=ChangeItemListResponse,
)
def github_pulls(
    owner: str,
    repo: str,
    state: str = Query(default="closed"),
    per_page: str | None = Query(default=None),
    page: str | None = Query(default=None),
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> ChangeItemListResponse:
    if state not in GITHUB_PULL_STATES:
        state = "closed"
    token = _access_token(session=session, user=user, provider=IntegrationProvider.github)

    try:
        pulls = list_github_pull_requests(
            http_client,
            access_token=token,
            owner=owner,
            repo=repo,
            state=state,
            per_page=parse_integer_param(
                per_page, DEFAULT_PAGE_SIZE, min_value=1, max_value=MAX_ALLOWED_RESULTS
            ),
            page=parse_integer_param(page, 1, min_value=1),
        )
    except ProviderApiError as e:
        raise _provider_failure(e) from e

    items = [github_pull_to_change_item(p, owner=owner, repo=repo) for p in pulls]
    out = _cache_and_respond(
        session=session, user=user, provider=IntegrationProvider.github, items=items
    )
    return ChangeItemListResponse(items=out, count=len(out))


@router.get("/jira/sites", response_model=list[JiraSiteOut])
def jira_sites(
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> list[JiraSiteOut]:
    token = _access_token(session=session, user=user, provider=IntegrationProvider.jira)
    try:
        sites = list_jira_sites(http_client, access_token=token)
    except ProviderApiError as e:
        raise _provider_failure(e) from e
    return [JiraSiteOut(id=s.id, name=s.name, url=s.url) for s in sites]


def _resolve_jira_site(sites: list[JiraSite], site_id: str | None) -> JiraSite | None:
    if site_id:
        return next((s for s in sites if s.id == site_id), None)
    return sites[0] if sites else None


@router.get("/jira/issues", response_model=JiraIssueListResponse)
def jira_issues(
    site_id: str | None = Query(default=None),
    jql: str | None = Query(default=None, max_length=2000),
    project_key: str | None = Query(default=None, max_length=100),
    issue_types: str | None = Query(default=None),
    statuses: str | None = Query(default=None),
    max_results: str | None = Query(default=None),
    start_at: str | None = Query(default=None),
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> JiraIssueListResponse:
    token = _access_token(session=session, user=user, provider=IntegrationProvider.jira)

    try:
        site = _resolve_jira_site(list_jira_sites(http_client, access_token=token), site_id)
        if site is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="No Jira site available"
            )

        query = jql or build_jira_jql(
            project_key=project_key,
            issue_types=parse_csv_param(issue_types),
            statuses=parse_csv_param(statuses),
        )
        issues = search_jira_issues(
            http_client,
            access_token=token,
            site_id=site.id,
            jql=query,
            max_results=parse_integer_param(
                max_results, DEFAULT_MAX_RESULTS, min_value=1, max_value=MAX_ALLOWED_RESULTS
            ),
            start_at=parse_integer_param(start_at, 0, min_value=0),
        )
    except ProviderApiError as e:
        raise _provider_failure(e) from e

    items = [jira_issue_to_change_item(i, site_url=site.url or None) for i in issues]
    out = _cache_and_respond(
        session=session, user=user, provider=IntegrationProvider.jira, items=items
    )
    return JiraIssueListResponse(
        items=out,
        count=len(out),
        site=JiraSiteOut(id=site.id, name=site.name, url=site.url),
        jql=query,
    )


@router.get("/linear/issues", response_model=ChangeItemListResponse)
def linear_issues(
    team_id: str | None = Query(default=None, max_length=100),
    first: str | None = Query(default=None),
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> ChangeItemListResponse:
    token = _access_token(session=session, user=user, provider=IntegrationProvider.linear)

    try:
        nodes = list_linear_issues(
            http_client,
            access_token=token,
            team_id=team_id,
            first=parse_integer_param(
                first, DEFAULT_MAX_RESULTS, min_value=1, max_value=MAX_ALLOWED_RESULTS
            ),
        )
    except ProviderApiError as e:
        raise _provider_failure(e) from e

    items = [linear_issue_to_change_item(n) for n in nodes]
    out = _cache_and_respond(
        session=session, user=user, provider=IntegrationProvider.linear, items=items
    )
    return ChangeItemListResponse(items=out, count=len(out))


@router.get("/github/repositories", response_model=GithubRepositoryListResponse)
def github_repositories(
    sort: str = Query(default="updated"),
    direction: str = Query(default="desc"),
    per_page: str | None = Query(default=None),
    page: str | None = Query(default=None),
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> GithubRepositoryListResponse:
    if sort not in GITHUB_REPO_SORTS:
        sort = "updated"
    if direction not in SORT_DIRECTIONS:
        direction = "desc"
    token = _access_token(session=session, user=user, provider=IntegrationProvider.github)

    try:
        repos = list_github_repositories(
            http_client,
            access_token=token,
            sort=sort,
            direction=direction,
            per_page=parse_integer_param(
                per_page, DEFAULT_MAX_RESULTS, min_value=1, max_value=MAX_ALLOWED_RESULTS
            ),
            page=parse_integer_param(page, 1, min_value=1),
        )
    except ProviderApiError as e:
        raise _provider_failure(e) from e

    out = [
        GithubRepositoryOut(
            id=r.get("id"),
            name=r.get("name") or r["full_name"].split("/")[-1],
            full_name=r["full_name"],
            owner=(r.get("owner") or {}).get("login"),
            private=bool(r.get("private")),
            description=r.get("description"),
            html_url=r.get("html_url"),
            default_branch=r.get("default_branch"),
            updated_at=r.get("updated_at"),
        )
        for r in repos
    ]
    return GithubRepositoryListResponse(repositories=out, count=len(out))


@router.get(
    "/github/repositories/{owner}/{repo}/commits",
    response_model=ChangeItemListResponse,
)
def github_commits(
    owner: str,
    repo: str,
    sha: str | None = Query(default=None, max_length=250),
    path: str | None = Query(default=None, max_length=500),
    since: str | None = Query(default=None, max_length=40),
    until: str | None = Query(default=None, max_length=40),
    per_page: str | None = Query(default=None),
    page: str | None = Query(default=None),
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> ChangeItemListResponse:
    token = _access_token(session=session, user=user, provider=IntegrationProvider.github)

    try:
        commits = list_github_commits(
            http_client,
            access_token=token,
            owner=owner,
            repo=repo,
            sha=sha,
            path=path,
            since=since,
            until=until,
            per_page=parse_integer_param(
                per_page, DEFAULT_PAGE_SIZE, min_value=1, max_value=MAX_ALLOWED_RESULTS
            ),
            page=parse_integer_param(page, 1, min_value=1),
        )
    except ProviderApiError as e:
        raise _provider_failure(e) from e

    items = [github_commit_to_change_item(c, owner=owner, repo=repo) for c in commits]
    out = _cache_and_respond(
        session=session, user=user, provider=IntegrationProvider.github, items=items
    )
    return ChangeItemListResponse(items=out, count=len(out))


@router.get("/jira/projects", response_model=JiraProjectListResponse)
def jira_projects(
    site_id: str | None = Query(default=None),
    max_results: str | None = Query(default=None),
    start_at: str | None = Query(default=None),
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> JiraProjectListResponse:
    token = _access_token(session=session, user=user, provider=IntegrationProvider.jira)

    try:
        site = _resolve_jira_site(list_jira_sites(http_client, access_token=token), site_id)
        if site is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="No Jira site available"
            )
        projects = list_jira_projects(
            http_client,
            access_token=token,
            site_id=site.id,
            max_results=parse_integer_param(
                max_results, DEFAULT_MAX_RESULTS, min_value=1, max_value=MAX_ALLOWED_RESULTS
            ),
            start_at=parse_integer_param(start_at, 0, min_value=0),
        )
    except ProviderApiError as e:
        raise _provider_failure(e) from e

    out = [
        JiraProjectOut(
            id=str(p.get("id") or p["key"]),
            key=p["key"],
            name=p.get("name") or p["key"],
            description=p.get("description") if isinstance(p.get("description"), str) else None,
            project_type_key=p.get("projectTypeKey"),
            lead=(p.get("lead") or {}).get("displayName"),
        )
        for p in projects
    ]
    return JiraProjectListResponse(
        projects=out,
        count=len(out),
        site=JiraSiteOut(id=site.id, name=site.name, url=site.url),
    )


@router.get("/linear/teams", response_model=LinearTeamListResponse)
def linear_teams(
    first: str | None = Query(default=None),
    include_archived: bool = Query(default=False),
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> LinearTeamListResponse:
    token = _access_token(session=session, user=user, provider=IntegrationProvider.linear)

    try:
        teams = list_linear_teams(
            http_client,
            access_token=token,
            first=parse_integer_param(
                first, DEFAULT_MAX_RESULTS, min_value=1, max_value=MAX_ALLOWED_RESULTS
            ),
            include_archived=include_archived,
        )
    except ProviderApiError as e:
        raise _provider_failure(e) from e

    out = [
        LinearTeamOut(
            id=t["id"],
            key=t.get("key"),
            name=t.get("name") or t.get("key") or t["id"],
            description=t.get("description"),
            private=bool(t.get("private")),
        )
        for t in teams
    ]
    return LinearTeamListResponse(teams=out, count=len(out))


@router.get("/{provider}/test-connection", response_model=ConnectionTestResponse)
def connection_test(
    provider: IntegrationProvider,
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> ConnectionTestResponse:
    token = _access_token(session=session, user=user, provider=provider)
    report = run_connection_checks(http_client, provider=provider, access_token=token)
    return ConnectionTestResponse(
        provider=provider.value,
        success=report.success,
        checks=[ConnectionCheckOut(name=c.name, status=c.status, message=c.message) for c in report.checks],
    )
