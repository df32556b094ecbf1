from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from relnotes.models.enums import IntegrationProvider
from relnotes.services.provider_api import (
    ProviderApiError,
    fetch_provider_identity,
    list_github_repositories,
    list_jira_projects,
    list_jira_sites,
    list_linear_teams,
)

logger = logging.getLogger("relnotes.integrations")

PASSED = "passed"
WARNING = "warning"
FAILED = "failed"


@dataclass(frozen=True)
class ConnectionCheck:
    name: str
    status: str
    message: str


@dataclass(frozen=True)
class ConnectionReport:
    provider: IntegrationProvider
    success: bool
    checks: list[ConnectionCheck]


def _github_access(client: httpx.Client, access_token: str) -> ConnectionCheck:
    repos = list_github_repositories(client, access_token=access_token, per_page=5)
    if not repos:
        return ConnectionCheck("repositories", WARNING, "No repositories visible to this token")
    return ConnectionCheck("repositories", PASSED, f"Listed {len(repos)} repositories")


def _jira_access(client: httpx.Client, access_token: str) -> ConnectionCheck:
    sites = list_jira_sites(client, access_token=access_token)
    if not sites:
        return ConnectionCheck("projects", WARNING, "No Jira site is accessible")
    projects = list_jira_projects(
        client, access_token=access_token, site_id=sites[0].id, max_results=5
    )
    return ConnectionCheck("projects", PASSED, f"Listed {len(projects)} projects on {sites[0].name}")


def _linear_access(client: httpx.Client, access_token: str) -> ConnectionCheck:
    teams = list_linear_teams(client, access_token=access_token, first=5)
    if not teams:
        return ConnectionCheck("teams", WARNING, "No teams visible to this token")
    return ConnectionCheck("teams", PASSED, f"Listed {len(teams)} teams")


_ACCESS_CHECKS: dict[IntegrationProvider, Callable[[httpx.Client, str], ConnectionCheck]] = {
    IntegrationProvider.github: _github_access,
    IntegrationProvider.jira: _jira_access,
    IntegrationProvider.linear: _linear_access,
}


def run_connection_checks(
    client: httpx.Client,
    *,
    provider: IntegrationProvider,
    access_token: str,
) -> ConnectionReport:
    """Authenticate with the stored token, then call one read endpoint.

    Provider errors become failed or warning checks; upstream bodies are never
    included in messages.
    """
    checks: list[ConnectionCheck] = []

    try:
        identity = fetch_provider_identity(client, provider=provider, access_token=access_token)
    except ProviderApiError as e:
        logger.warning(
            "Connection check failed provider=%s status=%s: %s", provider.value, e.status_code, e
        )
        checks.append(ConnectionCheck("authentication", FAILED, "Invalid or expired access token"))
        return ConnectionReport(provider=provider, success=False, checks=checks)

    who = identity.display_name or identity.external_id or "unknown account"
    checks.append(ConnectionCheck("authentication", PASSED, f"Authenticated as {who}"))

    try:
        checks.append(_ACCESS_CHECKS[provider](client, access_token))
    except ProviderApiError as e:
        logger.warning(
            "Connection access check failed provider=%s status=%s: %s",
            provider.value,
            e.status_code,
            e,
        )
        checks.append(ConnectionCheck("access", WARNING, "Read access is limited; check scopes"))

    return ConnectionReport(
        provider=provider,
        success=all(c.status != FAILED for c in checks),
        checks=checks,
    )
