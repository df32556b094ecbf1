from __future__ import annotations

import base64
from collections.abc import Callable, Generator
from datetime import UTC, datetime

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import event, insert, select
from sqlalchemy.orm import Session

from relnotes.core.config import get_settings
from relnotes.core.crypto import get_access_token_from_encrypted_credentials
from relnotes.core.security import sign_session_token
from relnotes.main import create_app
from relnotes.models.enums import IntegrationProvider
from relnotes.models.integrations import Integration
from relnotes.models.ticket_cache import TicketCache
from relnotes.services.integrations import save_integration_credentials
from relnotes.services.oauth.providers import OAuthTokenResponse
from relnotes.services.provider_api import ProviderIdentity

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _client(app: FastAPI, *, organization_id: str = "org-1") -> TestClient:
    token = sign_session_token(user_id="user-1", organization_id=organization_id)
    return TestClient(app, cookies={get_settings().SESSION_COOKIE_NAME: token})


def _override_http_client(app: FastAPI, handler: Callable[[httpx.Request], httpx.Response]) -> None:
    from relnotes.core.http import get_http_client

    http_client = httpx.Client(transport=httpx.MockTransport(handler), timeout=10.0)

    def override_http_client() -> Generator[httpx.Client, None, None]:
        yield http_client

    app.dependency_overrides[get_http_client] = override_http_client


def _connect(
    session: Session,
    provider: IntegrationProvider,
    access_token: str,
    *,
    organization_id: str = "org-1",
    identity: ProviderIdentity | None = None,
) -> Integration:
    integration = save_integration_credentials(
        session=session,
        organization_id=organization_id,
        provider=provider,
        identity=identity,
        token=OAuthTokenResponse(
            access_token=access_token,
            refresh_token=None,
            expires_in=None,
            scope=None,
            token_type="bearer",
        ),
        now=NOW,
    )
    session.commit()
    return integration


def _corrupt(session: Session, integration: Integration) -> None:
    envelope = dict(integration.encrypted_credentials or {})
    tag = bytearray(base64.b64decode(envelope["tag"]))
    tag[0] ^= 0x01
    envelope["tag"] = base64.b64encode(bytes(tag)).decode("ascii")
    integration.encrypted_credentials = envelope
    session.commit()


def _pull(number: int, title: str) -> dict:
    return {
        "id": 1000 + number,
        "number": number,
        "title": title,
        "state": "closed",
        "merged_at": "2026-10-01T10:00:00Z",
        "html_url": f"https://github.com/acme/app/pull/{number}",
        "user": {"login": "octo"},
        "labels": [{"name": "feature"}],
        "created_at": "2026-09-30T08:00:00Z",
        "updated_at": "2026-10-01T10:00:00Z",
    }


def test_requires_session() -> None:
    client = TestClient(create_app())
    assert client.get("/integrations/status").status_code == 401


def test_status_reports_connected_and_usable(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.github, "gho_ok")
    linear = _connect(db_session, IntegrationProvider.linear, "lin_ok")
    _corrupt(db_session, linear)
    _connect(db_session, IntegrationProvider.jira, "jira_other_org", organization_id="org-2")

    res = _client(create_app()).get("/integrations/status")

    assert res.status_code == 200
    by_provider = {row["provider"]: row for row in res.json()["integrations"]}
    assert by_provider["github"]["connected"] is True
    assert by_provider["github"]["credentials_usable"] is True
    assert by_provider["linear"]["connected"] is True
    assert by_provider["linear"]["credentials_usable"] is False
    assert by_provider["jira"]["connected"] is False


def test_github_pulls_are_normalized_and_cached(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.github, "gho_ok")
    app = create_app()
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.host == "api.github.com" and request.url.path == "/repos/acme/app/pulls":
            assert request.headers["authorization"] == "Bearer gho_ok"
            return httpx.Response(200, json=[_pull(1, "Add export"), _pull(2, "Fix login")])
        return httpx.Response(404)

    _override_http_client(app, handler)

    res = _client(app).get("/integrations/github/repositories/acme/app/pulls?per_page=500&page=x")

    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 2
    assert [i["external_id"] for i in body["items"]] == ["acme/app#1", "acme/app#2"]
    assert body["items"][0]["status"] == "merged"
    assert body["items"][0]["labels"] == ["feature"]
    assert seen[0].url.params["per_page"] == "100"
    assert seen[0].url.params["page"] == "1"

    cached = db_session.execute(select(TicketCache).order_by(TicketCache.ticket_id)).scalars().all()
    assert [(c.integration_type, c.ticket_id, c.title) for c in cached] == [
        ("github", "acme/app#1", "Add export"),
        ("github", "acme/app#2", "Fix login"),
    ]


def test_unusable_credentials_return_409(db_session: Session) -> None:
    integration = _connect(db_session, IntegrationProvider.github, "gho_ok")
    _corrupt(db_session, integration)

    res = _client(create_app()).get("/integrations/github/repositories/acme/app/pulls")

    assert res.status_code == 409


def test_missing_integration_returns_404() -> None:
    res = _client(create_app()).get("/integrations/linear/issues")
    assert res.status_code == 404
    assert res.json()["detail"] == "linear integration not found"


def test_missing_encryption_key_returns_503(db_session: Session, monkeypatch) -> None:
    _connect(db_session, IntegrationProvider.github, "gho_ok")
    monkeypatch.setenv("INTEGRATIONS_ENCRYPTION_KEY", "")
    get_settings.cache_clear()

    res = _client(create_app()).get("/integrations/github/repositories/acme/app/pulls")

    assert res.status_code == 503


def test_provider_failure_returns_502(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.github, "gho_ok")
    app = create_app()
    _override_http_client(app, lambda request: httpx.Response(500, text="boom"))

    res = _client(app).get("/integrations/github/repositories/acme/app/pulls")

    assert res.status_code == 502
    assert res.json()["detail"] == "github request failed"


def test_jira_issues_resolve_site_and_build_jql(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.jira, "jira_ok")
    app = create_app()
    searches: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token/accessible-resources":
            return httpx.Response(
                200,
                json=[
                    {"id": "site-1", "name": "Acme", "url": "https://acme.atlassian.net"},
                    {"id": "site-2", "name": "Beta", "url": "https://beta.atlassian.net"},
                ],
            )
        if request.url.path == "/ex/jira/site-2/rest/api/3/search":
            searches.append(request)
            return httpx.Response(
                200,
                json={
                    "issues": [
                        {
                            "id": "1",
                            "key": "REL-7",
                            "fields": {"summary": "Export to PDF", "status": {"name": "Done"}},
                        }
                    ]
                },
            )
        return httpx.Response(404)

    _override_http_client(app, handler)

    res = _client(app).get(
        "/integrations/jira/issues",
        params={"site_id": "site-2", "project_key": "REL", "statuses": "Done, Released"},
    )

    assert res.status_code == 200
    body = res.json()
    assert body["site"]["id"] == "site-2"
    assert body["jql"] == 'project = "REL" AND status in ("Done", "Released") ORDER BY updated DESC'
    assert body["items"][0]["external_id"] == "REL-7"
    assert body["items"][0]["url"] == "https://beta.atlassian.net/browse/REL-7"
    assert searches[0].url.params["jql"] == body["jql"]
    assert searches[0].url.params["maxResults"] == "50"


def test_jira_unknown_site_returns_400(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.jira, "jira_ok")
    app = create_app()
    _override_http_client(app, lambda request: httpx.Response(200, json=[]))

    res = _client(app).get("/integrations/jira/issues", params={"site_id": "nope"})

    assert res.status_code == 400


def test_linear_issues_via_graphql(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.linear, "lin_ok")
    app = create_app()
    bodies: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://api.linear.app/graphql"
        bodies.append(request.content)
        return httpx.Response(
            200,
            json={
                "data": {
                    "issues": {
                        "nodes": [
                            {
                                "id": "uuid-1",
                                "identifier": "ENG-12",
                                "title": "Faster search",
                                "state": {"name": "Done"},
                            }
                        ]
                    }
                }
            },
        )

    _override_http_client(app, handler)

    res = _client(app).get("/integrations/linear/issues", params={"team_id": "team-1", "first": "0"})

    assert res.status_code == 200
    assert [i["external_id"] for i in res.json()["items"]] == ["ENG-12"]
    assert b'"team-1"' in bodies[0]
    assert b'"first":1' in bodies[0].replace(b" ", b"")


def test_linear_graphql_errors_return_502(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.linear, "lin_ok")
    app = create_app()
    _override_http_client(
        app, lambda request: httpx.Response(200, json={"errors": [{"message": "bad"}]})
    )

    assert _client(app).get("/integrations/linear/issues").status_code == 502


def test_disconnect_requires_csrf_and_removes_row(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.github, "gho_ok")
    client = _client(create_app())

    assert client.delete("/integrations/github").status_code == 403

    client.cookies.set(get_settings().CSRF_COOKIE_NAME, "csrf-1")
    res = client.delete("/integrations/github", headers={"x-csrf-token": "csrf-1"})
    assert res.status_code == 200
    assert db_session.execute(select(Integration)).scalars().all() == []
    db_session.rollback()

    again = client.delete("/integrations/github", headers={"x-csrf-token": "csrf-1"})
    assert again.status_code == 404


def test_save_credentials_is_a_single_upsert_statement(db_session: Session) -> None:
    statements: list[str] = []

    def capture(conn, cursor, statement, parameters, context, executemany):  # type: ignore[no-untyped-def]
        statements.append(statement.upper())

    engine = db_session.get_bind()
    event.listen(engine, "before_cursor_execute", capture)
    try:
        _connect(db_session, IntegrationProvider.github, "gho_ok")
    finally:
        event.remove(engine, "before_cursor_execute", capture)

    writes = [s for s in statements if s.lstrip().startswith("INSERT")]
    assert len(writes) == 1
    assert "ON CONFLICT (ORGANIZATION_ID, TYPE) DO UPDATE" in " ".join(writes[0].split())
    assert not any(s.lstrip().startswith("UPDATE") for s in statements)


def test_save_credentials_lands_on_a_row_written_by_another_connect(db_session: Session) -> None:
    created = datetime(2026, 1, 1, tzinfo=UTC)
    db_session.execute(
        insert(Integration).values(
            organization_id="org-1",
            type="github",
            external_id="583231",
            encrypted_credentials=None,
            config={},
            is_active=False,
            created_at=created,
        )
    )
    db_session.commit()

    _connect(db_session, IntegrationProvider.github, "gho_second")

    rows = db_session.execute(select(Integration)).scalars().all()
    assert len(rows) == 1
    row = rows[0]
    assert row.is_active is True
    assert row.external_id == "583231"
    assert row.created_at.replace(tzinfo=UTC) == created
    assert get_access_token_from_encrypted_credentials(row.encrypted_credentials) == "gho_second"


def test_new_identity_replaces_stored_external_id(db_session: Session) -> None:
    _connect(
        db_session,
        IntegrationProvider.linear,
        "lin_1",
        identity=ProviderIdentity(provider=IntegrationProvider.linear, external_id="user-a"),
    )
    integration = _connect(
        db_session,
        IntegrationProvider.linear,
        "lin_2",
        identity=ProviderIdentity(
            provider=IntegrationProvider.linear,
            external_id="user-b",
            config={"organization": {"id": "o1"}},
        ),
    )

    assert integration.external_id == "user-b"
    assert integration.config["organization"] == {"id": "o1"}


def _commit(sha: str, message: str) -> dict:
    return {
        "sha": sha,
        "html_url": f"https://github.com/acme/app/commit/{sha}",
        "author": {"login": "octo"},
        "commit": {
            "message": message,
            "author": {"name": "Octo Cat", "date": "2026-10-02T09:00:00Z"},
        },
    }


def test_github_commits_are_normalized_cached_and_mark_sync(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.github, "gho_ok")
    app = create_app()
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/repos/acme/app/commits":
            return httpx.Response(
                200,
                json=[_commit("abc123", "Add export\n\nLong body"), {"not": "a commit"}],
            )
        return httpx.Response(404)

    _override_http_client(app, handler)

    res = _client(app).get(
        "/integrations/github/repositories/acme/app/commits",
        params={"sha": "main", "since": "2026-10-01T00:00:00Z", "per_page": "0"},
    )

    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 1
    item = body["items"][0]
    assert item["external_id"] == "acme/app@abc123"
    assert item["type"] == "commit"
    assert item["title"] == "Add export"
    assert item["assignee"] == "octo"
    assert seen[0].url.params["sha"] == "main"
    assert seen[0].url.params["per_page"] == "1"
    assert "path" not in seen[0].url.params

    cached = db_session.execute(select(TicketCache)).scalars().one()
    assert (cached.integration_type, cached.ticket_id) == ("github", "acme/app@abc123")
    db_session.expire_all()
    integration = db_session.execute(select(Integration)).scalars().one()
    assert integration.last_sync is not None


def test_failed_fetch_does_not_mark_sync(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.github, "gho_ok")
    app = create_app()
    _override_http_client(app, lambda request: httpx.Response(502))

    res = _client(app).get("/integrations/github/repositories/acme/app/commits")

    assert res.status_code == 502
    db_session.expire_all()
    integration = db_session.execute(select(Integration)).scalars().one()
    assert integration.last_sync is None


def test_github_repositories_list(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.github, "gho_ok")
    app = create_app()
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[
                {
                    "id": 1,
                    "name": "app",
                    "full_name": "acme/app",
                    "owner": {"login": "acme"},
                    "private": True,
                    "default_branch": "main",
                },
                {"id": 2},
            ],
        )

    _override_http_client(app, handler)

    res = _client(app).get("/integrations/github/repositories", params={"sort": "bogus"})

    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 1
    assert body["repositories"][0]["full_name"] == "acme/app"
    assert body["repositories"][0]["owner"] == "acme"
    assert seen[0].url.path == "/user/repos"
    assert seen[0].url.params["sort"] == "updated"


def test_jira_projects_use_first_site_by_default(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.jira, "jira_ok")
    app = create_app()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token/accessible-resources":
            return httpx.Response(
                200, json=[{"id": "site-1", "name": "Acme", "url": "https://acme.atlassian.net"}]
            )
        if request.url.path == "/ex/jira/site-1/rest/api/3/project/search":
            return httpx.Response(
                200,
                json={
                    "values": [
                        {
                            "id": "10000",
                            "key": "REL",
                            "name": "Releases",
                            "projectTypeKey": "software",
                            "lead": {"displayName": "Ada"},
                        }
                    ]
                },
            )
        return httpx.Response(404)

    _override_http_client(app, handler)

    res = _client(app).get("/integrations/jira/projects")

    assert res.status_code == 200
    body = res.json()
    assert body["site"]["id"] == "site-1"
    assert body["projects"] == [
        {
            "id": "10000",
            "key": "REL",
            "name": "Releases",
            "description": None,
            "project_type_key": "software",
            "lead": "Ada",
        }
    ]


def test_linear_teams_list(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.linear, "lin_ok")
    app = create_app()
    bodies: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(request.content)
        return httpx.Response(
            200,
            json={"data": {"teams": {"nodes": [{"id": "team-1", "key": "ENG", "name": "Eng"}]}}},
        )

    _override_http_client(app, handler)

    res = _client(app).get("/integrations/linear/teams", params={"include_archived": "true"})

    assert res.status_code == 200
    assert res.json()["teams"][0]["key"] == "ENG"
    assert b'"includeArchived":true' in bodies[0].replace(b" ", b"")


def test_connection_check_passes_with_working_token(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.github, "gho_ok")
    app = create_app()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 1, "login": "octocat"})
        if request.url.path == "/user/repos":
            return httpx.Response(200, json=[{"id": 1, "name": "app", "full_name": "acme/app"}])
        return httpx.Response(404)

    _override_http_client(app, handler)

    res = _client(app).get("/integrations/github/test-connection")

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert [(c["name"], c["status"]) for c in body["checks"]] == [
        ("authentication", "passed"),
        ("repositories", "passed"),
    ]
    assert "octocat" in body["checks"][0]["message"]


def test_connection_check_reports_rejected_token(db_session: Session) -> None:
    _connect(db_session, IntegrationProvider.linear, "lin_revoked")
    app = create_app()
    _override_http_client(app, lambda request: httpx.Response(401, json={"secret": "upstream"}))

    res = _client(app).get("/integrations/linear/test-connection")

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is False
    assert body["checks"] == [
        {"name": "authentication", "status": "failed", "message": "Invalid or expired access token"}
    ]
    assert "upstream" not in res.text


def test_connection_check_requires_an_integration() -> None:
    res = _client(create_app()).get("/integrations/jira/test-connection")
    assert res.status_code == 404
