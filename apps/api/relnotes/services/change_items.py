from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from relnotes.models.enums import ChangeItemType, IntegrationProvider


@dataclass(frozen=True)
class ChangeItem:
    """Provider-neutral issue / pull request / commit."""

    provider: IntegrationProvider
    external_id: str
    type: ChangeItemType
    title: str
    description: str | None = None
    status: str | None = None
    url: str | None = None
    assignee: str | None = None
    labels: tuple[str, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None
    raw: dict[str, Any] | None = field(default=None, compare=False)

    def to_public(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "external_id": self.external_id,
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "url": self.url,
            "assignee": self.assignee,
            "labels": list(self.labels),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        # Jira sends "+0000" offsets.
        if len(raw) > 5 and raw[-5] in "+-" and raw[-4:].isdigit():
            raw = f"{raw[:-2]}:{raw[-2:]}"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def normalize_labels(values: object) -> tuple[str, ...]:
    if not isinstance(values, list | tuple):
        return ()
    out: list[str] = []
    seen: set[str] = set()
    for value in values:
        name = value.get("name") if isinstance(value, dict) else value
        if not isinstance(name, str):
            continue
        name = name.strip()
        if name and name not in seen:
            seen.add(name)
            out.append(name)
    return tuple(out)


def title_from_commit_message(message: str | None) -> str:
    first_line = (message or "").split("\n", 1)[0].strip()
    return first_line or "Commit"


def _login(user: object) -> str | None:
    if isinstance(user, dict) and isinstance(user.get("login"), str):
        return user["login"]
    return None


def github_pull_to_change_item(pull: dict[str, Any], *, owner: str, repo: str) -> ChangeItem:
    assignee = _login(pull.get("assignee")) or _login(pull.get("user"))
    return ChangeItem(
        provider=IntegrationProvider.github,
        external_id=f"{owner}/{repo}#{pull['number']}",
        type=ChangeItemType.pr,
        title=pull.get("title") or f"Pull request #{pull['number']}",
        description=pull.get("body"),
        status="merged" if pull.get("merged_at") else pull.get("state"),
        url=pull.get("html_url"),
        assignee=assignee,
        labels=normalize_labels(pull.get("labels")),
        created_at=parse_timestamp(pull.get("created_at")),
        updated_at=parse_timestamp(pull.get("updated_at")),
        raw={
            "id": pull.get("id"),
            "number": pull.get("number"),
            "merged_at": pull.get("merged_at"),
            "head": (pull.get("head") or {}).get("ref"),
            "base": (pull.get("base") or {}).get("ref"),
        },
    )


def github_commit_to_change_item(commit: dict[str, Any], *, owner: str, repo: str) -> ChangeItem:
    details = commit.get("commit") or {}
    author = details.get("author") or {}
    sha = commit["sha"]
    return ChangeItem(
        provider=IntegrationProvider.github,
        external_id=f"{owner}/{repo}@{sha}",
        type=ChangeItemType.commit,
        title=title_from_commit_message(details.get("message")),
        description=details.get("message"),
        status=None,
        url=commit.get("html_url"),
        assignee=_login(commit.get("author")) or author.get("name"),
        created_at=parse_timestamp(author.get("date")),
        raw={"sha": sha},
    )


def jira_issue_to_change_item(issue: dict[str, Any], *, site_url: str | None = None) -> ChangeItem:
    fields = issue.get("fields") or {}
    key = issue["key"]
    assignee = fields.get("assignee") or {}
    url = f"{site_url.rstrip('/')}/browse/{key}" if site_url else issue.get("self")
    description = fields.get("description")
    return ChangeItem(
        provider=IntegrationProvider.jira,
        external_id=key,
        type=ChangeItemType.issue,
        title=fields.get("summary") or key,
        # Jira Cloud v3 returns rich-text documents; keep plain strings only.
        description=description if isinstance(description, str) else None,
        status=(fields.get("status") or {}).get("name"),
        url=url,
        assignee=assignee.get("displayName") if isinstance(assignee, dict) else None,
        labels=normalize_labels(fields.get("labels")),
        created_at=parse_timestamp(fields.get("created")),
        updated_at=parse_timestamp(fields.get("updated")),
        raw={
            "id": issue.get("id"),
            "issue_type": (fields.get("issuetype") or {}).get("name"),
            "priority": (fields.get("priority") or {}).get("name"),
            "fix_versions": [v.get("name") for v in fields.get("fixVersions") or [] if isinstance(v, dict)],
        },
    )


def linear_issue_to_change_item(issue: dict[str, Any]) -> ChangeItem:
    assignee = issue.get("assignee") or {}
    labels = (issue.get("labels") or {}).get("nodes")
    return ChangeItem(
        provider=IntegrationProvider.linear,
        external_id=issue.get("identifier") or issue["id"],
        type=ChangeItemType.issue,
        title=issue.get("title") or issue.get("identifier") or issue["id"],
        description=issue.get("description"),
        status=(issue.get("state") or {}).get("name"),
        url=issue.get("url"),
        assignee=assignee.get("displayName") or assignee.get("name"),
        labels=normalize_labels(labels),
        created_at=parse_timestamp(issue.get("createdAt")),
        updated_at=parse_timestamp(issue.get("updatedAt")),
        raw={"id": issue.get("id"), "priority": issue.get("priority")},
    )
