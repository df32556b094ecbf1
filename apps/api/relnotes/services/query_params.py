from __future__ import annotations


def parse_integer_param(
    value: str | None,
    fallback: int,
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    """Parse a query string integer, clamping to bounds and falling back on garbage."""
    try:
        parsed = int((value or "").strip())
    except ValueError:
        return fallback

    if min_value is not None:
        parsed = max(min_value, parsed)
    if max_value is not None:
        parsed = min(max_value, parsed)
    return parsed


def parse_csv_param(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",")]
    items = [item for item in items if item]
    return items or None


def _jql_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_jira_jql(
    *,
    project_key: str | None = None,
    issue_types: list[str] | None = None,
    statuses: list[str] | None = None,
) -> str:
    clauses: list[str] = []
    if project_key:
        clauses.append(f"project = {_jql_quote(project_key)}")
    if issue_types:
        clauses.append(f"issuetype in ({', '.join(_jql_quote(t) for t in issue_types)})")
    if statuses:
        clauses.append(f"status in ({', '.join(_jql_quote(s) for s in statuses)})")

    where = " AND ".join(clauses)
    return f"{where} ORDER BY updated DESC" if where else "ORDER BY updated DESC"
