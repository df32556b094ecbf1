from __future__ import annotations

import enum


class IntegrationProvider(enum.StrEnum):
    github = "github"
    jira = "jira"
    linear = "linear"


class ChangeItemType(enum.StrEnum):
    issue = "issue"
    pr = "pr"
    commit = "commit"


class OAuthStateError(enum.StrEnum):
    invalid_state = "invalid_state"
    expired_state = "expired_state"
