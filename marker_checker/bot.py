#!/usr/bin/env python3
"""Check the issues linked from a pull request and reconcile them with ZenHub."""
from __future__ import annotations

import argparse
import concurrent.futures
import json
import re
import sys
import textwrap
import time
from pathlib import Path
from typing import Literal, cast

import requests
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from marker_checker.links import (
    BodyEdit,
    BotComment,
    ClassifiedIssue,
    IssueSnapshot,
    LinkSet,
    ReconciliationPlan,
    Reference,
    classify_issue,
    classify_issues,
    extract_references,
    is_report,
    linkable_references,
    plan_reconciliation,
    prior_links_from_comments,
    prior_links_from_history,
    render_report,
    split_history,
)

load_dotenv()

GITHUB_API_URL = "https://api.github.com"
GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"
ZENHUB_GRAPHQL_URL = "https://api.zenhub.com/public/graphql"
ISSUE_URL_REGEX = re.compile(
    r"https://api\.github\.com/repos/(?P<owner>[^/]+)/(?P<repo>[^/]+)"
    r"/issues/(?P<number>\d+)",
)
HistoryStrategy = Literal["comments", "edits"]
DEFAULT_HISTORY_STRATEGY: HistoryStrategy = "comments"
DEFAULT_MAX_WORKERS = 8
PAGE_SIZE = 100
REQUEST_TIMEOUT = 30
HTTP_ERROR_THRESHOLD = 400
REPOSITORY_PARTS = 2
JSONDict = dict[str, object]
JSONList = list[object]
MISSING_GITHUB_AUTH_MESSAGE = "Missing GitHub API credentials."


def ensure_dict(value: object, _context: str) -> JSONDict:
    """Return a dictionary value or raise."""
    if isinstance(value, dict):
        return cast("JSONDict", value)
    raise TypeError


def ensure_list(value: object, _context: str) -> JSONList:
    """Return a list value or raise."""
    if isinstance(value, list):
        return cast("JSONList", value)
    raise TypeError


def ensure_str(value: object, _context: str, default: str = "") -> str:
    """Return a string value or a default."""
    if isinstance(value, str):
        return value
    if value is None:
        return default
    raise TypeError


def ensure_int(value: object, _context: str) -> int:
    """Return an integer value or raise."""
    if isinstance(value, int):
        return value
    raise TypeError


class GraphQLRequestError(RuntimeError):
    """Raised when a GraphQL request fails."""

    def __init__(self, status_code: int, text: str) -> None:
        """Create a GraphQL request error."""
        super().__init__(f"GraphQL request failed ({status_code}): {text}")


class GraphQLErrorsError(RuntimeError):
    """Raised when GraphQL response includes errors."""

    def __init__(self, errors: object) -> None:
        """Create a GraphQL errors exception."""
        super().__init__(f"GraphQL errors: {errors}")


class GitHubRequestError(RuntimeError):
    """Raised when a GitHub REST call fails."""

    def __init__(self, status_code: int, text: str) -> None:
        """Create a GitHub request error."""
        super().__init__(f"GitHub request failed ({status_code}): {text}")


class HistoryCountMismatchError(RuntimeError):
    """Raised when paginated edit history is incomplete."""

    def __init__(self, expected: int, actual: int) -> None:
        """Create a history count mismatch error."""
        super().__init__(f"Expected {expected} body edits but queried {actual}.")


class MissingContextError(RuntimeError):
    """Raised when the repository or pull request cannot be determined."""

    def __init__(self, detail: str) -> None:
        """Create a missing context error."""
        super().__init__(f"Missing run context: {detail}")


class ZenHubIssueNotFoundError(RuntimeError):
    """Raised when ZenHub does not know a GitHub issue."""

    def __init__(self, reference: Reference) -> None:
        """Create an issue not found error."""
        super().__init__(f"ZenHub issue not found: {reference}")


# Failures that only drop the affected item.
ITEM_ERRORS = (
    requests.RequestException,
    GitHubRequestError,
    GraphQLRequestError,
    GraphQLErrorsError,
    ZenHubIssueNotFoundError,
    TypeError,
)


class Settings(BaseSettings):
    """Environment-backed settings for the checker."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    github_token: str | None = Field(default=None, alias="GITHUB_TOKEN")
    gh_token: str | None = Field(default=None, alias="GH_TOKEN")
    zenhub_key: str | None = Field(default=None, alias="ZENHUB_KEY")

    github_repository: str | None = Field(default=None, alias="GITHUB_REPOSITORY")
    github_event_path: str | None = Field(default=None, alias="GITHUB_EVENT_PATH")

    history_strategy: HistoryStrategy = Field(
        default=DEFAULT_HISTORY_STRATEGY,
        alias="MARKER_HISTORY_STRATEGY",
    )
    max_workers: int = Field(default=DEFAULT_MAX_WORKERS, alias="MARKER_MAX_WORKERS")


def get_settings() -> Settings:
    """Load settings from environment variables."""
    return Settings.model_validate({})


def log_elapsed(message: str, start: float, **fields: object) -> None:
    """Log elapsed time with additional fields."""
    elapsed = f"{time.perf_counter() - start:.2f}s"
    logger.info(
        "{message} (elapsed {elapsed})",
        message=message,
        elapsed=elapsed,
        **fields,
    )


class RunContext(BaseModel):
    """The pull request a run operates on."""

    owner: str
    repo: str
    number: int

    @property
    def pull_request(self) -> Reference:
        """Return the pull request as a reference."""
        return Reference(owner=self.owner, repo=self.repo, number=self.number)


class PullRequestInfo(BaseModel):
    """Pull request fields used by the check."""

    number: int
    author: str
    body: str


class RunResult(BaseModel):
    """Outcome of a check run."""

    report: str
    plan: ReconciliationPlan
    entries: list[ClassifiedIssue]
    prior_links: list[Reference] = Field(default_factory=list)


def github_headers(settings: Settings) -> dict[str, str]:
    """Return GitHub API headers with authentication."""
    token = settings.github_token or settings.gh_token
    if not token:
        raise SystemExit(MISSING_GITHUB_AUTH_MESSAGE)
    return {"Authorization": f"Bearer {token}", "Accept": "application/json"}


def call_graphql(
    url: str,
    headers: dict[str, str],
    query: str,
    variables: JSONDict,
) -> JSONDict:
    """Call a GraphQL endpoint and return the data payload."""
    response = requests.post(
        url,
        headers=headers,
        json={"query": query, "variables": variables},
        timeout=REQUEST_TIMEOUT,
    )
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        raise GraphQLRequestError(response.status_code, response.text)
    payload = ensure_dict(response.json(), "GraphQL response")
    errors = payload.get("errors")
    if errors:
        raise GraphQLErrorsError(errors)
    return ensure_dict(payload.get("data"), "GraphQL data")


def call_github(
    settings: Settings,
    method: str,
    path: str,
    *,
    params: JSONDict | None = None,
    payload: JSONDict | None = None,
) -> object:
    """Call the GitHub REST API and return the decoded body."""
    response = requests.request(
        method,
        f"{GITHUB_API_URL}{path}",
        headers=github_headers(settings),
        params=params,
        json=payload,
        timeout=REQUEST_TIMEOUT,
    )
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        raise GitHubRequestError(response.status_code, response.text)
    if not response.content:
        return None
    return response.json()


def fetch_body_history(
    settings: Settings,
    owner: str,
    repo: str,
    number: int,
) -> list[BodyEdit]:
    """Fetch every recorded version of a pull request body, oldest first."""
    query = textwrap.dedent(
        """
        query($owner: String!, $repo: String!, $number: Int!, $cursor: String) {
          repository(owner: $owner, name: $repo) {
            pullRequest(number: $number) {
              userContentEdits(first: 100, after: $cursor) {
                totalCount
                pageInfo { hasNextPage endCursor }
                nodes {
                  createdAt
                  diff
                }
              }
            }
          }
        }
        """,
    ).strip()

    edits: list[BodyEdit] = []
    total_count = 0
    cursor: str | None = None
    page = 0
    while True:
        data = call_graphql(
            GITHUB_GRAPHQL_URL,
            github_headers(settings),
            query,
            {"owner": owner, "repo": repo, "number": number, "cursor": cursor},
        )
        repository = ensure_dict(data.get("repository"), "repository")
        pull_request = ensure_dict(repository.get("pullRequest"), "pullRequest")
        container = ensure_dict(
            pull_request.get("userContentEdits") or {},
            "userContentEdits",
        )
        total_count = ensure_int(container.get("totalCount") or 0, "totalCount")
        nodes = ensure_list(container.get("nodes") or [], "userContentEdits.nodes")
        page += 1
        logger.debug("Retrieved body edit page", page=page, count=len(nodes))
        for node in nodes:
            node_dict = ensure_dict(node, "edit")
            edits.append(
                BodyEdit(
                    created_at=ensure_str(node_dict.get("createdAt"), "createdAt"),
                    body=ensure_str(node_dict.get("diff"), "diff"),
                ),
            )
        page_info = ensure_dict(container.get("pageInfo") or {}, "pageInfo")
        if not bool(page_info.get("hasNextPage")):
            break
        end_cursor = page_info.get("endCursor")
        cursor = ensure_str(end_cursor, "pageInfo.endCursor", "") or None
    if len(edits) != total_count:
        raise HistoryCountMismatchError(total_count, len(edits))
    return sorted(edits, key=lambda edit: edit.created_at)


def fetch_pull_request(
    settings: Settings,
    owner: str,
    repo: str,
    number: int,
) -> PullRequestInfo:
    """Fetch the pull request author and live body."""
    data = ensure_dict(
        call_github(settings, "GET", f"/repos/{owner}/{repo}/pulls/{number}"),
        "pull_request",
    )
    user = ensure_dict(data.get("user") or {}, "user")
    return PullRequestInfo(
        number=ensure_int(data.get("number"), "number"),
        author=ensure_str(user.get("login"), "user.login", "unknown"),
        body=ensure_str(data.get("body"), "body"),
    )


def extract_issue_labels(data: JSONDict) -> frozenset[str]:
    """Extract label names from an issue payload."""
    labels: set[str] = set()
    for label in ensure_list(data.get("labels") or [], "labels"):
        if isinstance(label, str):
            name = label
        else:
            name = ensure_str(ensure_dict(label, "label").get("name"), "label.name")
        if name:
            labels.add(name)
    return frozenset(labels)


def fetch_issue_snapshot(
    settings: Settings,
    owner: str,
    repo: str,
    number: int,
) -> IssueSnapshot:
    """Fetch the current state of an issue."""
    data = ensure_dict(
        call_github(settings, "GET", f"/repos/{owner}/{repo}/issues/{number}"),
        "issue",
    )
    # The API URL carries the issue's current home, even after a transfer.
    match = ISSUE_URL_REGEX.match(ensure_str(data.get("url"), "url"))
    if match is not None:
        reference = Reference(
            owner=match.group("owner"),
            repo=match.group("repo"),
            number=int(match.group("number")),
        )
    else:
        reference = Reference(owner=owner, repo=repo, number=number)
    return IssueSnapshot(
        reference=reference,
        labels=extract_issue_labels(data),
        is_open=ensure_str(data.get("state"), "state") != "closed",
        is_pull_request=data.get("pull_request") is not None,
    )


def list_bot_comments(
    settings: Settings,
    owner: str,
    repo: str,
    number: int,
) -> list[BotComment]:
    """List comments on a pull request that carry the report marker."""
    comments: list[BotComment] = []
    page = 1
    while True:
        nodes = ensure_list(
            call_github(
                settings,
                "GET",
                f"/repos/{owner}/{repo}/issues/{number}/comments",
                params={"per_page": PAGE_SIZE, "page": page},
            )
            or [],
            "comments",
        )
        for node in nodes:
            node_dict = ensure_dict(node, "comment")
            body = ensure_str(node_dict.get("body"), "comment.body")
            if is_report(body):
                comments.append(
                    BotComment(id=ensure_int(node_dict.get("id"), "id"), body=body),
                )
        if len(nodes) < PAGE_SIZE:
            break
        page += 1
    return comments


def delete_comment(settings: Settings, owner: str, repo: str, comment_id: int) -> None:
    """Delete an issue comment."""
    call_github(
        settings,
        "DELETE",
        f"/repos/{owner}/{repo}/issues/comments/{comment_id}",
    )


def create_comment(
    settings: Settings,
    owner: str,
    repo: str,
    number: int,
    body: str,
) -> None:
    """Create a comment on a pull request."""
    call_github(
        settings,
        "POST",
        f"/repos/{owner}/{repo}/issues/{number}/comments",
        payload={"body": body},
    )


def fetch_repository_id(settings: Settings, owner: str, repo: str) -> int:
    """Return the numeric GitHub id of a repository."""
    data = ensure_dict(call_github(settings, "GET", f"/repos/{owner}/{repo}"), "repo")
    return ensure_int(data.get("id"), "repository.id")


class ZenHubClient:
    """Connects and disconnects issues and pull requests on ZenHub."""

    def __init__(self, api_key: str, settings: Settings) -> None:
        """Create a client authenticated with a ZenHub API key."""
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }
        self._settings = settings
        self._repository_ids: dict[str, int] = {}

    def connect_issues(self, issues: list[Reference], pull_request: Reference) -> bool:
        """Connect issues to a pull request; return False if any call failed."""
        mutation = textwrap.dedent(
            """
            mutation($input: CreateIssuePrConnectionInput!) {
              createIssuePrConnection(input: $input) { issue { id } }
            }
            """,
        ).strip()
        return self._apply(mutation, issues, pull_request, "connect")

    def disconnect_issues(
        self,
        issues: list[Reference],
        pull_request: Reference,
    ) -> bool:
        """Disconnect issues from a pull request; return False if any call failed."""
        mutation = textwrap.dedent(
            """
            mutation($input: DeleteIssuePrConnectionInput!) {
              deleteIssuePrConnection(input: $input) { issue { id } }
            }
            """,
        ).strip()
        return self._apply(mutation, issues, pull_request, "disconnect")

    def issue_id(self, reference: Reference) -> str:
        """Return the ZenHub id of a GitHub issue or pull request."""
        query = textwrap.dedent(
            """
            query($repositoryGhId: Int!, $issueNumber: Int!) {
              issueByInfo(repositoryGhId: $repositoryGhId, issueNumber: $issueNumber) {
                id
              }
            }
            """,
        ).strip()
        data = call_graphql(
            ZENHUB_GRAPHQL_URL,
            self._headers,
            query,
            {
                "repositoryGhId": self._repository_id(reference),
                "issueNumber": reference.number,
            },
        )
        issue = data.get("issueByInfo")
        if not issue:
            raise ZenHubIssueNotFoundError(reference)
        return ensure_str(ensure_dict(issue, "issueByInfo").get("id"), "issue.id")

    def _repository_id(self, reference: Reference) -> int:
        """Return the cached GitHub repository id of a reference."""
        repository_key = f"{reference.owner}/{reference.repo}".lower()
        if repository_key not in self._repository_ids:
            self._repository_ids[repository_key] = fetch_repository_id(
                self._settings,
                reference.owner,
                reference.repo,
            )
        return self._repository_ids[repository_key]

    def _apply(
        self,
        mutation: str,
        issues: list[Reference],
        pull_request: Reference,
        action: str,
    ) -> bool:
        """Run a connection mutation for each issue against the pull request."""
        try:
            pull_request_id = self.issue_id(pull_request)
        except ITEM_ERRORS as error:
            logger.error(
                "ZenHub pull request lookup failed",
                action=action,
                pull_request=str(pull_request),
                error=str(error),
            )
            return False
        succeeded = True
        for issue in issues:
            try:
                call_graphql(
                    ZENHUB_GRAPHQL_URL,
                    self._headers,
                    mutation,
                    {
                        "input": {
                            "issueId": self.issue_id(issue),
                            "pullRequestId": pull_request_id,
                        },
                    },
                )
            except ITEM_ERRORS as error:
                succeeded = False
                logger.error(
                    "ZenHub {action} failed",
                    action=action,
                    issue=str(issue),
                    error=str(error),
                )
                continue
            logger.info("ZenHub {action} applied", action=action, issue=str(issue))
        return succeeded


def read_event_pr_number(event_path: str | None) -> int | None:
    """Read the pull request number from a GitHub Actions event payload."""
    if not event_path:
        return None
    path = Path(event_path)
    if not path.is_file():
        return None
    event = ensure_dict(json.loads(path.read_text(encoding="utf-8")), "event")
    pull_request = event.get("pull_request")
    if not isinstance(pull_request, dict):
        return None
    number = pull_request.get("number")
    return number if isinstance(number, int) else None


def resolve_context(args: argparse.Namespace, settings: Settings) -> RunContext:
    """Determine the repository and pull request to check."""
    repository = args.repo or settings.github_repository
    if not repository:
        raise MissingContextError("repository (use --repo or GITHUB_REPOSITORY)")
    parts = repository.split("/")
    if len(parts) != REPOSITORY_PARTS or not all(parts):
        raise MissingContextError(f"invalid repository {repository!r}")
    number = args.pr or read_event_pr_number(settings.github_event_path)
    if not number:
        raise MissingContextError("pull request number (use --pr or a PR event)")
    return RunContext(owner=parts[0], repo=parts[1], number=number)


def fan_out(
    settings: Settings,
    context: RunContext,
    references: LinkSet,
    stale_comments: list[BotComment],
) -> dict[str, IssueSnapshot]:
    """Look up issues and delete stale comments in parallel."""
    snapshots: dict[str, IssueSnapshot] = {}
    if not references and not stale_comments:
        return snapshots
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max(1, settings.max_workers),
    ) as executor:
        lookups = {
            reference.key: (
                reference,
                executor.submit(
                    fetch_issue_snapshot,
                    settings,
                    reference.owner,
                    reference.repo,
                    reference.number,
                ),
            )
            for reference in references
        }
        deletions = [
            (
                comment,
                executor.submit(
                    delete_comment,
                    settings,
                    context.owner,
                    context.repo,
                    comment.id,
                ),
            )
            for comment in stale_comments
        ]
        for key, (reference, future) in lookups.items():
            try:
                snapshots[key] = future.result()
            except ITEM_ERRORS as error:
                logger.warning(
                    "Issue lookup failed",
                    reference=str(reference),
                    error=str(error),
                )
        for comment, future in deletions:
            try:
                future.result()
            except ITEM_ERRORS as error:
                logger.warning(
                    "Comment deletion failed",
                    comment_id=comment.id,
                    error=str(error),
                )
    return snapshots


def apply_plan(
    settings: Settings,
    context: RunContext,
    plan: ReconciliationPlan,
) -> None:
    """Apply board connections; failures are logged, not raised."""
    if plan.is_empty:
        logger.info("Board already matches linked issues")
        return
    api_key = settings.zenhub_key
    if not api_key:
        logger.warning(
            "ZenHub key not configured, skipping board reconciliation",
            to_connect=len(plan.to_connect),
            to_disconnect=len(plan.to_disconnect),
        )
        return
    client = ZenHubClient(api_key, settings)
    if plan.to_connect:
        logger.info(
            "Connecting issues",
            issues=[str(ref) for ref in plan.to_connect],
        )
        client.connect_issues(list(plan.to_connect), context.pull_request)
    if plan.to_disconnect:
        logger.info(
            "Disconnecting issues",
            issues=[str(ref) for ref in plan.to_disconnect],
        )
        client.disconnect_issues(list(plan.to_disconnect), context.pull_request)


def run_check(
    context: RunContext,
    settings: Settings,
    *,
    dry_run: bool = False,
    strategy: HistoryStrategy | None = None,
) -> RunResult:
    """Execute the check and publish the report."""
    strategy = strategy or settings.history_strategy
    owner, repo = context.owner, context.repo
    logger.info(
        "Checking pull request {owner}/{repo}#{number}",
        owner=owner,
        repo=repo,
        number=context.number,
        strategy=strategy,
    )
    start = time.perf_counter()
    pull_request = fetch_pull_request(settings, owner, repo, context.number)
    comments = list_bot_comments(settings, owner, repo, context.number)
    body = pull_request.body
    earlier_bodies: list[str] = []
    if strategy == "edits":
        edits = fetch_body_history(settings, owner, repo, context.number)
        body, earlier_bodies = split_history(edits, pull_request.body)
    log_elapsed("Fetched pull request", start, comments=len(comments))

    references = extract_references(body, owner, repo)
    lookup_references = LinkSet(references)
    if earlier_bodies:
        for reference in extract_references(earlier_bodies[-1], owner, repo):
            lookup_references.add(reference)
    logger.info(
        "Detected references",
        references=[str(ref) for ref in references],
    )

    start = time.perf_counter()
    snapshots = fan_out(
        settings,
        context,
        lookup_references,
        [] if dry_run else comments,
    )
    log_elapsed("Fetched issue snapshots", start, count=len(snapshots))
    resolved = {
        key: ClassifiedIssue(snapshot=snapshot, verdict=classify_issue(snapshot))
        for key, snapshot in snapshots.items()
    }

    entries = classify_issues(
        snapshots[reference.key]
        for reference in references
        if reference.key in snapshots
    )
    report = render_report(entries, pull_request.author)
    if strategy == "edits":
        prior = prior_links_from_history(earlier_bodies, resolved, owner, repo)
    else:
        prior = prior_links_from_comments(comments)
    plan = plan_reconciliation(linkable_references(entries), prior)
    logger.info(
        "Reconciliation plan",
        to_connect=[str(ref) for ref in plan.to_connect],
        to_disconnect=[str(ref) for ref in plan.to_disconnect],
    )
    result = RunResult(
        report=report,
        plan=plan,
        entries=entries,
        prior_links=list(prior),
    )
    if dry_run:
        logger.info("--- DRY RUN OUTPUT ---")
        logger.opt(raw=True).info("{message}\n", message=report)
        return result

    apply_plan(settings, context, plan)
    create_comment(settings, owner, repo, context.number, report)
    logger.info("Posted report", pull_request=str(context.pull_request))
    return result


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Issue Marker Checker")
    parser.add_argument("--repo", help="Repository as owner/name")
    parser.add_argument("--pr", type=int, help="Pull request number")
    parser.add_argument(
        "--strategy",
        choices=["comments", "edits"],
        help="How to recover previously linked issues",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the report and plan instead of publishing them",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the checker CLI."""
    logger.info("Starting issue marker check")
    args = parse_args(argv)
    try:
        settings = get_settings()
        context = resolve_context(args, settings)
        run_check(context, settings, dry_run=args.dry_run, strategy=args.strategy)
    except Exception as error:  # noqa: BLE001
        logger.opt(exception=error).error(
            "Issue marker check failed: {error}",
            error=str(error),
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
