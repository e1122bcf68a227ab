"""Issue reference extraction, classification, reporting and reconciliation."""
from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

REPORT_MARKER = "<!--Issue Marker Checker-->"
NO_LINKS_BANNER = "⚠️⚠️<b>No issues to be marked!</b>⚠️⚠️"
LINKS_BANNER = "✅<b>Issues to be marked!</b>"
INVALID_LINKS_HEADER = "🗑️<b>Invalid links:</b>"
REPORT_SEPARATOR = "---"
LINK_EXAMPLES = "either like `#123` or `owner/repository-name#456`"
BLOCKING_LABELS = ("beta", "production")
RELINK_LABEL = "alpha"
RELINK_NOTE = f"[re-linking `{RELINK_LABEL}`]"

OWNER_PATTERN = r"[A-Za-z0-9]+(?:-[A-Za-z0-9]+)*"
REPO_PATTERN = r"[A-Za-z0-9._-]+"
REFERENCE_REGEX = re.compile(
    rf"(?:(?P<owner>{OWNER_PATTERN})/(?P<repo>{REPO_PATTERN}))?#(?P<number>\d+)",
    re.IGNORECASE,
)
# Owners and repositories come from API URLs here, not from typed text.
REPORT_LINK_REGEX = re.compile(
    r"^\d+\. (?P<owner>[^/\s~]+)/(?P<repo>[^#\s]+)#(?P<number>\d+)"
    rf"(?: {re.escape(RELINK_NOTE)})?$",
)


class ReferenceMatch(BaseModel):
    """A raw reference as written in text, before defaults are applied."""

    model_config = ConfigDict(frozen=True)

    owner: str | None
    repo: str | None
    number: int


class Reference(BaseModel):
    """An issue reference with owner and repository filled in."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    number: int = Field(gt=0)

    @property
    def key(self) -> str:
        """Return the case-insensitive identity key."""
        return f"{self.owner}/{self.repo}#{self.number}".lower()

    def __str__(self) -> str:
        """Render the reference the way it is shown in reports."""
        return f"{self.owner}/{self.repo}#{self.number}"

    def __eq__(self, other: object) -> bool:
        """Compare references by identity key."""
        if not isinstance(other, Reference):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        """Hash references by identity key."""
        return hash(self.key)


class LinkSet:
    """Ordered collection of references, unique by identity key."""

    def __init__(self, references: Iterable[Reference] = ()) -> None:
        """Create a link set keeping the first occurrence of each key."""
        self._items: dict[str, Reference] = {}
        for reference in references:
            self.add(reference)

    def add(self, reference: Reference) -> bool:
        """Add a reference; return False when its key is already present."""
        if reference.key in self._items:
            return False
        self._items[reference.key] = reference
        return True

    def keys(self) -> list[str]:
        """Return identity keys in insertion order."""
        return list(self._items)

    def difference(self, other: LinkSet) -> LinkSet:
        """Return references of this set whose key is absent from other."""
        return LinkSet(ref for key, ref in self._items.items() if key not in other)

    def __contains__(self, item: object) -> bool:
        """Return whether a reference or key string is present."""
        if isinstance(item, Reference):
            return item.key in self._items
        if isinstance(item, str):
            return item.lower() in self._items
        return False

    def __iter__(self) -> Iterator[Reference]:
        """Iterate references in insertion order."""
        return iter(self._items.values())

    def __len__(self) -> int:
        """Return the number of distinct references."""
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        """Compare link sets by ordered identity keys."""
        if not isinstance(other, LinkSet):
            return NotImplemented
        return self.keys() == other.keys()

    def __repr__(self) -> str:
        """Render the references for debugging."""
        return f"LinkSet({[str(ref) for ref in self]})"


class IssueSnapshot(BaseModel):
    """Current state of a referenced issue as reported by GitHub."""

    model_config = ConfigDict(frozen=True)

    reference: Reference
    labels: frozenset[str] = frozenset()
    is_open: bool = True
    is_pull_request: bool = False


class Classification(str, Enum):
    """Validity category of a referenced issue."""

    INVALID_PULL_REQUEST = "invalid-pull-request"
    INVALID_CLOSED = "invalid-closed"
    INVALID_LABELED = "invalid-labeled"
    VALID = "valid"
    VALID_NEEDS_RELINK = "valid-needs-relink"


class Verdict(BaseModel):
    """Classification of an issue, with the blocking label when labeled."""

    model_config = ConfigDict(frozen=True)

    classification: Classification
    label: str | None = None

    @property
    def linkable(self) -> bool:
        """Return whether the issue should be connected to the pull request."""
        return self.classification in {
            Classification.VALID,
            Classification.VALID_NEEDS_RELINK,
        }


class ClassifiedIssue(BaseModel):
    """Issue snapshot paired with its verdict."""

    model_config = ConfigDict(frozen=True)

    snapshot: IssueSnapshot
    verdict: Verdict

    @property
    def reference(self) -> Reference:
        """Return the canonical reference of the issue."""
        return self.snapshot.reference


class ReconciliationPlan(BaseModel):
    """Board connections to add and remove."""

    model_config = ConfigDict(frozen=True)

    to_connect: tuple[Reference, ...] = ()
    to_disconnect: tuple[Reference, ...] = ()

    @property
    def is_empty(self) -> bool:
        """Return True when the plan requires no board calls."""
        return not self.to_connect and not self.to_disconnect


class BodyEdit(BaseModel):
    """One historical version of a pull request body."""

    model_config = ConfigDict(frozen=True)

    created_at: datetime
    body: str


class BotComment(BaseModel):
    """A comment previously posted by this bot."""

    model_config = ConfigDict(frozen=True)

    id: int
    body: str


def parse_references(text: str | None) -> list[ReferenceMatch]:
    """Return raw issue references in order of appearance."""
    if not text:
        return []
    return [
        ReferenceMatch(
            owner=match.group("owner"),
            repo=match.group("repo"),
            number=int(match.group("number")),
        )
        for match in REFERENCE_REGEX.finditer(text)
    ]


def dedupe_references(
    matches: Iterable[ReferenceMatch],
    owner: str,
    repo: str,
) -> LinkSet:
    """Fill in default owner/repo and keep the first match of each key."""
    links = LinkSet()
    for match in matches:
        # "#0" matches the grammar but never names an issue.
        if match.number <= 0:
            continue
        links.add(
            Reference(
                owner=match.owner or owner,
                repo=match.repo or repo,
                number=match.number,
            ),
        )
    return links


def extract_references(text: str | None, owner: str, repo: str) -> LinkSet:
    """Parse and dedupe references from text."""
    return dedupe_references(parse_references(text), owner, repo)


def blocking_label(snapshot: IssueSnapshot) -> str | None:
    """Return the label that prevents linking, preferring earlier labels."""
    for label in BLOCKING_LABELS:
        if label in snapshot.labels:
            return label
    return None


def _pull_request_rule(snapshot: IssueSnapshot) -> Verdict | None:
    """Reject pull requests."""
    if snapshot.is_pull_request:
        return Verdict(classification=Classification.INVALID_PULL_REQUEST)
    return None


def _closed_rule(snapshot: IssueSnapshot) -> Verdict | None:
    """Reject closed issues."""
    if not snapshot.is_open:
        return Verdict(classification=Classification.INVALID_CLOSED)
    return None


def _labeled_rule(snapshot: IssueSnapshot) -> Verdict | None:
    """Reject issues carrying a blocking label."""
    label = blocking_label(snapshot)
    if label is not None:
        return Verdict(classification=Classification.INVALID_LABELED, label=label)
    return None


def _relink_rule(snapshot: IssueSnapshot) -> Verdict | None:
    """Flag early-stage issues that need re-linking."""
    if RELINK_LABEL in snapshot.labels:
        return Verdict(classification=Classification.VALID_NEEDS_RELINK)
    return None


# Evaluated top to bottom; the first rule returning a verdict wins.
CLASSIFICATION_RULES: tuple[Callable[[IssueSnapshot], Verdict | None], ...] = (
    _pull_request_rule,
    _closed_rule,
    _labeled_rule,
    _relink_rule,
)


def classify_issue(snapshot: IssueSnapshot) -> Verdict:
    """Classify an issue from its latest snapshot."""
    for rule in CLASSIFICATION_RULES:
        verdict = rule(snapshot)
        if verdict is not None:
            return verdict
    return Verdict(classification=Classification.VALID)


def is_linkable(snapshot: IssueSnapshot) -> bool:
    """Return whether an issue may be connected to a pull request."""
    return classify_issue(snapshot).linkable


def classify_issues(snapshots: Iterable[IssueSnapshot]) -> list[ClassifiedIssue]:
    """Classify snapshots, dropping repeats of the same canonical issue."""
    seen: set[str] = set()
    entries: list[ClassifiedIssue] = []
    for snapshot in snapshots:
        if snapshot.reference.key in seen:
            continue
        seen.add(snapshot.reference.key)
        entries.append(
            ClassifiedIssue(snapshot=snapshot, verdict=classify_issue(snapshot)),
        )
    return entries


def linkable_references(entries: Iterable[ClassifiedIssue]) -> LinkSet:
    """Return the linkable references of classified entries."""
    return LinkSet(entry.reference for entry in entries if entry.verdict.linkable)


def invalid_tag(verdict: Verdict) -> str:
    """Return the bracketed reason shown next to an invalid link."""
    if verdict.classification is Classification.INVALID_PULL_REQUEST:
        return "[pull request]"
    if verdict.classification is Classification.INVALID_CLOSED:
        return "[closed]"
    return f"[labeled `{verdict.label}`]"


def format_entry(index: int, entry: ClassifiedIssue) -> str:
    """Format one numbered report line."""
    reference = str(entry.reference)
    if not entry.verdict.linkable:
        return f"{index}. ~~{reference}~~ {invalid_tag(entry.verdict)}"
    if entry.verdict.classification is Classification.VALID_NEEDS_RELINK:
        return f"{index}. {reference} {RELINK_NOTE}"
    return f"{index}. {reference}"


def render_report(entries: Sequence[ClassifiedIssue], author: str) -> str:
    """Render the status comment for the classified references."""
    linkable = [entry for entry in entries if entry.verdict.linkable]
    invalid = [entry for entry in entries if not entry.verdict.linkable]
    if not linkable:
        lines = [
            f"{REPORT_MARKER}{NO_LINKS_BANNER}",
            f"@{author}, please link the related issues <b>(if any)</b> "
            f"{LINK_EXAMPLES}.",
        ]
        if invalid:
            lines.extend(["", INVALID_LINKS_HEADER])
            lines.extend(
                format_entry(index, entry)
                for index, entry in enumerate(invalid, start=1)
            )
        return "\n".join(lines)

    lines = [
        f"{REPORT_MARKER}{LINKS_BANNER}",
        f"- @{author}, check the detected linked issues:",
    ]
    lines.extend(
        format_entry(index, entry) for index, entry in enumerate(linkable, start=1)
    )
    if invalid:
        lines.append(REPORT_SEPARATOR)
        lines.extend(
            format_entry(index, entry)
            for index, entry in enumerate(invalid, start=len(linkable) + 1)
        )
    return "\n".join(lines)


def is_report(body: str | None) -> bool:
    """Return whether a comment body was written by this bot."""
    return bool(body) and body.startswith(REPORT_MARKER)


def report_has_links(body: str | None) -> bool:
    """Return whether a report used the issues-to-be-marked template."""
    return bool(body) and body.startswith(f"{REPORT_MARKER}{LINKS_BANNER}")


def parse_report_links(body: str | None) -> LinkSet:
    """Read back the linkable section of a rendered report."""
    links = LinkSet()
    if not report_has_links(body):
        return links
    for line in body.splitlines()[2:]:
        if line == REPORT_SEPARATOR:
            break
        match = REPORT_LINK_REGEX.match(line)
        if match is None:
            continue
        links.add(
            Reference(
                owner=match.group("owner"),
                repo=match.group("repo"),
                number=int(match.group("number")),
            ),
        )
    return links


def prior_links_from_comments(comments: Iterable[BotComment]) -> LinkSet:
    """Union the linked issues announced by earlier bot reports."""
    links = LinkSet()
    for comment in comments:
        if not report_has_links(comment.body):
            continue
        for reference in parse_report_links(comment.body):
            links.add(reference)
    return links


def split_history(edits: Iterable[BodyEdit], live_body: str) -> tuple[str, list[str]]:
    """Return the current body and the earlier bodies, oldest first."""
    bodies = [edit.body for edit in sorted(edits, key=lambda edit: edit.created_at)]
    if not bodies or bodies[-1] != live_body:
        bodies.append(live_body)
    return bodies[-1], bodies[:-1]


def prior_links_from_history(
    earlier_bodies: Sequence[str],
    resolved: Mapping[str, ClassifiedIssue],
    owner: str,
    repo: str,
) -> LinkSet:
    """Return the linkable references of the body before the latest edit."""
    links = LinkSet()
    if not earlier_bodies:
        return links
    for reference in extract_references(earlier_bodies[-1], owner, repo):
        entry = resolved.get(reference.key)
        if entry is not None and entry.verdict.linkable:
            links.add(entry.reference)
    return links


def plan_reconciliation(current: LinkSet, prior: LinkSet) -> ReconciliationPlan:
    """Split current and prior links into board connects and disconnects."""
    return ReconciliationPlan(
        to_connect=tuple(current.difference(prior)),
        to_disconnect=tuple(prior.difference(current)),
    )
