"""Tests for report rendering and prior link recovery."""
from __future__ import annotations

import re
from datetime import UTC, datetime

from marker_checker.links import (
    LINKS_BANNER,
    NO_LINKS_BANNER,
    REPORT_MARKER,
    REPORT_SEPARATOR,
    BodyEdit,
    BotComment,
    ClassifiedIssue,
    IssueSnapshot,
    Reference,
    classify_issue,
    classify_issues,
    parse_report_links,
    prior_links_from_comments,
    prior_links_from_history,
    render_report,
    report_has_links,
    split_history,
)

AUTHOR = "octocat"


def _snapshot(
    number: int,
    *,
    labels: tuple[str, ...] = (),
    is_open: bool = True,
    is_pull_request: bool = False,
    owner: str = "org",
    repo: str = "repo",
) -> IssueSnapshot:
    return IssueSnapshot(
        reference=Reference(owner=owner, repo=repo, number=number),
        labels=frozenset(labels),
        is_open=is_open,
        is_pull_request=is_pull_request,
    )


def _entry(snapshot: IssueSnapshot) -> ClassifiedIssue:
    return ClassifiedIssue(snapshot=snapshot, verdict=classify_issue(snapshot))


class TestRenderNoIssues:
    def test_empty_list(self):
        report = render_report([], AUTHOR)
        assert report.startswith(f"{REPORT_MARKER}{NO_LINKS_BANNER}")
        assert f"@{AUTHOR}, please link the related issues" in report
        assert "`#123`" in report
        assert "Invalid links" not in report
        assert "~~" not in report

    def test_all_invalid_entries_are_struck_through(self):
        entries = classify_issues(
            [
                _snapshot(1, is_pull_request=True),
                _snapshot(2, is_open=False),
                _snapshot(3, labels=("production",)),
            ],
        )
        lines = render_report(entries, AUTHOR).splitlines()
        assert lines[0] == f"{REPORT_MARKER}{NO_LINKS_BANNER}"
        assert lines[-3:] == [
            "1. ~~org/repo#1~~ [pull request]",
            "2. ~~org/repo#2~~ [closed]",
            "3. ~~org/repo#3~~ [labeled `production`]",
        ]
        assert REPORT_SEPARATOR not in lines


class TestRenderIssues:
    def test_single_valid_issue(self):
        report = render_report([_entry(_snapshot(10))], AUTHOR)
        assert report == (
            f"{REPORT_MARKER}{LINKS_BANNER}\n"
            f"- @{AUTHOR}, check the detected linked issues:\n"
            "1. org/repo#10"
        )

    def test_linkable_first_then_separator_then_invalid(self):
        entries = classify_issues(
            [
                _snapshot(1, is_open=False),
                _snapshot(2),
                _snapshot(3, labels=("beta",)),
                _snapshot(4, labels=("alpha",)),
            ],
        )
        lines = render_report(entries, AUTHOR).splitlines()
        assert lines[2:] == [
            "1. org/repo#2",
            "2. org/repo#4 [re-linking `alpha`]",
            "---",
            "3. ~~org/repo#1~~ [closed]",
            "4. ~~org/repo#3~~ [labeled `beta`]",
        ]
        assert lines.count(REPORT_SEPARATOR) == 1

    def test_marker_is_stable(self):
        entries = [_entry(_snapshot(5))]
        assert render_report(entries, AUTHOR) == render_report(entries, AUTHOR)
        assert render_report(entries, "someone").startswith(REPORT_MARKER)


class TestParseReportLinks:
    def test_reads_back_linkable_section_only(self):
        entries = classify_issues(
            [
                _snapshot(2, owner="Org", repo="Repo"),
                _snapshot(4, labels=("alpha",), owner="other", repo="lib.py"),
                _snapshot(1, is_open=False),
            ],
        )
        links = parse_report_links(render_report(entries, AUTHOR))
        assert [str(ref) for ref in links] == ["Org/Repo#2", "other/lib.py#4"]

    def test_inverse_of_rendered_linkable_references(self):
        entries = classify_issues([_snapshot(n) for n in (7, 3, 9)])
        links = parse_report_links(render_report(entries, AUTHOR))
        assert links.keys() == ["org/repo#7", "org/repo#3", "org/repo#9"]

    def test_no_issues_report_has_no_links(self):
        report = render_report([_entry(_snapshot(1, is_open=False))], AUTHOR)
        assert not report_has_links(report)
        assert len(parse_report_links(report)) == 0

    def test_foreign_text_has_no_links(self):
        assert len(parse_report_links("1. org/repo#1")) == 0
        assert len(parse_report_links(None)) == 0


class TestPriorLinksFromComments:
    def test_union_skips_no_issue_reports(self):
        first = render_report(classify_issues([_snapshot(1), _snapshot(2)]), AUTHOR)
        empty = render_report([], AUTHOR)
        second = render_report(classify_issues([_snapshot(2), _snapshot(3)]), AUTHOR)
        comments = [
            BotComment(id=1, body=first),
            BotComment(id=2, body=empty),
            BotComment(id=3, body=second),
        ]
        links = prior_links_from_comments(comments)
        assert links.keys() == ["org/repo#1", "org/repo#2", "org/repo#3"]

    def test_no_comments(self):
        assert len(prior_links_from_comments([])) == 0


class TestHistory:
    def test_split_history_sorts_and_appends_live_body(self):
        edits = [
            BodyEdit(created_at=datetime(2024, 1, 2, tzinfo=UTC), body="second"),
            BodyEdit(created_at=datetime(2024, 1, 1, tzinfo=UTC), body="first"),
        ]
        current, earlier = split_history(edits, "live")
        assert current == "live"
        assert earlier == ["first", "second"]

    def test_split_history_live_body_already_last(self):
        edits = [
            BodyEdit(created_at=datetime(2024, 1, 1, tzinfo=UTC), body="first"),
            BodyEdit(created_at=datetime(2024, 1, 2, tzinfo=UTC), body="live"),
        ]
        assert split_history(edits, "live") == ("live", ["first"])

    def test_split_history_without_edits(self):
        assert split_history([], "live") == ("live", [])

    def test_prior_links_keep_linkable_from_previous_body(self):
        resolved = {
            "org/repo#1": _entry(_snapshot(1)),
            "org/repo#2": _entry(_snapshot(2, is_open=False)),
            "org/repo#4": _entry(_snapshot(4)),
        }
        links = prior_links_from_history(
            ["#4 only in oldest", "#1 #2 #3"],
            resolved,
            "org",
            "repo",
        )
        assert links.keys() == ["org/repo#1"]

    def test_prior_links_without_history(self):
        assert len(prior_links_from_history([], {}, "org", "repo")) == 0


class TestReportOwners:
    def test_round_trip_of_owners_outside_typed_grammar(self):
        entries = classify_issues(
            [
                _snapshot(3, owner="legacy--user"),
                _snapshot(4, owner="trailing-", repo="repo"),
                _snapshot(5, owner="jdoe_acme", repo="repo", labels=("alpha",)),
            ],
        )
        links = parse_report_links(render_report(entries, AUTHOR))
        assert [str(ref) for ref in links] == [
            "legacy--user/repo#3",
            "trailing-/repo#4",
            "jdoe_acme/repo#5",
        ]

    def test_bracketed_tags_are_plain_text(self):
        entries = classify_issues(
            [
                _snapshot(1, labels=("alpha",)),
                _snapshot(2, is_pull_request=True),
                _snapshot(3, is_open=False),
                _snapshot(4, labels=("beta",)),
            ],
        )
        report = render_report(entries, AUTHOR)
        tags = re.findall(r"\[[^\]]*\]", report)
        assert tags == [
            "[re-linking `alpha`]",
            "[pull request]",
            "[closed]",
            "[labeled `beta`]",
        ]
        assert all(tag.isascii() for tag in tags)
