"""CLI for issuebranch."""

import json
import sys
from typing import Annotated, Literal

import structlog
from cyclopts import App, Parameter

from issuebranch.config_commands import config_app
from issuebranch.dep_commands import dep_app
from issuebranch.errors import IssueBranchError
from issuebranch.models import Issue, Status
from issuebranch.project import Project
from issuebranch.tracker import IssueTracker

logger = structlog.get_logger()

app = App(
    name="ib",
    help="issuebranch - issues stored on a git data branch, claimed through a local ledger",
)

app.command(dep_app)
app.command(config_app)


def configure_logging(log_level: str) -> None:
    """Configure structlog with the specified log level."""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(min_level=log_level.lower()))


def get_tracker() -> IssueTracker:
    """Get the tracker for the project containing the current directory."""
    return IssueTracker(Project.discover())


def print_issue(issue: Issue) -> None:
    print(f"Issue #{issue.id}: {issue.title}")
    print(f"Status: {issue.status}")
    print(f"Created: {issue.created.isoformat()}")
    if issue.epic:
        print(f"Epic: {issue.epic}")
    if issue.assignee:
        print(f"Assignee: {issue.assignee}")
    if issue.branch:
        print(f"Branch: {issue.branch}")
    if issue.session:
        print(f"Session: {issue.session}")
    if issue.depends_on:
        print(f"Depends on: {', '.join(f'#{dep}' for dep in issue.depends_on)}")
    if issue.body:
        print()
        print(issue.body.rstrip("\n"))


def format_line(issue: Issue) -> str:
    line = f"#{issue.id:<4} {str(issue.status):<11} {issue.title}"
    if issue.assignee:
        line += f" (@{issue.assignee})"
    return line


@app.command
def init() -> None:
    """Initialize issue tracking in the current repository.

    On an already initialized project, runs legacy migrations and repairs
    the claim ledger instead.
    """
    project, created = Project.initialize()
    if created:
        print(f"Initialized project {project.metadata.project_id}")
        print(f"Data branch: {project.settings.data_branch}")
        return

    with IssueTracker(project) as tracker:
        report = tracker.repair()
    print(f"Project {project.metadata.project_id} already initialized")
    for change in report.migrations:
        print(f"  {change}")
    print("Ledger repaired")


@app.command
def create(
    title: str,
    epic: str | None = None,
    body: str = "",
    depends_on: list[int] | None = None,
    message: str | None = None,
) -> None:
    """Create a new issue.

    Args:
        title: Issue title
        epic: Epic the issue belongs to
        body: Markdown body
        depends_on: IDs of issues this one depends on
        message: Commit message for the data branch
    """
    with get_tracker() as tracker:
        issue = tracker.create_issue(title, epic=epic, body=body, depends_on=depends_on or [], message=message)
    print(f"Created issue #{issue.id}: {issue.title}")


@app.command
def show(issue_id: int, json_: bool = False) -> None:
    """Show an issue."""
    with get_tracker() as tracker:
        issue = tracker.load_issue(issue_id)
    if json_:
        print(json.dumps(issue.to_dict(), indent=2))
    else:
        print_issue(issue)


@app.command
def edit(issue_id: int, title: str | None = None, body: str | None = None) -> None:
    """Edit an issue, in the editor unless --title or --body is given."""
    with get_tracker() as tracker:
        result = tracker.edit_issue(issue_id, title=title, body=body)
    if result.commit is None:
        print(f"Issue #{issue_id} unchanged")
    else:
        print(f"Updated issue #{issue_id}: {result.issue.title}")


@app.command
def status(issue_id: int, value: str) -> None:
    """Set the status of an issue (open, in-progress, done, wont-fix)."""
    with get_tracker() as tracker:
        result = tracker.set_status(issue_id, value)
    print(f"Issue #{issue_id} is now {result.issue.status}")


@app.command
def done(issue_id: int) -> None:
    """Mark an issue as done."""
    with get_tracker() as tracker:
        tracker.mark_done(issue_id)
    print(f"Issue #{issue_id} marked done")


@app.command
def claim(issue_id: int, assignee: str | None = None, session: str | None = None) -> None:
    """Claim an issue for an assignee (default: the configured default_assignee)."""
    with get_tracker() as tracker:
        issue = tracker.claim(issue_id, assignee=assignee, session=session)
    branch = f" on {issue.branch}" if issue.branch else ""
    print(f"Claimed issue #{issue_id} for {issue.assignee}{branch}")


@app.command
def release(issue_id: int) -> None:
    """Release the claim on an issue."""
    with get_tracker() as tracker:
        tracker.release(issue_id)
    print(f"Released issue #{issue_id}")


@app.command
def set_session(issue_id: int, session: str) -> None:
    """Record the agent session working on an issue."""
    with get_tracker() as tracker:
        tracker.set_session(issue_id, session)
    print(f"Set session on issue #{issue_id}")


@app.command(name="list")
def list_issues(
    status: str | None = None,
    epic: str | None = None,
    assignee: str | None = None,
    json_: bool = False,
) -> None:
    """List issues, in progress first."""
    with get_tracker() as tracker:
        issues = tracker.list_issues(status=Status.parse(status) if status else None, epic=epic, assignee=assignee)

    if json_:
        print(json.dumps([issue.to_dict() for issue in issues], indent=2))
        return
    if not issues:
        print("No issues found")
        return
    for issue in issues:
        print(format_line(issue))


@app.command
def search(query: str) -> None:
    """Search issue titles and bodies."""
    with get_tracker() as tracker:
        issues = tracker.search(query)
    if not issues:
        print(f"No issues matching '{query}'")
        return
    for issue in issues:
        print(format_line(issue))


@app.command
def board() -> None:
    """Show issue counts per status."""
    with get_tracker() as tracker:
        summary = tracker.board()
    print(f"Project: {summary.project_id}\n")
    print(f"  open:        {summary.open_count}")
    print(f"  in-progress: {summary.in_progress_count}")
    print(f"  done:        {summary.done_count}")
    print(f"  wont-fix:    {summary.wont_fix_count}")
    print(f"  total:       {summary.total_count}")


@app.command
def doctor(fix: bool = False) -> None:
    """Check the claim ledger against the data branch.

    Args:
        fix: Run migrations and recompute the ledger from the data branch
    """
    with get_tracker() as tracker:
        report = tracker.repair() if fix else tracker.doctor()

    print(f"Schema version: {report.schema_version} (expected {report.expected_schema_version})")
    print(f"Issues: {report.issue_count}")
    print(f"Next issue ID: {report.next_issue_id} (max existing {report.max_issue_id})")
    if not report.next_id_ok:
        print("  next issue ID would reuse an existing ID")
    for issue_id in report.missing_claims:
        print(f"  issue #{issue_id} is in progress but has no claim")
    for issue_id in report.orphan_claims:
        print(f"  claim for issue #{issue_id} has no record")
    for change in report.migrations:
        print(f"  {change}")

    if report.is_ok:
        print("OK")
    elif fix:
        print("Repaired")
    else:
        print("Problems found. Run 'ib doctor --fix' to repair.")
        sys.exit(1)


@app.meta.default
def main(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    log_level: Literal["debug", "info", "warning", "error", "critical"] = "critical",
) -> None:
    """Main entry point with global options."""
    configure_logging(log_level)
    app(tokens)


def main_entry() -> None:
    """Console script entry point; turns domain errors into exit codes."""
    try:
        app.meta()
    except IssueBranchError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(e.exit_code)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main_entry()
