"""Dependency commands for the issuebranch CLI."""

from cyclopts import App

from issuebranch.errors import IssueNotFoundError

dep_app = App(name="dep", help="Manage dependencies between issues")


@dep_app.command
def add(issue_id: int, *depends_on: int) -> None:
    """Make an issue depend on other issues."""
    from issuebranch.cli import get_tracker

    with get_tracker() as tracker:
        for dep in depends_on:
            tracker.load_issue(dep)
        result = tracker.add_dependencies(issue_id, depends_on)
    print(f"Issue #{issue_id} depends on: {', '.join(f'#{d}' for d in result.issue.depends_on) or 'nothing'}")


@dep_app.command
def remove(issue_id: int, *depends_on: int) -> None:
    """Remove dependencies from an issue."""
    from issuebranch.cli import get_tracker

    with get_tracker() as tracker:
        result = tracker.remove_dependencies(issue_id, depends_on)
    print(f"Issue #{issue_id} depends on: {', '.join(f'#{d}' for d in result.issue.depends_on) or 'nothing'}")


@dep_app.command(name="list")
def list_deps(issue_id: int) -> None:
    """List the dependencies of an issue and whether they are done."""
    from issuebranch.cli import get_tracker

    with get_tracker() as tracker:
        issue = tracker.load_issue(issue_id)
        if not issue.depends_on:
            print(f"Issue #{issue_id} has no dependencies")
            return

        print(f"Dependencies of issue #{issue_id}:\n")
        for dep_id in issue.depends_on:
            try:
                dep = tracker.load_issue(dep_id)
            except IssueNotFoundError:
                print(f"  #{dep_id} (missing)")
                continue
            print(f"  #{dep.id} [{dep.status}] {dep.title}")
