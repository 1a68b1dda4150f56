"""
Session Orchestrator — CLI

Drive sessions by hand: start one, ask for the next command, run it yourself,
and submit what happened.

Usage:
    # List registered workflow types
    python -m sessions.cli workflows

    # Start a session for a component
    python -m sessions.cli --account acme start component_coding \\
        --component cmp_users --project prj_shop

    # Get the next command (returns the pending one if already issued)
    python -m sessions.cli --account acme next <session_id>

    # Submit the result of that command
    python -m sessions.cli --account acme submit <session_id> <interaction_id> \\
        --status ok --data '{"stats": {"failures": 0}}'

    # Inspect
    python -m sessions.cli --account acme show <session_id>
    python -m sessions.cli --account acme list --status active
    python -m sessions.cli --account acme ledger <session_id>
"""

import argparse
import json
import os
import sys
import time
from pathlib import Path

from engine.config_loader import load_config
from engine.logging import configure_logging
from sessions.errors import SessionError
from sessions.runtime import SessionManager
from sessions.types import Scope


def _scope(args) -> Scope:
    return Scope(account_id=args.account, user_id=args.user, project_id=args.project)


def _json_arg(value: str | None, name: str) -> dict:
    if not value:
        return {}
    if value.startswith("@"):
        value = Path(value[1:]).read_text()
    parsed = json.loads(value)
    if not isinstance(parsed, dict):
        raise ValueError(f"--{name} must be a JSON object")
    return parsed


def cmd_workflows(args, manager: SessionManager):
    """List registered workflow types and their steps."""
    for wf in manager.registry.describe():
        print(f"\n{wf['workflow_type']}")
        print(f"  {wf['description']}")
        print(f"  steps: {' → '.join(wf['steps'])}")
        if args.verbose:
            for edge in wf["transitions"]:
                print(f"    {edge['from']:32s} {edge['status']:8s} → {edge['to'] or 'complete'}")


def cmd_start(args, manager: SessionManager):
    """Start a session."""
    subject = _json_arg(args.subject, "subject")
    if args.component:
        subject["component_id"] = args.component
    if args.project:
        subject.setdefault("project_id", args.project)

    session = manager.start(
        _scope(args),
        args.workflow_type,
        subject=subject,
        execution_mode=args.mode,
        parent_session_id=args.parent,
    )
    print(f"Started: {session.session_id}", file=sys.stderr)
    print(json.dumps(session.to_dict(include_interactions=False), indent=2, default=str))


def cmd_next(args, manager: SessionManager):
    """Print the next command to run."""
    options = _json_arg(args.options, "options")
    interaction = manager.next_command(_scope(args), args.session_id, options=options)
    command = interaction.command

    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  {interaction.step_id}  (#{interaction.sequence}, {command.mode.value})", file=sys.stderr)
    print(f"  interaction: {interaction.interaction_id}", file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)
    if isinstance(command.payload, str):
        print(command.payload)
    else:
        print(json.dumps(command.payload, indent=2))
    if args.verbose and command.metadata:
        print(json.dumps(command.metadata, indent=2, default=str), file=sys.stderr)


def cmd_submit(args, manager: SessionManager):
    """Submit the result of the pending command."""
    result = {
        "status": args.status,
        "data": _json_arg(args.data, "data"),
        "error_message": args.error,
    }
    session = manager.submit_result(_scope(args), args.session_id, args.interaction_id, result)
    last = session.last_completed_interaction
    recorded = last.result.status.value if last and last.result else "?"
    print(f"Recorded {recorded} for {args.interaction_id}; session is {session.status.value}")
    if last and last.result and last.result.error_message:
        print(f"\n{last.result.error_message}", file=sys.stderr)


def cmd_show(args, manager: SessionManager):
    """Show a session and its interaction history."""
    session = manager.get_session(_scope(args), args.session_id)
    if args.json:
        print(json.dumps(session.to_dict(), indent=2, default=str))
        return

    print(f"\n{session.session_id}")
    print(f"{'─' * 70}")
    print(f"  workflow:    {session.workflow_type}")
    print(f"  status:      {session.status.value}")
    print(f"  mode:        {session.execution_mode.value}")
    print(f"  subject:     {json.dumps(session.subject)}")
    print(f"  correlation: {session.correlation_id}")
    if session.parent_session_id:
        print(f"  parent:      {session.parent_session_id}")
    if session.child_session_ids:
        print(f"  children:    {', '.join(session.child_session_ids)}")
    print(f"\n  Interactions ({len(session.interactions)})")
    for i in session.interactions:
        status = i.result.status.value if i.result else "pending"
        print(f"    {i.sequence:3d}. {i.step_id:32s} {status}")
        if args.verbose and i.result and i.result.error_message:
            print(f"         {i.result.error_message.splitlines()[0][:80]}")
    if args.verbose and session.state:
        print(f"\n  State")
        for k, v in session.state.items():
            print(f"    {k}: {str(v)[:60]}")


def cmd_list(args, manager: SessionManager):
    """List sessions in scope."""
    sessions = manager.list_sessions(
        _scope(args),
        status=args.status,
        workflow_type=args.workflow_type,
        parent_session_id=args.parent,
        limit=args.limit,
    )
    if not sessions:
        print("No sessions found.")
        return
    print(f"\nSessions ({len(sessions)})")
    print(f"{'─' * 70}")
    for s in sessions:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(s.updated_at))
        last = s.last_interaction
        print(f"  {s.session_id}  {s.workflow_type:26s} {s.status.value:9s} "
              f"{last.step_id if last else '—':24s} {ts}")


def cmd_events(args, manager: SessionManager):
    """Show the driver events recorded for a session."""
    events = manager.get_events(_scope(args), args.session_id)
    if not events:
        print("No events recorded.")
        return
    for e in events:
        ts = time.strftime("%H:%M:%S", time.localtime(e.sent_at))
        print(f"  [{ts}] {e.event_type.value:24s} {json.dumps(e.data)[:60]}")


def cmd_ledger(args, manager: SessionManager):
    """Show the action ledger for a session."""
    entries = manager.get_ledger(_scope(args), args.session_id)
    if not entries:
        print("No ledger entries found.")
        return

    print(f"\nAction Ledger ({len(entries)} entries)")
    print(f"{'─' * 70}")
    for e in entries:
        ts = time.strftime("%H:%M:%S", time.localtime(e["created_at"]))
        print(f"  [{ts}] {e['action_type']:24s} {e['session_id']}")
        if args.verbose:
            for k, v in e["details"].items():
                print(f"           {k}: {str(v)[:60]}")


def cmd_abort(args, manager: SessionManager):
    """Fail an active session."""
    session = manager.abort(_scope(args), args.session_id, reason=args.reason)
    print(f"Aborted: {session.session_id} ({session.status.value})")


def cmd_mode(args, manager: SessionManager):
    """Change a session's execution mode."""
    session = manager.update_execution_mode(_scope(args), args.session_id, args.execution_mode)
    print(f"{session.session_id}: execution mode is now {session.execution_mode.value}")


def cmd_stats(args, manager: SessionManager):
    """Show statistics for the current account."""
    print(json.dumps(manager.stats(_scope(args)), indent=2))


COMMANDS = {
    "workflows": cmd_workflows,
    "start": cmd_start,
    "next": cmd_next,
    "submit": cmd_submit,
    "show": cmd_show,
    "list": cmd_list,
    "events": cmd_events,
    "ledger": cmd_ledger,
    "abort": cmd_abort,
    "mode": cmd_mode,
    "stats": cmd_stats,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Session Orchestrator — drive workflow sessions by hand",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--project-root", default=".", help="Directory holding orchestrator.yaml")
    parser.add_argument("--env", default=None, help="Config environment (default: $SO_ENV or dev)")
    parser.add_argument("--db", default=None, help="Session database path (default: store.db_path)")
    parser.add_argument("--account", default="local", help="Account id for scoping")
    parser.add_argument("--user", default="", help="User id for scoping")
    parser.add_argument("--project", default="", help="Project id for scoping")
    parser.add_argument("--verbose", "-v", action="store_true")

    subs = parser.add_subparsers(dest="command", help="Command")

    subs.add_parser("workflows", help="List workflow types")

    start_p = subs.add_parser("start", help="Start a session")
    start_p.add_argument("workflow_type")
    start_p.add_argument("--component", "-c", help="Component id of the subject")
    start_p.add_argument("--subject", "-s", help="Subject as JSON (or @file)")
    start_p.add_argument("--mode", "-m", default="manual", choices=["manual", "auto", "agentic"])
    start_p.add_argument("--parent", help="Parent session id")

    next_p = subs.add_parser("next", help="Get the next command")
    next_p.add_argument("session_id")
    next_p.add_argument("--options", "-o", help="Per-call options as JSON")

    submit_p = subs.add_parser("submit", help="Submit a command result")
    submit_p.add_argument("session_id")
    submit_p.add_argument("interaction_id")
    submit_p.add_argument("--status", default="ok", choices=["ok", "error", "warning"])
    submit_p.add_argument("--data", "-d", help="Result data as JSON (or @file)")
    submit_p.add_argument("--error", "-e", default=None, help="Error message")

    show_p = subs.add_parser("show", help="Show a session")
    show_p.add_argument("session_id")
    show_p.add_argument("--json", action="store_true")

    list_p = subs.add_parser("list", help="List sessions")
    list_p.add_argument("--status", choices=["active", "complete", "failed"])
    list_p.add_argument("--workflow-type", "-w")
    list_p.add_argument("--parent")
    list_p.add_argument("--limit", type=int, default=50)

    events_p = subs.add_parser("events", help="Show session events")
    events_p.add_argument("session_id")

    ledger_p = subs.add_parser("ledger", help="Show the action ledger")
    ledger_p.add_argument("session_id")

    abort_p = subs.add_parser("abort", help="Abort a session")
    abort_p.add_argument("session_id")
    abort_p.add_argument("--reason", default="Aborted", help="Why the session was aborted")

    mode_p = subs.add_parser("mode", help="Change execution mode")
    mode_p.add_argument("session_id")
    mode_p.add_argument("execution_mode", choices=["manual", "auto", "agentic"])

    subs.add_parser("stats", help="Show statistics")
    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    env = args.env or os.environ.get("SO_ENV", "dev")
    config = load_config(env=env, project_root=args.project_root)
    configure_logging(
        level="DEBUG" if args.verbose else config.get("logging.level", "WARNING"),
        fmt=config.get("logging.format", "json"),
    )
    manager = SessionManager.from_config(config, db_path=args.db, verbose=args.verbose)

    try:
        COMMANDS[args.command](args, manager)
    except SessionError as e:
        print(f"\n  ✗ {e.code}: {e}", file=sys.stderr)
        sys.exit(1)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        manager.close()


if __name__ == "__main__":
    main()
