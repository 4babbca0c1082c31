"""Audit log and checkpoint inspection commands."""

import sys

from strata.audit import AuditLog
from strata.checkpoints import CheckpointChain
from strata.cli.commands.helpers import print_json, resolve_run_dir
from strata.pipeline import AUDIT_FILENAME, CHECKPOINT_DIRNAME
from strata.protocols import CheckpointChainError
from strata.types import Severity, Stage


def cmd_audit(args):
    """Handle audit subcommands."""
    log = AuditLog.load(resolve_run_dir(args) / AUDIT_FILENAME)

    if args.audit_action == "summary":
        summary = log.summary()
        if args.json:
            print_json(summary)
            return
        print(f"Audit events: {summary['total']}")
        for section in ("by_stage", "by_severity", "by_type"):
            print(f"\n{section.replace('by_', 'By ')}:")
            for name, count in sorted(summary[section].items()):
                print(f"  {name:<28} {count}")

    elif args.audit_action == "show":
        events = log.filter(
            stage=Stage(args.stage) if args.stage else None,
            event_type=args.type,
            min_severity=Severity(args.min_severity) if args.min_severity else None,
        )
        if args.limit:
            events = events[-args.limit :]
        if args.json:
            print_json([e.to_dict() for e in events])
            return
        for event in events:
            print(
                f"{event.sequence:>6} {event.timestamp[:19]} [{event.severity.value:<8}] "
                f"{event.stage.value:<12} {event.event_type}: {event.description}"
            )


def cmd_checkpoints(args):
    """Handle checkpoints subcommands."""
    chain = CheckpointChain.load(resolve_run_dir(args) / CHECKPOINT_DIRNAME)

    if args.checkpoints_action == "list":
        if args.json:
            print_json([c.to_dict() for c in chain])
            return
        if not len(chain):
            print("No checkpoints.")
            return
        for checkpoint in chain:
            print(
                f"  #{checkpoint.sequence} batch {checkpoint.batch_number} "
                f"{checkpoint.marker_type.value:<15} processed={checkpoint.processed_threads} "
                f"hash={checkpoint.content_hash[:12]}"
            )

    elif args.checkpoints_action == "verify":
        try:
            chain.verify()
        except CheckpointChainError as e:
            if args.json:
                print_json({"valid": False, "checkpoints": len(chain), "error": str(e)})
            else:
                print(f"✗ Checkpoint chain invalid: {e}")
            sys.exit(1)
        if args.json:
            print_json({"valid": True, "checkpoints": len(chain)})
        else:
            print(f"✓ Checkpoint chain valid ({len(chain)} checkpoints)")


def _add_run_selector(parser):
    parser.add_argument("run_id", nargs="?", help="Run identifier")
    parser.add_argument("--run-dir", help="Run directory (instead of a run id)")
    parser.add_argument("--json", "-j", action="store_true")


def add_audit_parsers(subparsers):
    p_audit = subparsers.add_parser("audit", help="Inspect a run's audit log")
    audit_sub = p_audit.add_subparsers(dest="audit_action", required=True)

    audit_show = audit_sub.add_parser("show", help="Show audit events")
    _add_run_selector(audit_show)
    audit_show.add_argument("--stage", choices=[s.value for s in Stage])
    audit_show.add_argument("--type", "-t", help="Event type or dotted prefix")
    audit_show.add_argument("--min-severity", choices=[s.value for s in Severity])
    audit_show.add_argument("--limit", "-l", type=int, help="Show only the last N events")

    audit_summary = audit_sub.add_parser("summary", help="Event counts")
    _add_run_selector(audit_summary)

    p_checkpoints = subparsers.add_parser("checkpoints", help="Inspect a run's checkpoints")
    checkpoints_sub = p_checkpoints.add_subparsers(dest="checkpoints_action", required=True)
    _add_run_selector(checkpoints_sub.add_parser("list", help="List checkpoints"))
    _add_run_selector(checkpoints_sub.add_parser("verify", help="Verify the checkpoint hash chain"))
