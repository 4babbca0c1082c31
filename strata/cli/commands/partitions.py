"""Partition inspection and manual override commands."""

from strata.cli.commands.helpers import format_record, print_json, record_to_dict, validate_input
from strata.router import MemoryRouter
from strata.types import VALID_DESTINATION_VALUES, Destination


def cmd_partitions(args, store):
    """Handle partitions subcommands."""
    if args.partitions_action == "counts":
        counts = store.partition_counts()
        indexes = store.index_counts()
        if args.json:
            print_json({"partitions": counts, "indexes": indexes})
        else:
            print("Partitions:")
            for name, count in counts.items():
                print(f"  {name:<12} {count}")
            print("Indexes:")
            for name, count in indexes.items():
                print(f"  {name:<18} {count}")

    elif args.partitions_action == "list":
        records = store.query_partition(
            Destination(args.partition), limit=args.limit, offset=args.offset
        )
        if args.json:
            print_json([record_to_dict(r) for r in records])
        elif not records:
            print(f"No messages in {args.partition}.")
        else:
            print(f"{args.partition} ({len(records)} shown):")
            for record in records:
                print(format_record(record))

    elif args.partitions_action == "search":
        query = validate_input(args.query, "query", 500)
        partition = Destination(args.partition) if args.partition else None
        records = store.search(query, partition=partition, limit=args.limit)
        if args.json:
            print_json([record_to_dict(r) for r in records])
        elif not records:
            print(f"No messages matching '{query}'.")
        else:
            print(f"Found {len(records)} message(s):")
            for record in records:
                print(format_record(record))


def cmd_anchors(args, store):
    """List correction anchors."""
    anchors = store.list_anchors(limit=args.limit)
    if args.json:
        print_json([a.to_dict() for a in anchors])
        return
    if not anchors:
        print("No correction anchors.")
        return
    print(f"Correction anchors ({len(anchors)}):")
    for anchor in anchors:
        print(f"  [{anchor.category.value}] {anchor.source_message_id} (thread {anchor.thread_id})")
        print(f"    truth: {anchor.truth_value[:100]}")


def cmd_override(args, store):
    """Move a committed message to another partition."""
    reason = validate_input(args.reason, "reason", 500)
    message_id = validate_input(args.message_id, "message_id", 200)
    router = MemoryRouter(store)
    record = router.override(message_id, Destination(args.partition), reason)
    if args.json:
        print_json(record_to_dict(record))
    else:
        print(f"✓ {record.message_id} moved to {record.partition.value}")


def add_partition_parsers(subparsers):
    destinations = sorted(VALID_DESTINATION_VALUES)

    p_partitions = subparsers.add_parser("partitions", help="Inspect memory partitions")
    partitions_sub = p_partitions.add_subparsers(dest="partitions_action", required=True)

    p_counts = partitions_sub.add_parser("counts", help="Message counts per partition")
    p_counts.add_argument("--json", "-j", action="store_true")

    p_list = partitions_sub.add_parser("list", help="List messages in a partition")
    p_list.add_argument("partition", choices=destinations)
    p_list.add_argument("--limit", "-l", type=int, default=20)
    p_list.add_argument("--offset", type=int, default=0)
    p_list.add_argument("--json", "-j", action="store_true")

    p_search = partitions_sub.add_parser("search", help="Search message content")
    p_search.add_argument("query")
    p_search.add_argument("--partition", "-p", choices=destinations)
    p_search.add_argument("--limit", "-l", type=int, default=20)
    p_search.add_argument("--json", "-j", action="store_true")

    p_anchors = subparsers.add_parser("anchors", help="List correction anchors")
    p_anchors.add_argument("--limit", "-l", type=int)
    p_anchors.add_argument("--json", "-j", action="store_true")

    p_override = subparsers.add_parser("override", help="Move a message to another partition")
    p_override.add_argument("message_id")
    p_override.add_argument("partition", choices=destinations)
    p_override.add_argument("--reason", "-r", default="manual review")
    p_override.add_argument("--json", "-j", action="store_true")
