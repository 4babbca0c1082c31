"""
Strata CLI - conversation archaeology from the command line.

Usage:
    strata run EXPORT [--dry-run] [--batch-size N] [--max-drift D] [--json]
    strata partitions counts|list PARTITION|search QUERY
    strata anchors [--limit N]
    strata audit show|summary RUN_ID
    strata checkpoints list|verify RUN_ID
    strata override MESSAGE_ID PARTITION [--reason R]
    strata mcp
"""

import argparse
import logging
import sys

from strata.cli.commands.audit import add_audit_parsers, cmd_audit, cmd_checkpoints
from strata.cli.commands.helpers import open_store
from strata.cli.commands.partitions import (
    add_partition_parsers,
    cmd_anchors,
    cmd_override,
    cmd_partitions,
)
from strata.cli.commands.run import add_run_parser, cmd_run
from strata.protocols import ConfigError

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

STORE_COMMANDS = frozenset({"partitions", "anchors", "override"})


def cmd_mcp(args):
    """Start the MCP server over stdio."""
    from strata.mcp.server import main as mcp_main

    mcp_main(db_path=args.db)


def main():
    parser = argparse.ArgumentParser(
        prog="strata",
        description="Conversation archaeology: drift analysis and partitioned memory import",
    )
    parser.add_argument("--db", help="Partition store database (default: <data dir>/strata.db)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    add_run_parser(subparsers)
    add_partition_parsers(subparsers)
    add_audit_parsers(subparsers)
    subparsers.add_parser("mcp", help="Start the MCP server (stdio)")

    args = parser.parse_args()

    # Dispatch with error handling
    try:
        if args.command == "run":
            cmd_run(args)
        elif args.command in STORE_COMMANDS:
            store = open_store(args)
            if args.command == "partitions":
                cmd_partitions(args, store)
            elif args.command == "anchors":
                cmd_anchors(args, store)
            elif args.command == "override":
                cmd_override(args, store)
        elif args.command == "audit":
            cmd_audit(args)
        elif args.command == "checkpoints":
            cmd_checkpoints(args)
        elif args.command == "mcp":
            cmd_mcp(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
