"""MCP tool schema definitions for strata archaeology operations.

Each Tool() defines the name, description, and JSON Schema for one MCP tool.
Validators and handlers live in strata.mcp.handlers.
"""

from mcp.types import Tool

from strata.types import VALID_DESTINATION_VALUES

VALID_PARTITIONS = sorted(VALID_DESTINATION_VALUES)

TOOLS = [
    Tool(
        name="archaeology_run",
        description="Run the archaeology pipeline over a conversation export file: parse, score drift, and commit messages to primary/sandbox/quarantine partitions in batches with checkpoint rollback.",
        inputSchema={
            "type": "object",
            "properties": {
                "export_path": {
                    "type": "string",
                    "description": "Path to the conversation export JSON",
                },
                "dry_run": {
                    "type": "boolean",
                    "description": "Simulate commits without persisting (default: false)",
                    "default": False,
                },
                "batch_size": {
                    "type": "integer",
                    "description": "Threads per batch (default: 15)",
                    "minimum": 1,
                    "maximum": 1000,
                },
                "max_drift": {
                    "type": "number",
                    "description": "Maximum aggregate batch drift before rollback (default: 35)",
                    "minimum": 0,
                    "maximum": 100,
                },
                "format": {
                    "type": "string",
                    "enum": ["text", "json"],
                    "description": "Output format (default: text)",
                    "default": "text",
                },
            },
            "required": ["export_path"],
        },
    ),
    Tool(
        name="archaeology_status",
        description="Show partition and index counts, or the report of a previous run when run_id is given.",
        inputSchema={
            "type": "object",
            "properties": {
                "run_id": {
                    "type": "string",
                    "description": "Run identifier (optional)",
                },
            },
        },
    ),
    Tool(
        name="archaeology_partition",
        description="List committed messages in one partition.",
        inputSchema={
            "type": "object",
            "properties": {
                "partition": {
                    "type": "string",
                    "enum": VALID_PARTITIONS,
                    "description": "Partition to list",
                },
                "limit": {
                    "type": "integer",
                    "description": "Maximum messages (default: 20)",
                    "default": 20,
                    "minimum": 1,
                    "maximum": 200,
                },
                "offset": {
                    "type": "integer",
                    "description": "Messages to skip (default: 0)",
                    "default": 0,
                    "minimum": 0,
                },
                "format": {
                    "type": "string",
                    "enum": ["text", "json"],
                    "default": "text",
                },
            },
            "required": ["partition"],
        },
    ),
    Tool(
        name="archaeology_search",
        description="Case-insensitive search over committed message content, optionally within one partition.",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Text to search for",
                },
                "partition": {
                    "type": "string",
                    "enum": VALID_PARTITIONS,
                    "description": "Restrict to a partition (optional)",
                },
                "limit": {
                    "type": "integer",
                    "description": "Maximum results (default: 10)",
                    "default": 10,
                    "minimum": 1,
                    "maximum": 100,
                },
            },
            "required": ["query"],
        },
    ),
    Tool(
        name="archaeology_anchors",
        description="List correction anchors: user statements that corrected assistant content, treated as ground truth.",
        inputSchema={
            "type": "object",
            "properties": {
                "limit": {
                    "type": "integer",
                    "description": "Maximum anchors (default: 50)",
                    "default": 50,
                    "minimum": 1,
                    "maximum": 500,
                },
            },
        },
    ),
    Tool(
        name="archaeology_override",
        description="Move a committed message to another partition after manual review. Messages from rejected or sandbox-only threads cannot be moved to primary.",
        inputSchema={
            "type": "object",
            "properties": {
                "message_id": {
                    "type": "string",
                    "description": "Committed message id",
                },
                "partition": {
                    "type": "string",
                    "enum": VALID_PARTITIONS,
                    "description": "Target partition",
                },
                "reason": {
                    "type": "string",
                    "description": "Why the message is being moved",
                },
            },
            "required": ["message_id", "partition", "reason"],
        },
    ),
]
