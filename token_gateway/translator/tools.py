from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

_AGENT_TOOLS: tuple[dict[str, Any], ...] = (
    {
        "name": "web-search",
        "description": (
            "Search the web for information. Returns results in markdown format.\n"
            "Each result includes the URL, title, and a snippet from the page if available."
        ),
        "schema": {
            "title": "WebSearchInput",
            "description": "Input schema for the web search tool.",
            "type": "object",
            "properties": {
                "query": {
                    "title": "Query",
                    "type": "string",
                    "description": "The search query to send.",
                },
                "num_results": {
                    "title": "Num Results",
                    "type": "integer",
                    "default": 5,
                    "minimum": 1,
                    "maximum": 10,
                    "description": "Number of results to return",
                },
            },
            "required": ["query"],
        },
        "safety": 0,
    },
    {
        "name": "web-fetch",
        "description": (
            "Fetches data from a webpage and converts it into Markdown.\n"
            "If the return is not valid Markdown, the page could not be parsed."
        ),
        "schema": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to fetch."},
            },
            "required": ["url"],
        },
        "safety": 0,
    },
    {
        "name": "codebase-retrieval",
        "description": (
            "Context engine for the current codebase. Takes a natural language "
            "description of the code being looked for and returns the most relevant "
            "snippets across languages, reflecting the files currently on disk."
        ),
        "schema": {
            "type": "object",
            "properties": {
                "information_request": {
                    "type": "string",
                    "description": "A description of the information you need.",
                },
            },
            "required": ["information_request"],
        },
        "safety": 1,
    },
    {
        "name": "shell",
        "description": (
            "Execute a shell command.\n\n"
            "- Use this tool to interact with the local version control system.\n"
            "- Prefer a more specific tool when one can perform the function.\n\n"
            "The OS is darwin. The shell is 'bash'."
        ),
        "schema": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute.",
                },
            },
            "required": ["command"],
        },
        "safety": 2,
    },
    {
        "name": "str-replace-editor",
        "description": (
            "Custom editing tool for viewing, creating and editing files.\n"
            "* `path` is a file path relative to the workspace root\n"
            "* command `view` displays the result of applying `cat -n`\n"
            "* `insert` and `str_replace` output a snippet of the edited section\n"
            "* line numbers are 1-based and start/end numbers are inclusive\n"
            "* This is the only tool that should be used for editing files."
        ),
        "schema": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "enum": ["view", "str_replace", "insert"],
                    "description": "The command to run.",
                },
                "path": {
                    "type": "string",
                    "description": "Full path to file relative to the workspace root.",
                },
                "view_range": {
                    "type": "array",
                    "items": {"type": "integer"},
                    "description": "Optional line range for 'view', e.g. [11, 12].",
                },
                "insert_line_entries": {
                    "type": "array",
                    "description": "Entries for 'insert'.",
                    "items": {
                        "type": "object",
                        "properties": {
                            "insert_line": {"type": "integer"},
                            "new_str": {"type": "string"},
                        },
                        "required": ["insert_line", "new_str"],
                    },
                },
                "str_replace_entries": {
                    "type": "array",
                    "description": "Entries for 'str_replace'; entries must not overlap.",
                    "items": {
                        "type": "object",
                        "properties": {
                            "old_str": {"type": "string"},
                            "old_str_start_line_number": {"type": "integer"},
                            "old_str_end_line_number": {"type": "integer"},
                            "new_str": {"type": "string"},
                        },
                        "required": [
                            "old_str",
                            "new_str",
                            "old_str_start_line_number",
                            "old_str_end_line_number",
                        ],
                    },
                },
            },
            "required": ["command", "path"],
        },
        "safety": 1,
    },
    {
        "name": "save-file",
        "description": "Save a file.",
        "schema": {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "The path of the file to save.",
                },
                "file_content": {
                    "type": "string",
                    "description": "The content of the file to save.",
                },
                "add_last_line_newline": {
                    "type": "boolean",
                    "description": "Whether to add a newline at the end of the file.",
                },
            },
            "required": ["file_path", "file_content"],
        },
        "safety": 1,
    },
    {
        "name": "launch-process",
        "description": (
            "Launch a new process.\n"
            "If wait is specified, waits up to that many seconds and returns its "
            "output; otherwise returns immediately with the process ID."
        ),
        "schema": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute",
                },
                "wait": {
                    "type": "number",
                    "description": "Seconds to wait for the command to complete.",
                },
                "cwd": {
                    "type": "string",
                    "description": "Working directory for the command.",
                },
            },
            "required": ["command"],
        },
        "safety": 2,
    },
    {
        "name": "read-process",
        "description": "Read output from a terminal.",
        "schema": {
            "type": "object",
            "properties": {
                "terminal_id": {
                    "type": "number",
                    "description": "Terminal ID to read from.",
                },
            },
            "required": ["terminal_id"],
        },
        "safety": 1,
    },
    {
        "name": "kill-process",
        "description": "Kill a process by its terminal ID.",
        "schema": {
            "type": "object",
            "properties": {
                "terminal_id": {
                    "type": "number",
                    "description": "Terminal ID to kill.",
                },
            },
            "required": ["terminal_id"],
        },
        "safety": 1,
    },
)


@lru_cache(maxsize=1)
def _agent_tool_definitions() -> tuple[dict[str, Any], ...]:
    return tuple(
        {
            "name": tool["name"],
            "description": tool["description"],
            "input_schema_json": json.dumps(tool["schema"], separators=(",", ":")),
            "tool_safety": tool["safety"],
        }
        for tool in _AGENT_TOOLS
    )


def agent_tool_definitions() -> list[dict[str, Any]]:
    return [dict(item) for item in _agent_tool_definitions()]
