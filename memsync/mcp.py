"""
MCP stdio server for memsync: conversation memory and project files
as tools for AI agents.

Usage:
    memsync mcp                                  # stdio server (via CLI)
    claude mcp add memsync -- memsync mcp        # Claude Code integration

Tools are methods of MemoryTools, bound to one MemoryService; the server
holds no module-level state. stdout is the protocol channel, so nothing
here prints and logging goes to stderr or the ops log.
"""

import asyncio
import json
import logging
from typing import Annotated, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .api import MemoryService
from .store import StoreError
from .types import IndexedFile, Message, SyncRun

logger = logging.getLogger(__name__)

INSTRUCTIONS = (
    "Conversation memory and project file search. "
    "Record conversation turns, search past discussion by meaning, "
    "index a project directory and search its files."
)

# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_IDEMPOTENT = ToolAnnotations(idempotentHint=True, destructiveHint=False)
_ADDITIVE = ToolAnnotations(idempotentHint=False, destructiveHint=False)
_DESTRUCTIVE = ToolAnnotations(destructiveHint=True, idempotentHint=False)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _json(data) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _messages(messages: list[Message]) -> str:
    if not messages:
        return "No messages found."
    return _json([m.to_dict() for m in messages])


def _files(files: list[IndexedFile]) -> str:
    if not files:
        return "No files found."
    return _json([f.to_dict() for f in files])


def render_sync_run(run: SyncRun, verb: str) -> str:
    """One-line summary plus per-file failures."""
    if run.systemic_failure:
        head = f"Error: failed to index any files ({run.attempted} attempted) in {run.root}"
    else:
        head = (
            f"{verb} {run.root}: {run.succeeded} indexed "
            f"({run.new} new, {run.modified} updated), "
            f"{run.skipped} skipped, {run.failed} failed"
        )
    lines = [head]
    if run.cancelled:
        lines.append("Run was cancelled before completion.")
    for error in run.errors:
        lines.append(f"  failed: {error.path}: {error.reason}")
    if run.missing:
        lines.append(
            f"{len(run.missing)} indexed files no longer exist; "
            "use memory_prune_project to remove them."
        )
    return "\n".join(lines)


class MemoryTools:
    """MCP tool implementations over one MemoryService."""

    def __init__(self, service: MemoryService):
        self.service = service

    @property
    def client(self):
        return self.service.client

    # -- Conversation ------------------------------------------------------

    async def memory_add_message(
        self,
        role: Annotated[str, Field(description="Message role: user, assistant or system.")],
        content: Annotated[str, Field(description="Message text.")],
        tags: Annotated[Optional[list[str]], Field(
            description="Extra tags for this message.",
        )] = None,
    ) -> str:
        """Record a conversation turn."""
        try:
            message = self.service.add_message(role, content, tags=tags)
        except (ValueError, StoreError) as e:
            return f"Error: {e}"
        return f"Stored: {message.id}"

    async def memory_get_history(
        self,
        limit: Annotated[int, Field(description="Maximum messages to return (most recent first).")] = 10,
    ) -> str:
        try:
            return _messages(self.client.get_history(limit))
        except (ValueError, StoreError) as e:
            return f"Error: {e}"

    async def memory_search(
        self,
        query: Annotated[str, Field(description="Natural language search query.")],
        limit: Annotated[int, Field(description="Maximum results.")] = 5,
    ) -> str:
        try:
            return _messages(self.client.search(query, limit))
        except (ValueError, StoreError) as e:
            return f"Error: {e}"

    async def memory_delete_message(
        self,
        id: Annotated[str, Field(description="Message id.")],
    ) -> str:
        try:
            deleted = self.client.delete_message(id)
        except (ValueError, StoreError) as e:
            return f"Error: {e}"
        return f"Deleted: {id}" if deleted else f"Not found: {id}"

    async def memory_delete_all_messages(self) -> str:
        try:
            count = self.client.delete_all_messages()
        except StoreError as e:
            return f"Error: {e}"
        return f"Deleted {count} messages"

    async def memory_tag_messages(
        self,
        ids: Annotated[list[str], Field(description="Message ids to tag.")],
        tag: Annotated[str, Field(description="Tag to append.")],
    ) -> str:
        try:
            count = self.client.tag_messages(ids, tag)
        except (ValueError, StoreError) as e:
            return f"Error: {e}"
        return f"Tagged {count} messages with {tag}"

    async def memory_get_messages_by_tag(
        self,
        tag: Annotated[str, Field(description="Tag to look up, e.g. category:technical.")],
        limit: Annotated[int, Field(description="Maximum messages.")] = 10,
    ) -> str:
        try:
            return _messages(self.client.get_messages_by_tag(tag, limit))
        except (ValueError, StoreError) as e:
            return f"Error: {e}"

    async def memory_summarize_and_tag(
        self,
        query: Annotated[str, Field(description="Query selecting the messages to summarize.")],
        summary: Annotated[str, Field(description="Summary to attach.")],
        tags: Annotated[Optional[list[str]], Field(description="Tags to append.")] = None,
        limit: Annotated[int, Field(description="Number of matching messages to update.")] = 5,
    ) -> str:
        try:
            messages = self.client.summarize_and_tag(query, summary, tags or [], limit)
        except (ValueError, StoreError) as e:
            return f"Error: {e}"
        return f"Summarized {len(messages)} messages"

    # -- Conversation buffer -----------------------------------------------

    async def memory_set_conversation_tag(
        self,
        tag: Annotated[str, Field(description="Tag applied to every new message. Empty clears it.")],
    ) -> str:
        try:
            tag = self.service.set_conversation_tag(tag)
        except ValueError as e:
            return f"Error: {e}"
        return f"Conversation tag set to: {tag}" if tag else "Conversation tag cleared"

    async def memory_get_conversation_tag(self) -> str:
        return self.service.get_conversation_tag() or "(none)"

    async def memory_set_tagging_mode(
        self,
        mode: Annotated[str, Field(description="automatic or manual.")],
    ) -> str:
        try:
            dispatched = self.service.set_tagging_mode(mode)
        except ValueError as e:
            return f"Error: {e}"
        result = f"Tagging mode set to: {self.service.get_tagging_mode()}"
        if dispatched:
            result += f" ({dispatched} buffered messages sent for tagging)"
        return result

    async def memory_get_tagging_mode(self) -> str:
        return self.service.get_tagging_mode()

    # -- Project files -----------------------------------------------------

    async def memory_index_project(
        self,
        path: Annotated[str, Field(description="Project root directory.")],
        tag: Annotated[str, Field(description="Label stored with every indexed file.")] = "",
    ) -> str:
        try:
            run = await asyncio.to_thread(self.client.index_project, path, tag)
        except (ValueError, OSError, StoreError) as e:
            return f"Error: {e}"
        return render_sync_run(run, "Indexed")

    async def memory_update_project(
        self,
        path: Annotated[str, Field(description="Project root directory.")],
    ) -> str:
        try:
            run = await asyncio.to_thread(self.client.update_project, path)
        except (ValueError, OSError, StoreError) as e:
            return f"Error: {e}"
        return render_sync_run(run, "Updated")

    async def memory_prune_project(
        self,
        path: Annotated[str, Field(description="Project root directory.")],
    ) -> str:
        try:
            removed = await asyncio.to_thread(self.client.prune_project, path)
        except (ValueError, OSError, StoreError) as e:
            return f"Error: {e}"
        if not removed:
            return "Nothing to prune"
        return "Removed:\n" + "\n".join(f"  {p}" for p in removed)

    async def memory_search_project_files(
        self,
        query: Annotated[str, Field(description="Natural language search query.")],
        limit: Annotated[int, Field(description="Maximum results.")] = 5,
        tag: Annotated[Optional[str], Field(description="Only files with this label.")] = None,
    ) -> str:
        try:
            return _files(self.client.search_project_files(query, limit, tag=tag))
        except (ValueError, StoreError) as e:
            return f"Error: {e}"

    async def memory_delete_project_file(
        self,
        path: Annotated[str, Field(description="Project-relative file path.")],
        project: Annotated[Optional[str], Field(
            description="Project root; omit to delete the path from every project.",
        )] = None,
    ) -> str:
        try:
            count = self.client.delete_project_file(path, project=project)
        except (ValueError, StoreError) as e:
            return f"Error: {e}"
        return f"Deleted {count} records for {path}" if count else f"Not found: {path}"

    async def memory_delete_all_project_files(self) -> str:
        try:
            count = self.client.delete_all_project_files()
        except StoreError as e:
            return f"Error: {e}"
        return f"Deleted {count} project files"

    # -- Stats -------------------------------------------------------------

    async def memory_get_stats(self) -> str:
        try:
            return _json(self.client.get_stats())
        except StoreError as e:
            return f"Error: {e}"


# name -> (description, annotations)
TOOLS = {
    "memory_add_message": (
        "Record a conversation message. The current conversation tag is applied, "
        "and in automatic mode every few messages are categorized by topic.",
        _ADDITIVE,
    ),
    "memory_get_history": ("Recent conversation messages, most recent first.", _READ_ONLY),
    "memory_search": ("Search past conversation messages by meaning.", _READ_ONLY),
    "memory_index_project": (
        "Index a project directory: text files are stored for search; "
        "unchanged files are skipped.",
        _IDEMPOTENT,
    ),
    "memory_update_project": (
        "Re-index only the files of a project that changed since the last run.",
        _IDEMPOTENT,
    ),
    "memory_prune_project": (
        "Remove indexed files that no longer exist in the project directory.",
        _DESTRUCTIVE,
    ),
    "memory_search_project_files": ("Search indexed project files by meaning.", _READ_ONLY),
    "memory_get_stats": ("Message and project file counts.", _READ_ONLY),
    "memory_delete_message": ("Delete one conversation message by id.", _DESTRUCTIVE),
    "memory_delete_all_messages": (
        "Delete every conversation message (project files are kept).",
        _DESTRUCTIVE,
    ),
    "memory_tag_messages": ("Append a tag to the given messages.", _IDEMPOTENT),
    "memory_get_messages_by_tag": ("Messages carrying a tag, most recent first.", _READ_ONLY),
    "memory_summarize_and_tag": (
        "Attach a summary and tags to the messages best matching a query.",
        _IDEMPOTENT,
    ),
    "memory_delete_project_file": ("Delete an indexed project file by path.", _DESTRUCTIVE),
    "memory_delete_all_project_files": ("Delete every indexed project file.", _DESTRUCTIVE),
    "memory_set_conversation_tag": (
        "Set the tag applied to every new message until changed.",
        _IDEMPOTENT,
    ),
    "memory_get_conversation_tag": ("The current conversation tag.", _READ_ONLY),
    "memory_set_tagging_mode": (
        "Set tagging mode: automatic (categorize buffered messages) or manual.",
        _IDEMPOTENT,
    ),
    "memory_get_tagging_mode": ("The current tagging mode.", _READ_ONLY),
}


def create_server(service: MemoryService) -> FastMCP:
    """Build an MCP server whose tools operate on ``service``."""
    server = FastMCP("memsync", instructions=INSTRUCTIONS)
    tools = MemoryTools(service)
    for name, (description, annotations) in TOOLS.items():
        server.add_tool(
            getattr(tools, name),
            name=name,
            description=description,
            annotations=annotations,
        )
    return server


def run_stdio(service: MemoryService) -> None:
    """Serve MCP over stdin/stdout until the client disconnects."""
    create_server(service).run(transport="stdio")
