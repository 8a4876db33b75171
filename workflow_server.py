"""
AI Workflow MCP Server

This MCP server gives a coding agent a small set of workflow tools and a
bounded, per-project memory log of the work it has performed.

Tools:
- evaluate_task: score task complexity from four boolean flags
- env_verify: safety gate that must pass before installing packages
- think: record a reasoning step without side effects
- update_memory: append entries to a project's memory log, evicting the
  oldest entries once the log exceeds its token budget
- read_memory: return a project's current memory log
"""

from fastmcp import FastMCP
from typing import List, Dict, Optional, Any, Sequence, Union
from pydantic import Field, BaseModel, ConfigDict, ValidationError, field_validator
from datetime import date, datetime
from pathlib import Path
import contextlib
import json
import re
import sys
import asyncio
import aiofiles
import aiofiles.os
from collections import defaultdict
import os

# Initialize FastMCP server
mcp = FastMCP("ai-workflow-mcp-server")

# Configuration
MCP_TRANSPORT = os.getenv("WORKFLOW_MCP_TRANSPORT", "stdio")
MCP_HOST = os.getenv("WORKFLOW_MCP_HOST", "127.0.0.1")
MCP_PORT = int(os.getenv("WORKFLOW_MCP_PORT", "8080"))

_audit_log_setting = os.getenv("WORKFLOW_MCP_AUDIT_LOG")
if _audit_log_setting is None:
    AUDIT_LOG_PATH: Optional[Path] = Path.home() / ".workflow-mcp" / "audit.log"
elif _audit_log_setting:
    AUDIT_LOG_PATH = Path(_audit_log_setting).expanduser()
else:
    AUDIT_LOG_PATH = None

# File lock for async safety, keyed by resolved memory file path.
# Never pruned: one lock per project this process has touched.
file_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
audit_lock = asyncio.Lock()

# Memory limits configuration
MEMORY_CONFIG = {
    "storage": {
        "directory": ".memory",
        "filename": "memory.json",
    },
    "token_budget": 1000,
    # Estimated tokens per character, by character class
    "token_weights": {
        "cjk": 1.3,
        "letter": 0.3,
        "other": 0.6,
    },
    "complexity_threshold": 2,
}

CJK_PATTERN = re.compile(
    r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff\U00020000-\U0002fa1f\U00030000-\U0003134f]"
)
LETTER_PATTERN = re.compile(r"[A-Za-z]")


# ============================================================================
# Errors
# ============================================================================

class StorageReadError(RuntimeError):
    """A memory file exists but cannot be read back as a valid memory log."""


class StorageWriteError(RuntimeError):
    """A memory log could not be persisted."""


# ============================================================================
# Data Models
# ============================================================================

class MemoryEntry(BaseModel):
    """One recorded action, its rationale and its outcome."""
    model_config = ConfigDict(frozen=True, extra='forbid')

    what: str = Field(..., description="Action taken")
    why: str = Field(..., description="Rationale for the action")
    outcome: str = Field(..., description="Result of the action")
    task_context: Optional[str] = Field(None, description="Task the action belongs to")
    constraints: Optional[str] = Field(None, description="Constraints that applied")
    dependencies: Optional[str] = Field(None, description="Dependencies involved")

    @field_validator("what", "why", "outcome", "task_context", "constraints", "dependencies")
    @classmethod
    def check_encodable(cls, value: Optional[str]) -> Optional[str]:
        # Entries are stored as UTF-8; lone surrogates cannot be written
        if value is not None:
            try:
                value.encode("utf-8")
            except UnicodeEncodeError as e:
                raise ValueError(f"text is not valid UTF-8: {e.reason}") from e
        return value


class MemoryMeta(BaseModel):
    """Bookkeeping derived from the entries of a memory log."""
    total_entries: int = Field(default=0, ge=0)
    estimated_tokens: int = Field(default=0, ge=0)
    last_updated: Optional[date] = None


class Memory(BaseModel):
    """Schema for a project's persisted memory log.

    Entries are kept oldest first; that order is the eviction order.
    """
    entries: List[MemoryEntry] = Field(default_factory=list)
    meta: MemoryMeta = Field(default_factory=MemoryMeta)


# ============================================================================
# Input Models for Tools
# ============================================================================

class EvaluateTaskInput(BaseModel):
    """Input for evaluating task complexity."""
    model_config = ConfigDict(extra='forbid')

    is_multi_step: bool = Field(..., description="Requires multiple implementation steps?")
    has_unclear_requirements: bool = Field(..., description="Requirements are vague or need clarification?")
    can_break_into_subtasks: bool = Field(..., description="Can be divided into independent subtasks?")
    cannot_guarantee_bugfree: bool = Field(..., description="High risk of edge cases or bugs?")


class EnvVerifyInput(BaseModel):
    """Input for the package installation safety gate."""
    model_config = ConfigDict(extra='forbid')

    command: str = Field(..., description="Installation command to verify")
    env_verified: bool = Field(..., description="Has environment been checked?")


class ThinkInput(BaseModel):
    """Input for logging a reasoning step."""
    model_config = ConfigDict(extra='forbid')

    thought: str = Field(..., description="The thought or reasoning process")


def _validate_project_path(value: str) -> str:
    if "\x00" in value:
        raise ValueError("project_path must not contain NUL characters")
    return value


class UpdateMemoryInput(BaseModel):
    """Input for appending entries to a project's memory log."""
    model_config = ConfigDict(extra='forbid')

    project_path: str = Field(..., description="Root directory of the project whose memory is updated", min_length=1)
    entries: List[MemoryEntry] = Field(..., description="Entries to append, oldest first", min_length=1)

    @field_validator("project_path")
    @classmethod
    def reject_nul(cls, value: str) -> str:
        return _validate_project_path(value)


class ReadMemoryInput(BaseModel):
    """Input for reading a project's memory log."""
    model_config = ConfigDict(extra='forbid')

    project_path: str = Field(..., description="Root directory of the project", min_length=1)

    @field_validator("project_path")
    @classmethod
    def reject_nul(cls, value: str) -> str:
        return _validate_project_path(value)


# ============================================================================
# Helper Functions
# ============================================================================

def serialize_entry(entry: MemoryEntry) -> str:
    """Flatten an entry to the compact JSON text the estimator scans."""
    return json.dumps(
        entry.model_dump(exclude_none=True),
        ensure_ascii=False,
        separators=(",", ":"),
    )


def estimate_entry_tokens(entry: MemoryEntry) -> int:
    """Estimate the token cost of a memory entry.

    Every character of the serialized entry falls in exactly one class:
    CJK ideographs, ASCII letters, or anything else (digits, punctuation,
    whitespace, JSON structure). Each class has its own per-character weight
    and the weighted sum is rounded up.

    Weights are applied in integer tenths, so rounding up is exact.
    """
    text = serialize_entry(entry)
    cjk_count = len(CJK_PATTERN.findall(text))
    letter_count = len(LETTER_PATTERN.findall(text))
    other_count = len(text) - cjk_count - letter_count

    weights = MEMORY_CONFIG["token_weights"]
    tenths = (
        cjk_count * round(weights["cjk"] * 10)
        + letter_count * round(weights["letter"] * 10)
        + other_count * round(weights["other"] * 10)
    )
    return -(-tenths // 10)


def get_memory_file_path(project_path: str) -> Path:
    """Get the file path for a project's memory storage."""
    storage = MEMORY_CONFIG["storage"]
    root = Path(project_path).expanduser().resolve()
    return root / storage["directory"] / storage["filename"]


def evict_oldest(entries: List[MemoryEntry], budget: int) -> tuple[List[MemoryEntry], int]:
    """Drop entries from the front until the log fits the token budget.

    The last remaining entry is never dropped, however large it is.

    Returns (remaining_entries, evicted_count).
    """
    remaining = list(entries)
    total_tokens = sum(estimate_entry_tokens(e) for e in remaining)
    evicted = 0

    while total_tokens > budget and len(remaining) > 1:
        oldest = remaining.pop(0)
        total_tokens -= estimate_entry_tokens(oldest)
        evicted += 1

    return remaining, evicted


def build_meta(entries: List[MemoryEntry]) -> MemoryMeta:
    """Recompute metadata from scratch for the given entries."""
    return MemoryMeta(
        total_entries=len(entries),
        estimated_tokens=sum(estimate_entry_tokens(e) for e in entries),
        last_updated=date.today(),
    )


def score_task_complexity(params: EvaluateTaskInput) -> Dict[str, Any]:
    """Count raised complexity flags and decide whether a memory bank is needed."""
    criteria = params.model_dump()
    flags = sum(1 for raised in criteria.values() if raised)
    return {
        "complexity": flags,
        "needs_memory_bank": flags >= MEMORY_CONFIG["complexity_threshold"],
        "criteria": criteria,
    }


def check_install_safety(params: EnvVerifyInput) -> Dict[str, Any]:
    """Block package installation until the environment has been checked."""
    if not params.env_verified:
        return {"safe": False, "reason": "Environment not verified"}
    return {"safe": True}


async def audit(project: str, action: str, details: str = "") -> None:
    """Log memory operations for debugging and accountability.

    Writes audit entries to a persistent log file with format:
    timestamp | project | action | details

    Args:
        project: Project path the operation targeted
        action: Type of action (e.g., 'update_memory')
        details: Additional context about the operation
    """
    if AUDIT_LOG_PATH is None:
        return

    timestamp = datetime.now().isoformat()
    entry = f"{timestamp} | {project} | {action} | {details}\n"

    async with audit_lock:
        try:
            await aiofiles.os.makedirs(AUDIT_LOG_PATH.parent, exist_ok=True)
            async with aiofiles.open(AUDIT_LOG_PATH, 'a', encoding='utf-8') as f:
                await f.write(entry)
        except OSError as e:
            # Don't fail the operation if audit logging fails.
            # stdout belongs to the stdio transport.
            print(f"Audit log write failed: {e}", file=sys.stderr, flush=True)


# ============================================================================
# Memory Store
# ============================================================================

async def _read_memory_file(memory_file: Path) -> Memory:
    try:
        async with aiofiles.open(memory_file, 'r', encoding='utf-8') as f:
            content = await f.read()
        return Memory.model_validate_json(content)
    except (OSError, UnicodeDecodeError, ValidationError) as e:
        raise StorageReadError(f"Unreadable memory file {memory_file}: {e}") from e


async def _load_memory_unlocked(memory_file: Path) -> Memory:
    """Load a memory log without acquiring lock (caller must hold lock).

    A missing file means an empty log. So does a corrupt one: the log is
    reset rather than the error reported.
    """
    try:
        file_exists = await aiofiles.os.path.exists(memory_file)
    except OSError:
        file_exists = False

    if not file_exists:
        return Memory()

    try:
        return await _read_memory_file(memory_file)
    except StorageReadError as e:
        print(f"{e}; starting from an empty memory log", file=sys.stderr, flush=True)
        return Memory()


async def _save_memory_unlocked(memory_file: Path, memory: Memory) -> None:
    """Save a memory log without acquiring lock (caller must hold lock).

    Written to a temporary file first and renamed over the target, so a
    failed write leaves the previous file intact.
    """
    temp_file = memory_file.with_suffix('.tmp')

    try:
        payload = json.dumps(
            memory.model_dump(mode='json', exclude_none=True),
            indent=2,
            ensure_ascii=False,
        ).encode('utf-8')
    except UnicodeEncodeError as e:
        raise StorageWriteError(f"Cannot encode memory for {memory_file}: {e}") from e

    try:
        await aiofiles.os.makedirs(memory_file.parent, exist_ok=True)
        async with aiofiles.open(temp_file, 'wb') as f:
            await f.write(payload)
        await aiofiles.os.replace(temp_file, memory_file)
    except OSError as e:
        with contextlib.suppress(OSError):
            await aiofiles.os.remove(temp_file)
        raise StorageWriteError(f"Failed to save memory to {memory_file}: {e}") from e


async def load_memory(project_path: str) -> Memory:
    """Load a project's memory log with async safety.

    Returns an empty log if the project has none yet or its file is corrupt.
    Raises ValidationError for a project_path no file system can hold.
    """
    params = ReadMemoryInput(project_path=project_path)
    memory_file = get_memory_file_path(params.project_path)
    async with file_locks[str(memory_file)]:
        return await _load_memory_unlocked(memory_file)


async def append_memory(
    project_path: str,
    entries: Sequence[Union[MemoryEntry, Dict[str, Any]]],
) -> Dict[str, Any]:
    """Append entries to a project's memory log and enforce the token budget.

    The whole read-merge-evict-write cycle runs under the project's file lock.
    Entries are appended in the order given; afterwards the oldest entries are
    evicted one at a time while the log exceeds the budget and more than one
    entry remains. Metadata is rebuilt from the surviving entries before the
    log is written back.

    Args:
        project_path: Root directory of the project. The log lives in
                      .memory/memory.json beneath it.
        entries: Non-empty batch of MemoryEntry objects or dicts.

    Returns:
        On success: dict with success=True, inserted, total_entries,
        estimated_tokens, evicted and memory_file.
        On failure: dict with success=False, error_type ('validation' or
        'storage_write') and a human-readable error. Validation failures
        happen before the memory file is touched.
    """
    try:
        params = UpdateMemoryInput(project_path=project_path, entries=list(entries))
    except (ValidationError, TypeError) as e:
        return {
            "success": False,
            "error_type": "validation",
            "error": str(e),
        }

    memory_file = get_memory_file_path(params.project_path)

    async with file_locks[str(memory_file)]:
        memory = await _load_memory_unlocked(memory_file)

        merged = memory.entries + params.entries
        remaining, evicted = evict_oldest(merged, MEMORY_CONFIG["token_budget"])
        updated = Memory(entries=remaining, meta=build_meta(remaining))

        try:
            await _save_memory_unlocked(memory_file, updated)
        except StorageWriteError as e:
            await audit(params.project_path, "update_memory", f"failed | error={e}")
            return {
                "success": False,
                "error_type": "storage_write",
                "error": str(e),
            }

    await audit(
        params.project_path,
        "update_memory",
        f"inserted={len(params.entries)} | evicted={evicted} | "
        f"total={updated.meta.total_entries} | tokens={updated.meta.estimated_tokens}"
    )

    return {
        "success": True,
        "inserted": len(params.entries),
        "total_entries": updated.meta.total_entries,
        "estimated_tokens": updated.meta.estimated_tokens,
        "evicted": evicted,
        "memory_file": str(memory_file),
    }


# ============================================================================
# MCP Tools
# ============================================================================

@mcp.tool(
    name="evaluate_task",
    annotations={
        "title": "Evaluate Task Complexity",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def evaluate_task(params: EvaluateTaskInput) -> Dict[str, Any]:
    """Evaluate task complexity. Use for any task involving logic, algorithms, or multiple components. Skip only for trivial changes (styling, typos).

    Two or more raised flags mean the task should be tracked in a memory bank.

    Returns:
        Dict with complexity (number of raised flags), needs_memory_bank, and
        the criteria as given.
    """
    return score_task_complexity(params)


@mcp.tool(
    name="env_verify",
    annotations={
        "title": "Verify Install Safety",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def env_verify(params: EnvVerifyInput) -> Dict[str, Any]:
    """Mandatory before package installation. Blocks unsafe operations.

    Returns:
        Dict with safe=True, or safe=False and a reason.
    """
    return check_install_safety(params)


@mcp.tool(
    name="think",
    annotations={
        "title": "Think",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def think(params: ThinkInput) -> str:
    """Use for complex reasoning or caching thoughts. Logs process without external changes."""
    return params.thought


@mcp.tool(
    name="update_memory",
    annotations={
        "title": "Update Project Memory",
        "readOnlyHint": False,
        "destructiveHint": True,  # Evicts old entries
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def update_memory(params: UpdateMemoryInput) -> Dict[str, Any]:
    """Record completed work in the project's memory log.

    Each entry states what was done, why, and the outcome, with optional task
    context, constraints and dependencies. The log is capped at 1000 estimated
    tokens; the oldest entries are evicted first once it grows past that.

    Args:
        params: UpdateMemoryInput with project_path and a non-empty list of
                entries.

    Returns:
        Dict with success status, inserted count, total_entries,
        estimated_tokens and evicted count, or success=False with an error.
    """
    return await append_memory(params.project_path, params.entries)


@mcp.tool(
    name="read_memory",
    annotations={
        "title": "Read Project Memory",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def read_memory(params: ReadMemoryInput) -> Dict[str, Any]:
    """Return the project's memory log, oldest entry first.

    Args:
        params: ReadMemoryInput with project_path.

    Returns:
        Dict with project_path, memory_file, entries and meta. A project
        without a log (or with an unreadable one) yields an empty log.
    """
    memory = await load_memory(params.project_path)
    data = memory.model_dump(mode='json', exclude_none=True)
    data["meta"].setdefault("last_updated", None)

    return {
        "project_path": params.project_path,
        "memory_file": str(get_memory_file_path(params.project_path)),
        "entries": data["entries"],
        "meta": data["meta"],
    }


# ============================================================================
# MCP Resources
# ============================================================================

@mcp.resource("memory://config")
def memory_config() -> str:
    """Provides the current memory log configuration.

    Shows storage location, token budget and estimator weights.
    """
    storage = MEMORY_CONFIG["storage"]
    weights = MEMORY_CONFIG["token_weights"]
    return f"""# Project Memory Configuration

## Storage

- Location: `<project_path>/{storage['directory']}/{storage['filename']}`
- Audit Log: {AUDIT_LOG_PATH if AUDIT_LOG_PATH else 'disabled'}

## Token Budget

- Maximum: {MEMORY_CONFIG['token_budget']} estimated tokens per project
- Eviction: oldest entries first, the newest entry is always kept

## Token Estimation (per character of the serialized entry)

- CJK ideographs: {weights['cjk']}
- Latin letters: {weights['letter']}
- Everything else: {weights['other']}
"""


# ============================================================================
# Server Entry Point
# ============================================================================

def main() -> None:
    if MCP_TRANSPORT == "stdio":
        mcp.run()
    else:
        mcp.run(
            transport=MCP_TRANSPORT,
            host=MCP_HOST,
            port=MCP_PORT
        )


if __name__ == "__main__":
    main()
