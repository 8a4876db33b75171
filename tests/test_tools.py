"""Tests for the MCP tool surface, exercised through an in-memory FastMCP client."""

import json

import pytest
from fastmcp import Client
from fastmcp.exceptions import ToolError

from workflow_server import (
    EnvVerifyInput,
    EvaluateTaskInput,
    check_install_safety,
    mcp,
    score_task_complexity,
)


def _flags(count):
    names = [
        "is_multi_step",
        "has_unclear_requirements",
        "can_break_into_subtasks",
        "cannot_guarantee_bugfree",
    ]
    return {name: i < count for i, name in enumerate(names)}


async def _call(name, arguments):
    async with Client(mcp) as client:
        result = await client.call_tool(name, {"params": arguments})
    return result.content[0].text


class TestScoreTaskComplexity:
    @pytest.mark.parametrize("count,needs_bank", [(0, False), (1, False), (2, True), (3, True), (4, True)])
    def test_threshold(self, count, needs_bank):
        result = score_task_complexity(EvaluateTaskInput(**_flags(count)))
        assert result["complexity"] == count
        assert result["needs_memory_bank"] is needs_bank

    def test_criteria_echoed(self):
        flags = _flags(2)
        assert score_task_complexity(EvaluateTaskInput(**flags))["criteria"] == flags


class TestCheckInstallSafety:
    def test_unverified_blocked(self):
        result = check_install_safety(EnvVerifyInput(command="pip install requests", env_verified=False))
        assert result == {"safe": False, "reason": "Environment not verified"}

    def test_verified_allowed(self):
        result = check_install_safety(EnvVerifyInput(command="pip install requests", env_verified=True))
        assert result == {"safe": True}


class TestToolListing:
    @pytest.mark.asyncio
    async def test_tool_names(self):
        async with Client(mcp) as client:
            tools = await client.list_tools()
        assert {t.name for t in tools} == {
            "evaluate_task",
            "env_verify",
            "think",
            "update_memory",
            "read_memory",
        }

    @pytest.mark.asyncio
    async def test_config_resource(self):
        async with Client(mcp) as client:
            contents = await client.read_resource("memory://config")
        text = contents[0].text
        assert "1000" in text
        assert ".memory/memory.json" in text


class TestStatelessTools:
    @pytest.mark.asyncio
    async def test_evaluate_task(self):
        data = json.loads(await _call("evaluate_task", _flags(3)))
        assert data["complexity"] == 3
        assert data["needs_memory_bank"] is True

    @pytest.mark.asyncio
    async def test_env_verify(self):
        data = json.loads(await _call("env_verify", {"command": "npm i", "env_verified": False}))
        assert data["safe"] is False

    @pytest.mark.asyncio
    async def test_think_echoes(self):
        thought = "First parse, then validate.\nThen write."
        assert await _call("think", {"thought": thought}) == thought


class TestMemoryTools:
    @pytest.mark.asyncio
    async def test_update_then_read(self, project_dir):
        entry = {"what": "Added parser", "why": "Needed input", "outcome": "Parses", "task_context": "T1"}
        data = json.loads(await _call("update_memory", {"project_path": str(project_dir), "entries": [entry]}))
        assert data["success"] is True
        assert data["inserted"] == 1
        assert data["total_entries"] == 1

        data = json.loads(await _call("read_memory", {"project_path": str(project_dir)}))
        assert data["entries"] == [entry]
        assert data["meta"]["total_entries"] == 1
        assert data["meta"]["estimated_tokens"] > 0

    @pytest.mark.asyncio
    async def test_read_missing_project(self, project_dir):
        data = json.loads(await _call("read_memory", {"project_path": str(project_dir)}))
        assert data["entries"] == []
        assert data["meta"] == {"total_entries": 0, "estimated_tokens": 0, "last_updated": None}

    @pytest.mark.asyncio
    async def test_update_rejects_missing_field(self, project_dir):
        with pytest.raises(ToolError):
            await _call(
                "update_memory",
                {"project_path": str(project_dir), "entries": [{"what": "x", "outcome": "y"}]},
            )
        assert not (project_dir / ".memory").exists()

    @pytest.mark.asyncio
    async def test_update_reports_write_failure(self, project_dir):
        (project_dir / ".memory").write_text("")
        entry = {"what": "a", "why": "b", "outcome": "c"}
        data = json.loads(await _call("update_memory", {"project_path": str(project_dir), "entries": [entry]}))
        assert data["success"] is False
        assert data["error_type"] == "storage_write"
