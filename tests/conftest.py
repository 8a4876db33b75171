"""Shared fixtures for workflow server tests."""

import asyncio
from collections import defaultdict

import pytest

import workflow_server


@pytest.fixture(autouse=True)
def isolated_server_state(tmp_path, monkeypatch):
    """Point the audit log at a temp file and use fresh locks for every test."""
    monkeypatch.setattr(workflow_server, "AUDIT_LOG_PATH", tmp_path / "audit" / "audit.log")
    monkeypatch.setattr(workflow_server, "file_locks", defaultdict(asyncio.Lock))
    monkeypatch.setattr(workflow_server, "audit_lock", asyncio.Lock())
    yield


@pytest.fixture
def project_dir(tmp_path):
    """An empty project root."""
    project = tmp_path / "project"
    project.mkdir()
    return project
