"""Tests for SwarmController lifecycle without remote peers."""

from __future__ import annotations

import asyncio

import pytest

from swarmget.exceptions import StorageIOError, ValidationError
from swarmget.models import (
    CancelledOutcome,
    CompletedOutcome,
    Config,
    FailedOutcome,
    FailureReason,
    StorageConfig,
    SwarmStatus,
    TimeoutConfig,
)
from swarmget.session.controller import SwarmController
from swarmget.session.events import EventStatus
from swarmget.storage.store import PieceStore

from helpers.content import make_content

pytestmark = [pytest.mark.unit, pytest.mark.session]


@pytest.fixture
def config():
    return Config(
        timeouts=TimeoutConfig(discovery_timeout=30, monitor_interval=0.05),
        storage=StorageConfig(fsync=False),
    )


@pytest.fixture
def content():
    return make_content(3 * 32 * 1024, piece_length=32 * 1024)


class TestStart:
    """Validation at start."""

    @pytest.mark.asyncio
    async def test_destination_must_exist(self, config, content, tmp_path):
        controller = SwarmController(config)
        with pytest.raises(StorageIOError):
            await controller.start(content.descriptor(), tmp_path / "missing", sources=[])

    @pytest.mark.asyncio
    async def test_duplicate_running_swarm(self, config, content, tmp_path):
        controller = SwarmController(config)
        handle = await controller.start(content.descriptor(), tmp_path, sources=[])
        with pytest.raises(ValidationError, match="already running"):
            await controller.start(content.descriptor(), tmp_path, sources=[])
        await controller.cancel(handle)
        second = await controller.start(content.descriptor(), tmp_path, sources=[])
        await second.cancel()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_before_any_peer(self, config, content, tmp_path):
        controller = SwarmController(config)
        handle = await controller.start(content.descriptor(), tmp_path, sources=[])
        outcome = await asyncio.wait_for(handle.cancel(), 5)
        assert isinstance(outcome, CancelledOutcome)
        assert handle.state == SwarmStatus.CANCELLED
        assert handle.outcome == outcome
        statuses = [e.status async for e in handle.events()]
        assert statuses[0] == EventStatus.INIT
        assert statuses[-1] == EventStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_shutdown_cancels_all(self, config, tmp_path):
        controller = SwarmController(config)
        handles = []
        for seed in (1, 2):
            content = make_content(1024, piece_length=1024, seed=seed)
            target = tmp_path / str(seed)
            target.mkdir()
            handles.append(await controller.start(content.descriptor(), target, sources=[]))
        await asyncio.wait_for(controller.shutdown(), 5)
        assert all(h.state == SwarmStatus.CANCELLED for h in handles)

    @pytest.mark.asyncio
    async def test_cancel_after_terminal_is_noop(self, config, content, tmp_path):
        controller = SwarmController(config)
        handle = await controller.start(content.descriptor(), tmp_path, sources=[])
        first = await handle.cancel()
        assert await handle.cancel() == first


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_snapshot_is_pure(self, config, content, tmp_path):
        controller = SwarmController(config)
        handle = await controller.start(content.descriptor(), tmp_path, sources=[])
        await asyncio.sleep(0.05)
        first = controller.snapshot(handle)
        assert first == controller.snapshot(handle)
        assert first.total_bytes == content.manifest.total_length
        assert first.bytes_verified == 0
        assert first.piece_bitmap == (False, False, False)
        assert first.state == SwarmStatus.DISCOVERING
        await handle.cancel()

    @pytest.mark.asyncio
    async def test_hash_only_snapshot(self, config, content, tmp_path):
        controller = SwarmController(config)
        handle = await controller.start(content.descriptor(embed_manifest=False), tmp_path, sources=[])
        snapshot = handle.snapshot()
        assert snapshot.state == SwarmStatus.RESOLVING
        assert snapshot.total_bytes is None
        assert snapshot.fraction_complete == 0.0
        await handle.cancel()


class TestLocalOutcomes:
    """Outcomes that need no network."""

    @pytest.mark.asyncio
    async def test_resume_complete_content(self, config, content, tmp_path):
        (tmp_path / content.manifest.name).write_bytes(content.data)
        controller = SwarmController(config)
        handle = await controller.start(content.descriptor(), tmp_path, sources=[])
        outcome = await asyncio.wait_for(handle.wait(), 5)
        assert isinstance(outcome, CompletedOutcome)
        assert outcome.total_bytes == len(content.data)
        assert [f.size for f in outcome.files] == [len(content.data)]
        events = [e async for e in handle.events()]
        assert [e.status for e in events] == [
            EventStatus.INIT,
            EventStatus.FOUND,
            EventStatus.COMPLETE,
        ]
        complete = events[-1].data
        assert complete["totalSize"] == len(content.data)
        assert complete["files"] == [
            {"index": 0, "name": "payload.bin", "path": "payload.bin", "size": len(content.data)}
        ]
        assert complete["location"] == str(tmp_path)

    @pytest.mark.asyncio
    async def test_storage_error_fails_swarm(self, config, content, tmp_path, monkeypatch):
        async def broken_open(self):
            raise StorageIOError("read-only file system")

        monkeypatch.setattr(PieceStore, "open", broken_open)
        controller = SwarmController(config)
        handle = await controller.start(content.descriptor(), tmp_path, sources=[])
        outcome = await asyncio.wait_for(handle.wait(), 5)
        assert isinstance(outcome, FailedOutcome)
        assert outcome.reason == FailureReason.STORAGE_ERROR
        events = [e async for e in handle.events()]
        assert events[-1].status == EventStatus.ERROR
        assert events[-1].data["reason"] == "storage_error"

    @pytest.mark.asyncio
    async def test_discovery_timeout_with_no_sources(self, content, tmp_path):
        config = Config(timeouts=TimeoutConfig(discovery_timeout=0.3, monitor_interval=0.05))
        controller = SwarmController(config)
        handle = await controller.start(content.descriptor(), tmp_path, sources=[])
        outcome = await asyncio.wait_for(handle.wait(), 5)
        assert isinstance(outcome, FailedOutcome)
        assert outcome.reason == FailureReason.DISCOVERY_TIMEOUT
