"""Tests for ProgressEmitter and ExecutionContext."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import MagicMock

import httpx
import pytest

from secflow.context import (
    ComponentLogger,
    ProgressEmitter,
    ProgressLevel,
    create_execution_context,
)
from secflow.volumes import LocalVolumeBackend, VolumeManager


class TestProgressEmitter:
    def test_emit_buffers_events(self):
        emitter = ProgressEmitter(maxsize=4)
        emitter.emit("starting")
        emitter.emit("careful", level="warn", data={"n": 1})

        events = emitter.drain()

        assert [e.message for e in events] == ["starting", "careful"]
        assert events[1].level == ProgressLevel.WARN
        assert events[1].data == {"n": 1}
        assert len(emitter) == 0

    def test_full_buffer_drops_oldest(self):
        emitter = ProgressEmitter(maxsize=3)
        for i in range(5):
            emitter.emit(f"event {i}")

        assert emitter.dropped == 2
        assert [e.message for e in emitter.drain()] == ["event 2", "event 3", "event 4"]

    def test_unknown_level_falls_back_to_info(self):
        emitter = ProgressEmitter()
        emitter.emit("hmm", level="verbose")
        assert emitter.drain()[0].level == ProgressLevel.INFO

    def test_failing_listener_never_propagates(self, caplog):
        emitter = ProgressEmitter()
        seen: list[str] = []
        emitter.subscribe(MagicMock(side_effect=RuntimeError("observer down")))
        emitter.subscribe(lambda event: seen.append(event.message))

        with caplog.at_level(logging.ERROR, logger="secflow.context"):
            emitter.emit("still delivered")

        assert seen == ["still delivered"]
        assert "observer down" in caplog.text

    @pytest.mark.asyncio
    async def test_listeners_run_after_emit_returns_inside_a_loop(self):
        emitter = ProgressEmitter()
        seen: list[str] = []
        emitter.subscribe(lambda event: seen.append(event.message))

        emitter.emit("queued")
        assert seen == []

        await asyncio.sleep(0)
        assert seen == ["queued"]

    def test_invalid_maxsize(self):
        with pytest.raises(ValueError):
            ProgressEmitter(maxsize=0)

    def test_event_to_dict(self):
        emitter = ProgressEmitter()
        emitter.emit("done", level=ProgressLevel.ERROR)
        payload = emitter.drain()[0].to_dict()

        assert payload["message"] == "done"
        assert payload["level"] == "error"
        assert "timestamp" in payload


class TestComponentLogger:
    def test_prefixes_label(self, caplog):
        adapter = ComponentLogger(logging.getLogger("secflow.test"), {"component_label": "Nuclei"})
        with caplog.at_level(logging.INFO, logger="secflow.test"):
            adapter.info("hello")
        assert "[Nuclei] hello" in caplog.text


class TestExecutionContext:
    @pytest.mark.asyncio
    async def test_create_with_defaults(self, tmp_path):
        volumes = VolumeManager(LocalVolumeBackend(tmp_path))
        context = create_execution_context("secflow.test", tenant_id="acme", volumes=volumes)
        try:
            assert context.tenant_id == "acme"
            assert context.run_id
            assert context.volumes is volumes
            assert context.containers is None
            assert isinstance(context.http, httpx.AsyncClient)
        finally:
            await context.aclose()
        assert context.http.is_closed

    @pytest.mark.asyncio
    async def test_supplied_http_client_is_not_closed(self, tmp_path):
        client = httpx.AsyncClient()
        volumes = VolumeManager(LocalVolumeBackend(tmp_path))
        async with create_execution_context("secflow.test", run_id="run-1", http=client, volumes=volumes):
            pass
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_supplied_empty_emitter_is_used(self, tmp_path):
        emitter = ProgressEmitter(maxsize=2)
        context = create_execution_context(
            "secflow.test",
            progress=emitter,
            volumes=VolumeManager(LocalVolumeBackend(tmp_path)),
        )
        context.emit_progress("hello")
        await context.aclose()

        assert [e.message for e in emitter.drain()] == ["hello"]

    @pytest.mark.asyncio
    async def test_default_tenant_from_config(self, tmp_path, monkeypatch):
        monkeypatch.setattr("secflow.context.get_default_tenant", lambda: "from-config")
        context = create_execution_context(
            "secflow.test", volumes=VolumeManager(LocalVolumeBackend(tmp_path))
        )
        await context.aclose()
        assert context.tenant_id == "from-config"
