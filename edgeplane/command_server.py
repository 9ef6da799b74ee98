#!/usr/bin/env python3
"""HTTP request/reply front end for the command plane.

``POST /subjects/<subject>`` carries one JSON request for a concrete subject
(``pi.<device_id>.…``); the reply body is the typed reply or an error reply.
Mutations that share a resource are serialised here: all settings subjects
share one lock because the domains live in one repository, and recording
start/stop/sync share another.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Mapping

from aiohttp import web
from aiohttp.web import AppKey

from edgeplane import errors
from edgeplane import messages as m
from edgeplane.config import ConfigPersistenceError, reload_cfg
from edgeplane.dispatch import Dispatcher
from edgeplane.pipelines import PipelineOrchestrator
from edgeplane.recording_store import RecordingStore
from edgeplane.recordings import RecordingManager
from edgeplane.settings_vcs import SettingsRepository
from edgeplane.systemd_units import UnitControlAdapter

log = logging.getLogger("command_server")

SETTINGS_LOCK = "settings"
RECORDING_LOCK = "recording"

_RECORDING_SUBJECTS = frozenset({m.RECORDING_START, m.RECORDING_STOP, m.RECORDING_SYNC})

_STATUS_BY_KIND = {
    errors.UnroutableSubject.kind: 404,
    errors.PayloadDeserialization.kind: 400,
    errors.RecordingNotFound.kind: 404,
    errors.RecordingAlreadyActive.kind: 409,
    errors.NoCurrentRecording.kind: 409,
    errors.RecordingStateError.kind: 409,
    errors.RevertConflict.kind: 409,
    errors.RepositoryUninitialized.kind: 409,
    ConfigPersistenceError.kind: 409,
    errors.GitOperationError.kind: 500,
    errors.VcsIoError.kind: 500,
    errors.PipelineFatal.kind: 502,
    errors.BusTransportError.kind: 502,
    errors.UnknownUnitState.kind: 502,
    errors.UnknownChangeKind.kind: 502,
}


class SubjectLocks:
    """One asyncio lock per serialisation key."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, key: str) -> asyncio.Lock:
        return self._locks[key]


def serialization_key(subject_pattern: str) -> str | None:
    if subject_pattern.startswith("pi.{pi_id}.settings."):
        return SETTINGS_LOCK
    if subject_pattern in _RECORDING_SUBJECTS:
        return RECORDING_LOCK
    return None


DISPATCHER_KEY: AppKey[Dispatcher] = web.AppKey("dispatcher", Dispatcher)
DEVICE_ID_KEY: AppKey[str] = web.AppKey("device_id", str)
LOCKS_KEY: AppKey[SubjectLocks] = web.AppKey("subject_locks", SubjectLocks)
BLOCKING_EXECUTOR_KEY: AppKey[ThreadPoolExecutor] = web.AppKey(
    "blocking_executor", ThreadPoolExecutor
)
RECORDING_STORE_KEY: AppKey[RecordingStore] = web.AppKey("recording_store", RecordingStore)


def build_dispatcher(cfg: Mapping[str, Any], executor: ThreadPoolExecutor) -> tuple[Dispatcher, RecordingStore]:
    paths = cfg.get("paths", {})
    settings = SettingsRepository.from_cfg(cfg)
    orchestrator = PipelineOrchestrator.from_cfg(cfg)
    units = UnitControlAdapter()
    store = RecordingStore(paths.get("db_path", "edgeplane.sqlite"))
    store.create_tables()
    recordings = RecordingManager(
        store,
        orchestrator,
        units,
        recordings_dir=Path(paths.get("recordings_dir", "recordings")),
        sync_template=str(cfg.get("systemd", {}).get("recording_sync_template", "")),
        video_stream_settings=settings.load_video_stream,
        executor=executor,
    )
    dispatcher = Dispatcher(settings, orchestrator, recordings, units, executor=executor)
    return dispatcher, store


async def dispatch_subject(app: web.Application, subject: str, payload: Any) -> m.Reply | m.ErrorReply:
    subject_pattern = m.to_subject_pattern(subject, app[DEVICE_ID_KEY])
    dispatcher = app[DISPATCHER_KEY]
    key = serialization_key(subject_pattern)
    if key is None:
        return await dispatcher.dispatch(subject_pattern, payload)
    async with app[LOCKS_KEY].get(key):
        return await dispatcher.dispatch(subject_pattern, payload)


async def handle_subject(request: web.Request) -> web.Response:
    subject = request.match_info["subject"]
    payload = await request.read()
    reply = await dispatch_subject(request.app, subject, payload)
    if isinstance(reply, m.ErrorReply):
        status = _STATUS_BY_KIND.get(reply.kind, 500)
        return web.json_response(reply.to_wire(), status=status)
    return web.json_response(reply.to_wire())


async def handle_health(_: web.Request) -> web.Response:
    return web.json_response({"ok": True})


def build_app(
    dispatcher: Dispatcher | None = None,
    *,
    device_id: str | None = None,
    cfg: Mapping[str, Any] | None = None,
) -> web.Application:
    if cfg is None:
        cfg = reload_cfg()
    server_cfg = cfg.get("command_server", {})

    app = web.Application()
    executor = ThreadPoolExecutor(
        max_workers=int(server_cfg.get("blocking_workers", 4)),
        thread_name_prefix="edgeplane_blocking",
    )
    app[BLOCKING_EXECUTOR_KEY] = executor
    if dispatcher is None:
        dispatcher, store = build_dispatcher(cfg, executor)
        app[RECORDING_STORE_KEY] = store
    app[DISPATCHER_KEY] = dispatcher
    app[DEVICE_ID_KEY] = device_id or str(server_cfg.get("device_id", "localhost"))
    app[LOCKS_KEY] = SubjectLocks()

    app.router.add_post("/subjects/{subject}", handle_subject)
    app.router.add_get("/healthz", handle_health)

    async def _close_pipeline_client(app: web.Application) -> None:
        await app[DISPATCHER_KEY].orchestrator.close()

    async def _dispose_store(app: web.Application) -> None:
        store = app.get(RECORDING_STORE_KEY)
        if store is not None:
            store.dispose()

    async def _shutdown_executor(app: web.Application) -> None:
        app[BLOCKING_EXECUTOR_KEY].shutdown(wait=False, cancel_futures=True)

    app.on_cleanup.append(_close_pipeline_client)
    app.on_cleanup.append(_dispose_store)
    app.on_cleanup.append(_shutdown_executor)
    return app


async def _start_pipelines_on_startup(app: web.Application) -> None:
    reply = await app[DISPATCHER_KEY].dispatch(m.PIPELINES_START, None)
    if isinstance(reply, m.ErrorReply):
        log.error("Unable to start pipelines: %s %s", reply.kind, reply.detail)
    else:
        log.info("Started %d pipelines", len(reply.pipelines))


def cli_main() -> int:
    parser = argparse.ArgumentParser(description="Edgeplane command server.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument(
        "--start-pipelines",
        action="store_true",
        help="Provision and play the camera pipelines once the server is up.",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args()

    cfg = reload_cfg()
    level = getattr(logging, args.log_level.upper(), logging.INFO)
    if cfg.get("logging", {}).get("dev_mode"):
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    server_cfg = cfg.get("command_server", {})
    bind_host = args.host if args.host else server_cfg.get("listen_host", "127.0.0.1")
    bind_port = args.port if args.port else int(server_cfg.get("listen_port", 8090))

    try:
        app = build_app(cfg=cfg)
    except errors.EdgeplaneError as exc:
        log.error("Unable to start command server: %s", exc)
        return 1
    if args.start_pipelines:
        app.on_startup.append(_start_pipelines_on_startup)

    log.info(
        "Starting command server on %s:%s (device_id=%s, access_log=%s)",
        bind_host,
        bind_port,
        app[DEVICE_ID_KEY],
        "on" if args.access_log else "off",
    )
    web.run_app(
        app,
        host=bind_host,
        port=bind_port,
        access_log=logging.getLogger("aiohttp.access") if args.access_log else None,
        print=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
