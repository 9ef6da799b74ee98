"""Prepare on-disk state for the command plane units.

Creates the state directories, seeds and commits the settings repository,
creates the recording tables and optionally writes an environment file for
systemd units.
"""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Dict

from edgeplane.config import get_cfg
from edgeplane.recording_store import RecordingStore
from edgeplane.settings_vcs import SettingsRepository

log = logging.getLogger("provision")


def _escape_env_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _write_env_file(env_path: Path, values: Dict[str, str]) -> None:
    env_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = env_path.with_suffix(env_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        for key, raw_value in values.items():
            if not raw_value:
                continue
            handle.write(f'{key}="{_escape_env_value(raw_value)}"\n')
    tmp_path.replace(env_path)


def prepare_runtime(env_file: Path | None = None, *, init_settings: bool = True) -> Dict[str, str]:
    cfg = get_cfg()
    paths_cfg = cfg.get("paths", {})
    gstd_cfg = cfg.get("gstd", {})

    env_values: Dict[str, str] = {
        "EDGEPLANE_SETTINGS_DIR": str(paths_cfg.get("settings_dir", "")),
        "EDGEPLANE_STATE_DIR": str(paths_cfg.get("state_dir", "")),
        "EDGEPLANE_RECORDINGS_DIR": str(paths_cfg.get("recordings_dir", "")),
        "EDGEPLANE_DB_PATH": str(paths_cfg.get("db_path", "")),
        "GSTD_HOST": str(gstd_cfg.get("host", "")),
        "GSTD_PORT": str(gstd_cfg.get("port", "")),
    }

    for key in ("state_dir", "recordings_dir"):
        raw_path = str(paths_cfg.get(key, ""))
        if raw_path:
            Path(raw_path).mkdir(parents=True, exist_ok=True)

    store = RecordingStore(paths_cfg["db_path"])
    try:
        store.create_tables()
    finally:
        store.dispose()

    if init_settings:
        head = SettingsRepository.from_cfg(cfg).init_repo()
        log.info("Settings repository ready at %s (HEAD %s)", paths_cfg.get("settings_dir"), head.id[:10])

    if env_file is not None:
        _write_env_file(env_file, env_values)

    return env_values


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--env-file", type=Path, default=None)
    parser.add_argument(
        "--skip-settings",
        action="store_true",
        help="Do not create or seed the settings repository.",
    )
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    prepare_runtime(args.env_file, init_settings=not args.skip_settings)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
