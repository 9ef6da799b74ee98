#!/usr/bin/env python3
"""
Unified configuration loader for Edgeplane.

Bootstrap load order (first found wins, later files fill gaps):
  1) EDGEPLANE_CONFIG (env, absolute or relative to CWD)
  2) /etc/edgeplane/config.yaml
  3) /var/lib/edgeplane/config.yaml
  4) <project_root>/config.yaml (derived from this file's location)
  5) <script_dir>/config.yaml (directory of the running script)
  6) ./config.yaml (current working directory)

The version-controlled primary settings file
(<settings_dir>/edgeplane/edgeplane.yaml) is merged on top for the sections it
owns. Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import io
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Sequence

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq

from edgeplane.errors import EdgeplaneError

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.allow_unicode = True
_ROUND_TRIP_YAML.preserve_quotes = True

PRIMARY_SETTINGS_RELPATH = "edgeplane/edgeplane.yaml"
# Top-level sections owned by the primary settings file.
PRIMARY_SECTIONS = ("video_stream", "apps")

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "settings_dir": "/var/lib/edgeplane/settings",
        "state_dir": "/var/lib/edgeplane",
        "recordings_dir": "/var/lib/edgeplane/video",
        "db_path": "/var/lib/edgeplane/db/edgeplane.sqlite",
    },
    "git": {
        "email": "robots@edgeplane.local",
        "name": "Edgeplane",
        "default_branch": "main",
    },
    "gstd": {
        "host": "127.0.0.1",
        "port": 5000,
        "timeout_sec": 10.0,
    },
    "systemd": {
        "recording_sync_template": "edgeplane-recording-sync",
    },
    "command_server": {
        "listen_host": "127.0.0.1",
        "listen_port": 8090,
        "device_id": "localhost",
        "blocking_workers": 4,
    },
    "video_stream": {
        "camera": {
            "device_name": "/base/soc/i2c0mux/i2c@1/imx219@10",
            "width": 640,
            "height": 480,
            "framerate": 15,
        },
        "snapshot": {
            "enabled": True,
            "path": "/var/run/edgeplane/snapshot-%d.jpg",
        },
        "hls": {
            "enabled": True,
            "segments": "/var/run/edgeplane/hls/segment%05d.ts",
            "playlist": "/var/run/edgeplane/hls/playlist.m3u8",
            "playlist_root": "/edgeplane-hls/",
        },
        "rtp": {
            "video_udp_port": 20001,
            "overlay_udp_port": 20002,
        },
        "detection": {
            "tensor_width": 320,
            "tensor_height": 320,
            "model_file": "/usr/share/edgeplane/model/model.tflite",
            "label_file": "/usr/share/edgeplane/model/labels.txt",
            "nms_threshold": 50,
            "nats_server_uri": "nats://127.0.0.1:4223",
        },
        "recording": {
            "cloud_sync": True,
            "part_duration_sec": 60,
        },
    },
    "apps": {
        "octoprint": {"enabled": True, "unit": "octoprint.service"},
        "moonraker": {"enabled": False, "unit": "moonraker.service"},
        "klipper": {"enabled": False, "unit": "klipper.service"},
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


class ConfigPersistenceError(EdgeplaneError):
    """Raised when settings cannot be parsed or rendered."""

    kind = "config_persistence"


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError):
        # Ignore parse errors and continue with other locations/defaults
        pass
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("EDGEPLANE_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("/etc/edgeplane/config.yaml"),
            Path("/var/lib/edgeplane/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        resolved = candidate.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "EDGEPLANE_DEVICE_ID": ("command_server", "device_id", str),
        "EDGEPLANE_LISTEN_HOST": ("command_server", "listen_host", str),
        "EDGEPLANE_LISTEN_PORT": ("command_server", "listen_port", int),
        "EDGEPLANE_SETTINGS_DIR": ("paths", "settings_dir", str),
        "EDGEPLANE_STATE_DIR": ("paths", "state_dir", str),
        "EDGEPLANE_RECORDINGS_DIR": ("paths", "recordings_dir", str),
        "EDGEPLANE_DB_PATH": ("paths", "db_path", str),
        "GSTD_HOST": ("gstd", "host", str),
        "GSTD_PORT": ("gstd", "port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key].strip()
        if not raw:
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            pass


def primary_settings_path(cfg: Mapping[str, Any]) -> Path:
    settings_dir = Path(str(cfg.get("paths", {}).get("settings_dir", "")))
    return settings_dir / PRIMARY_SETTINGS_RELPATH


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # edgeplane/ -> project root
    project_root = Path(__file__).resolve().parent.parent
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if active is None and candidate.exists():
            active = candidate

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))
    _active_config_path = active

    # Env overrides land before the primary settings file is located; that
    # file only owns sections the environment never touches.
    _apply_env_overrides(cfg)

    primary = _load_yaml_if_exists(primary_settings_path(cfg))
    owned = {key: value for key, value in primary.items() if key in PRIMARY_SECTIONS}
    cfg = _deep_merge(cfg, owned)

    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def default_primary_settings() -> Dict[str, Any]:
    return {section: copy.deepcopy(_DEFAULTS[section]) for section in PRIMARY_SECTIONS}


def _convert_to_round_trip(value: Any) -> Any:
    if isinstance(value, (CommentedMap, CommentedSeq)):
        return value
    if isinstance(value, Mapping) and not isinstance(value, (str, bytes)):
        converted = CommentedMap()
        for key, sub_value in value.items():
            converted[key] = _convert_to_round_trip(sub_value)
        return converted
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        converted_seq = CommentedSeq()
        for item in value:
            converted_seq.append(_convert_to_round_trip(item))
        return converted_seq
    return copy.deepcopy(value)


def _replace_mapping(
    target: MutableMapping[str, Any],
    updates: Mapping[str, Any],
    *,
    prune: bool,
) -> None:
    if prune:
        for existing_key in list(target.keys()):
            if existing_key not in updates:
                del target[existing_key]
    for key, value in updates.items():
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, MutableMapping):
                _replace_mapping(existing, value, prune=prune)
            else:
                target[key] = _convert_to_round_trip(value)
        elif isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
            target[key] = _convert_to_round_trip(value)
        else:
            target[key] = copy.deepcopy(value)


def _load_yaml_for_update(text: str) -> MutableMapping[str, Any]:
    if not text.strip():
        return CommentedMap()
    try:
        data = _ROUND_TRIP_YAML.load(text)
    except Exception as exc:
        raise ConfigPersistenceError(f"Unable to read settings: {exc}") from exc
    if data is None:
        return CommentedMap()
    if not isinstance(data, MutableMapping):
        raise ConfigPersistenceError("Settings root must be a mapping")
    return data


def dump_yaml_text(payload: Mapping[str, Any]) -> str:
    stream = io.StringIO()
    _ROUND_TRIP_YAML.dump(_convert_to_round_trip(payload), stream)
    return stream.getvalue()


def render_primary_settings(
    section: str, values: Mapping[str, Any], existing_text: str
) -> str:
    """Return ``existing_text`` with one top-level section replaced.

    Comments and key order outside of ``section`` survive the rewrite. Keys
    missing from ``values`` are pruned from the section.
    """
    if section not in PRIMARY_SECTIONS:
        raise ConfigPersistenceError(f"{section!r} is not stored in the primary settings file")
    if not isinstance(values, Mapping):
        raise ConfigPersistenceError(f"{section} settings payload must be a mapping")

    updated = _load_yaml_for_update(existing_text)
    target = updated.get(section)
    if not isinstance(target, MutableMapping):
        target = CommentedMap()
        updated[section] = target
    _replace_mapping(target, values, prune=True)

    stream = io.StringIO()
    _ROUND_TRIP_YAML.dump(updated, stream)
    return stream.getvalue()


def video_stream_from_primary(text: str) -> Dict[str, Any]:
    """``video_stream`` section of primary settings text, filled from defaults."""
    try:
        loaded = yaml.safe_load(text) if text.strip() else {}
    except yaml.YAMLError as exc:
        raise ConfigPersistenceError(f"Unable to parse primary settings: {exc}") from exc
    section = loaded.get("video_stream") if isinstance(loaded, dict) else None
    base = copy.deepcopy(_DEFAULTS["video_stream"])
    if isinstance(section, dict):
        return _deep_merge(base, section)
    return base


def check_primary_settings(text: str) -> None:
    """Raise ``ConfigPersistenceError`` unless ``text`` is a usable primary settings file."""
    try:
        loaded = yaml.safe_load(text) if text.strip() else {}
    except yaml.YAMLError as exc:
        raise ConfigPersistenceError(f"Unable to parse primary settings: {exc}") from exc
    if loaded is None:
        return
    if not isinstance(loaded, dict):
        raise ConfigPersistenceError("Settings root must be a mapping")
    for section in PRIMARY_SECTIONS:
        if section in loaded and not isinstance(loaded[section], (dict, type(None))):
            raise ConfigPersistenceError(f"{section} settings must be a mapping")
