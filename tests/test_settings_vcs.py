from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from edgeplane import settings_vcs
from edgeplane.errors import GitOperationError, RepositoryUninitialized, RevertConflict, VcsIoError
from edgeplane.settings_vcs import DOMAINS, SettingsApp, SettingsRepository, parse_raw_log

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


@pytest.fixture
def restarted() -> list[str]:
    return []


@pytest.fixture
def reloads(monkeypatch) -> list[bool]:
    calls: list[bool] = []
    monkeypatch.setattr(settings_vcs, "reload_cfg", lambda: calls.append(True))
    return calls


@pytest.fixture
def repo(tmp_path: Path, git_env, restarted, reloads) -> SettingsRepository:
    apps = {
        "octoprint": {"enabled": True, "unit": "octoprint.service"},
        "moonraker": {"enabled": False, "unit": "moonraker.service"},
        "klipper": {"enabled": True, "unit": "klipper.service"},
    }
    return SettingsRepository(
        tmp_path / "settings",
        git_name="Edgeplane Tests",
        git_email="tests@edgeplane.local",
        apps_settings=lambda: apps,
        restart_unit=restarted.append,
    )


def test_missing_repository_is_uninitialized(repo: SettingsRepository) -> None:
    with pytest.raises(RepositoryUninitialized):
        repo.head_commit()
    with pytest.raises(RepositoryUninitialized):
        repo.apply(SettingsApp.OCTOPRINT, "a\n")


def test_repository_without_commits_is_uninitialized(repo: SettingsRepository) -> None:
    repo.root.mkdir(parents=True)
    repo._git("init", "-b", "main")

    with pytest.raises(RepositoryUninitialized):
        repo.head_commit()
    with pytest.raises(RepositoryUninitialized):
        repo.repo_history()
    with pytest.raises(RepositoryUninitialized):
        repo.revert(SettingsApp.OCTOPRINT, "HEAD")


def test_init_repo_seeds_domains_once(repo: SettingsRepository) -> None:
    head = repo.init_repo()

    for domain in DOMAINS.values():
        assert (repo.root / domain.relpath).is_file()
    assert head.message == "Initial settings"
    assert head.ts > 0

    again = repo.init_repo()
    assert again.id == head.id
    assert len(repo.repo_history()) == 1


def test_load_missing_file_returns_empty_content(repo: SettingsRepository) -> None:
    loaded = repo.load(SettingsApp.KLIPPER)
    assert loaded.content == ""
    assert loaded.file_name.endswith("klipper/printer.cfg")
    assert [f.app for f in repo.load_all()] == list(SettingsApp)


def test_apply_commits_content(repo: SettingsRepository) -> None:
    repo.init_repo()

    change = repo.apply(SettingsApp.OCTOPRINT, "server:\n  port: 5002\n", "Bump port")

    assert change.file.content == "server:\n  port: 5002\n"
    assert repo.load(SettingsApp.OCTOPRINT).content == "server:\n  port: 5002\n"
    assert change.git_head_commit == repo.head_commit().id
    assert change.git_history[0].id == change.git_head_commit
    assert change.git_history[0].message == "Bump port"
    assert len(repo.repo_history()) == 2


def test_apply_generates_revision_message(repo: SettingsRepository) -> None:
    repo.init_repo()

    first = repo.apply(SettingsApp.MOONRAKER, "[server]\nport: 7126\n")
    second = repo.apply(SettingsApp.MOONRAKER, "[server]\nport: 7127\n")

    assert first.git_history[0].message == "moonraker/moonraker.conf - revision #1"
    assert second.git_history[0].message == "moonraker/moonraker.conf - revision #2"


def test_apply_unchanged_content_still_commits(repo: SettingsRepository) -> None:
    repo.init_repo()
    current = repo.load(SettingsApp.KLIPPER).content

    change = repo.apply(SettingsApp.KLIPPER, current, "No-op save")

    assert change.git_history[0].message == "No-op save"
    assert change.git_history[0].id == change.git_head_commit
    assert [c.message for c in repo.history(SettingsApp.KLIPPER)] == ["Initial settings"]
    assert len(repo.repo_history()) == 2


def test_revert_appends_commit_and_restores_content(repo: SettingsRepository) -> None:
    repo.init_repo()
    repo.apply(SettingsApp.OCTOPRINT, "a\n", "a")
    applied = repo.apply(SettingsApp.OCTOPRINT, "b\n", "b")
    history_before = [commit.id for commit in repo.repo_history()]

    change = repo.revert(SettingsApp.OCTOPRINT, applied.git_head_commit)

    assert change.file.content == "a\n"
    assert change.git_head_commit != applied.git_head_commit
    history_after = [commit.id for commit in repo.repo_history()]
    assert len(history_after) == len(history_before) + 1
    assert history_after[1:] == history_before
    assert history_after[0] == change.git_head_commit
    assert change.git_history[0].message.startswith('Revert "b"')


def test_revert_of_unchanged_apply_appends_commit(repo: SettingsRepository) -> None:
    repo.init_repo()
    repo.apply(SettingsApp.OCTOPRINT, "a\n", "m1")
    unchanged = repo.apply(SettingsApp.OCTOPRINT, "a\n", "m2")
    history_before = repo.repo_history()

    change = repo.revert(SettingsApp.OCTOPRINT, unchanged.git_head_commit)

    assert change.file.content == "a\n"
    assert change.git_head_commit != unchanged.git_head_commit
    assert change.git_history[0].id == change.git_head_commit
    assert change.git_history[0].message.startswith('Revert "m2"')
    assert len(repo.repo_history()) == len(history_before) + 1
    assert repo._git("status", "--porcelain").stdout.strip() == ""


def test_revert_conflict_aborts_and_keeps_head(repo: SettingsRepository) -> None:
    repo.init_repo()
    repo.apply(SettingsApp.OCTOPRINT, "a\n", "a")
    middle = repo.apply(SettingsApp.OCTOPRINT, "b\n", "b")
    latest = repo.apply(SettingsApp.OCTOPRINT, "c\n", "c")

    with pytest.raises(RevertConflict):
        repo.revert(SettingsApp.OCTOPRINT, middle.git_head_commit)

    assert repo.head_commit().id == latest.git_head_commit
    assert repo.load(SettingsApp.OCTOPRINT).content == "c\n"
    assert not (repo.root / ".git" / "REVERT_HEAD").exists()
    assert repo._git("status", "--porcelain").stdout.strip() == ""


def test_revert_unknown_commit(repo: SettingsRepository) -> None:
    repo.init_repo()
    with pytest.raises(GitOperationError):
        repo.revert(SettingsApp.OCTOPRINT, "0" * 40)


def test_post_save_hooks(repo: SettingsRepository, restarted, reloads) -> None:
    repo.init_repo()

    repo.apply(SettingsApp.OCTOPRINT, "a\n")
    repo.apply(SettingsApp.MOONRAKER, "[server]\n")
    repo.apply(SettingsApp.KLIPPER, "[printer]\n")
    repo.apply(SettingsApp.PRIMARY, "video_stream: {}\n")

    assert restarted == ["octoprint.service", "klipper.service"]
    assert reloads == [True]


def test_primary_apply_rejects_unparseable_settings(repo: SettingsRepository, reloads) -> None:
    repo.init_repo()
    head = repo.head_commit().id
    before = repo.load(SettingsApp.PRIMARY).content

    with pytest.raises(VcsIoError):
        repo.apply(SettingsApp.PRIMARY, "video_stream: [\n")
    with pytest.raises(VcsIoError):
        repo.apply(SettingsApp.PRIMARY, "video_stream: 3\n")

    assert repo.head_commit().id == head
    assert repo.load(SettingsApp.PRIMARY).content == before
    assert reloads == []


def test_history_is_scoped_to_domain(repo: SettingsRepository) -> None:
    repo.init_repo()
    repo.apply(SettingsApp.OCTOPRINT, "a\n", "octoprint change")
    repo.apply(SettingsApp.KLIPPER, "[printer]\n", "klipper change")

    messages = [commit.message for commit in repo.history(SettingsApp.OCTOPRINT)]
    assert messages == ["octoprint change", "Initial settings"]


def test_load_video_stream_reads_primary_file(repo: SettingsRepository) -> None:
    repo.init_repo()
    repo.apply(SettingsApp.PRIMARY, "video_stream:\n  camera:\n    width: 1920\n")

    video_stream = repo.load_video_stream()

    assert video_stream["camera"]["width"] == 1920
    assert video_stream["camera"]["height"] == 480


def test_parse_raw_log() -> None:
    payload = (
        "commit 1111111111111111111111111111111111111111\n"
        "tree 2222222222222222222222222222222222222222\n"
        "parent 3333333333333333333333333333333333333333\n"
        "author A <a@example.com> 1700000000 +0000\n"
        "committer C <c@example.com> 1700000100 +0100\n"
        "\n"
        "    Subject line\n"
        "    \n"
        "    Body line\n"
        "\n"
        "commit 3333333333333333333333333333333333333333\n"
        "tree 4444444444444444444444444444444444444444\n"
        "author A <a@example.com> 1690000000 +0000\n"
        "committer C <c@example.com> 1690000000 +0000\n"
        "\n"
        "    Initial settings\n"
    )

    commits = parse_raw_log(payload)

    assert [commit.id for commit in commits] == ["1" * 40, "3" * 40]
    assert commits[0].message == "Subject line\n\nBody line"
    assert commits[0].ts == 1700000100
    assert commits[0].header.startswith("tree ")
    assert "parent " not in commits[1].header
    assert commits[1].message == "Initial settings"
