import logging
from pathlib import Path
from typing import Any

from channel_relay.accounts.directory import UNNAMED_ACCOUNT, AuthSourceDirectory


def test_file_mode_discovers_valid_and_invalid_sources(
    tmp_path: Path, caplog: Any
) -> None:
    (tmp_path / "auth-2.json").write_text('{"accountName": "second"}', encoding="utf-8")
    (tmp_path / "auth-1.json").write_text('{"cookies": []}', encoding="utf-8")
    (tmp_path / "auth-3.json").write_text("{broken", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        directory = AuthSourceDirectory(tmp_path, environ={})

    assert directory.mode == "file"
    assert directory.initial_indices == [1, 2, 3]
    assert directory.list_usable_indices() == [1, 2]
    assert directory.invalid_indices == [3]
    assert directory.name_of(1) == UNNAMED_ACCOUNT
    assert directory.name_of(2) == "second"
    assert directory.name_of(3) is None
    assert directory.describe() == [
        {"index": 1, "name": UNNAMED_ACCOUNT, "valid": True},
        {"index": 2, "name": "second", "valid": True},
        {"index": 3, "name": None, "valid": False},
    ]
    assert "account_sources_invalid mode=file indices=3" in caplog.text


def test_env_mode_wins_when_first_variable_is_set(tmp_path: Path) -> None:
    (tmp_path / "auth-9.json").write_text("{}", encoding="utf-8")
    environ = {
        "AUTH_JSON_1": '{"accountName": "env-one"}',
        "AUTH_JSON_4": '{"accountName": "env-four"}',
        "AUTH_JSON_X": "{}",
        "AUTH_JSON_5": "",
    }

    directory = AuthSourceDirectory(tmp_path, environ=environ)

    assert directory.mode == "env"
    assert directory.list_usable_indices() == [1, 4]
    assert directory.invalid_indices == [5]
    assert directory.name_of(4) == "env-four"


def test_missing_directory_yields_no_accounts(tmp_path: Path, caplog: Any) -> None:
    with caplog.at_level(logging.WARNING):
        directory = AuthSourceDirectory(tmp_path / "absent", environ={})

    assert directory.list_usable_indices() == []
    assert "account_dir_missing" in caplog.text
    assert "account_sources_empty mode=file" in caplog.text


def test_reload_picks_up_new_sources(tmp_path: Path) -> None:
    directory = AuthSourceDirectory(tmp_path, environ={})
    assert directory.list_usable_indices() == []

    (tmp_path / "auth-7.json").write_text('{"accountName": "late"}', encoding="utf-8")
    directory.reload()

    assert directory.list_usable_indices() == [7]
    assert directory.name_of(7) == "late"
