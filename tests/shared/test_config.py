"""Tests for Settings and backoff parsing."""

from __future__ import annotations

import pytest

from cabinet.config import Settings, parse_backoff_seconds


class TestSettings:
    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CABINET_DOWNLOAD_MAX_CONCURRENT", "4")
        monkeypatch.setenv("CABINET_RUNNER_IMAGE", "custom/runner:1")
        settings = Settings()
        assert settings.download_max_concurrent == 4
        assert settings.runner_image == "custom/runner:1"

    def test_storage_dir_derived_from_root(self) -> None:
        assert Settings(data_root="/var/lib/cabinet/").storage_dir == "/var/lib/cabinet/storage"


class TestParseBackoff:
    def test_parses_curve(self) -> None:
        assert parse_backoff_seconds("1, 5,15", default=(9,)) == (1.0, 5.0, 15.0)

    def test_invalid_entries_ignored(self) -> None:
        assert parse_backoff_seconds("2,abc,-1,0,3", default=(9,)) == (2.0, 3.0)

    def test_empty_falls_back(self) -> None:
        assert parse_backoff_seconds(" , ", default=(2.0, 5.0)) == (2.0, 5.0)
