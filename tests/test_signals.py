"""Tests for signal sampling and the state-directory source."""

import json
import os

import pytest

from donecall.errors import DeliveryFailure, SignalUnavailable
from donecall.watcher.signals import (
    FileSignalSource,
    StateDirectorySource,
    sample,
)


def write_signal(directory, session_id, **fields):
    path = directory / f"{session_id}.json"
    path.write_text(json.dumps(fields))
    return path


class ExplodingSource:
    def is_active(self):
        raise RuntimeError("tab crashed")

    def is_intermediate_phase(self):
        return False

    def current_content_snapshot(self):
        return ""

    def authoritative_timestamp(self):
        return None


class TestSample:
    def test_reads_file(self, tmp_path):
        write_signal(tmp_path, "tab-1", active=True, intermediate=True, content="hi", updatedAt=1500)
        reading = sample(FileSignalSource(tmp_path / "tab-1.json"))

        assert reading.available
        assert reading.active and reading.intermediate
        assert reading.content == "hi"
        assert reading.timestamp == 1500

    def test_intermediate_ignored_when_inactive(self, tmp_path):
        write_signal(tmp_path, "tab-1", active=False, intermediate=True)
        assert sample(FileSignalSource(tmp_path / "tab-1.json")).intermediate is False

    def test_missing_file_is_unavailable(self, tmp_path):
        reading = sample(FileSignalSource(tmp_path / "gone.json"))
        assert not reading.available
        assert not reading.active

    def test_source_exception_is_unavailable(self):
        assert not sample(ExplodingSource()).available

    def test_file_changes_are_picked_up(self, tmp_path):
        path = write_signal(tmp_path, "tab-1", active=True)
        source = FileSignalSource(path)
        assert source.is_active()

        write_signal(tmp_path, "tab-1", active=False, content="longer content so the file differs")
        stat = path.stat()
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000))
        assert not source.is_active()

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "tab-1.json"
        path.write_text("{not json")

        with pytest.raises(SignalUnavailable):
            FileSignalSource(path).is_active()


class TestStateDirectorySource:
    def test_lists_sessions_with_metadata(self, tmp_path):
        write_signal(tmp_path, "tab-1", title="Recipes", locator="https://chat/1", windowGroup="w1", lastAccessed=42)
        write_signal(tmp_path, "tab-2")
        (tmp_path / "notes.txt").write_text("ignored")

        sessions = StateDirectorySource(tmp_path).list_sessions()

        assert set(sessions) == {"tab-1", "tab-2"}
        assert sessions["tab-1"].title == "Recipes"
        assert sessions["tab-1"].window_group == "w1"
        assert sessions["tab-1"].last_accessed == 42
        assert sessions["tab-2"].title == "Chat"

    def test_unreadable_file_still_listed(self, tmp_path):
        (tmp_path / "tab-1.json").write_text("half-writ")
        assert StateDirectorySource(tmp_path).list_sessions() == {"tab-1": None}

    def test_missing_directory(self, tmp_path):
        with pytest.raises(SignalUnavailable):
            StateDirectorySource(tmp_path / "nope").list_sessions()

    def test_source_for(self, tmp_path):
        write_signal(tmp_path, "tab-1", active=True)
        assert StateDirectorySource(tmp_path).source_for("tab-1").is_active()

    def test_request_focus(self, tmp_path):
        StateDirectorySource(tmp_path).request_focus("tab-1", "w1")

        payload = json.loads((tmp_path / "tab-1.focus").read_text())
        assert payload["sessionId"] == "tab-1"
        assert payload["windowGroup"] == "w1"

    def test_request_focus_failure(self, tmp_path):
        with pytest.raises(DeliveryFailure):
            StateDirectorySource(tmp_path / "nope").request_focus("tab-1", None)
