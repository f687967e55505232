"""Tests for the connection history."""

import json
from datetime import datetime, timedelta, timezone

from turtlediver.history import HistoryRecorder
from turtlediver.models import ConnectionAttempt


def make_attempt(host="vpn.example.com", status="Connecting", minutes_ago=0):
    timestamp = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    return ConnectionAttempt(host=host, status=status, timestamp=timestamp)


class TestHistoryRecorder:
    """Tests for HistoryRecorder."""

    def test_newest_first(self):
        history = HistoryRecorder(":memory:")
        old = make_attempt(host="old", minutes_ago=10)
        new = make_attempt(host="new")

        history.add_attempt(new)
        history.add_attempt(old)

        assert [a.host for a in history.get_history()] == ["new", "old"]

    def test_cap_evicts_oldest(self):
        """Test the 101st attempt pushes out the oldest one."""
        history = HistoryRecorder(":memory:", max_items=100)
        attempts = [make_attempt(host=f"h{i}", minutes_ago=200 - i) for i in range(101)]

        for attempt in attempts:
            history.add_attempt(attempt)

        items = history.get_history()
        assert len(items) == 100
        assert history.get_attempt(attempts[0].id) is None
        assert items[0].id == attempts[-1].id

    def test_update_replaces_by_id(self):
        history = HistoryRecorder(":memory:")
        attempt = make_attempt()
        history.add_attempt(attempt)

        history.update_attempt(attempt.evolve(status="Connected"))

        assert len(history) == 1
        assert history.get_attempt(attempt.id).status == "Connected"

    def test_update_unknown_adds(self):
        history = HistoryRecorder(":memory:")
        history.update_attempt(make_attempt())
        assert len(history) == 1

    def test_persists_to_file(self, tmp_path):
        """Test attempts survive a new recorder on the same file."""
        path = tmp_path / "history.json"
        attempt = make_attempt(status="Disconnected").evolve(duration=42.5, log_output="line\n")

        HistoryRecorder(path).add_attempt(attempt)
        loaded = HistoryRecorder(path).get_attempt(attempt.id)

        assert loaded == attempt
        assert oct(path.stat().st_mode & 0o777) == oct(0o600)

    def test_load_trims_to_cap(self, tmp_path):
        path = tmp_path / "history.json"
        entries = [make_attempt(host=f"h{i}", minutes_ago=i).to_dict() for i in range(5)]
        path.write_text(json.dumps(entries))

        history = HistoryRecorder(path, max_items=3)

        assert [a.host for a in history.get_history()] == ["h0", "h1", "h2"]

    def test_unreadable_file_ignored(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text("{not json")
        assert len(HistoryRecorder(path)) == 0

    def test_clear(self, tmp_path):
        path = tmp_path / "history.json"
        history = HistoryRecorder(path)
        history.add_attempt(make_attempt())

        history.clear_history()

        assert len(history) == 0
        assert not path.exists()
        history.clear_history()
