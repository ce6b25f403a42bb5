"""
Tests for raven.importer — zsh history parsing, batching loader, import runs.
"""

from datetime import datetime, timedelta, timezone

import pytest

from raven.importer import (
    BatchLoader,
    Empty,
    ExtendedHeader,
    HistoryImportError,
    LoadError,
    Loader,
    MalformedExtended,
    Simple,
    ZshImporter,
    classify_line,
    import_history,
)
from raven.store import HistoryStore, StoreError
from raven.types import UNKNOWN_CWD, UNKNOWN_EXIT, History, now_utc


class MockLoader(Loader):
    def __init__(self):
        self.history = []

    def push(self, record):
        self.history.append(record)


class FailingLoader(Loader):
    def push(self, record):
        raise LoadError("disk full")


def _ts(seconds):
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def run_importer_with_content(tmp_path, content):
    path = tmp_path / "zsh_history"
    if content and not content.endswith("\n"):
        content += "\n"
    path.write_text(content, encoding="utf-8")
    loader = MockLoader()
    ZshImporter(path).load(loader)
    return loader.history


def _close_to_now(ts):
    return abs(now_utc() - ts) < timedelta(seconds=5)


# ---------------------------------------------------------------------------
# Line classification
# ---------------------------------------------------------------------------


class TestClassifyLine:
    @pytest.mark.parametrize("line", ["", "   ", "\t\n", "\n"])
    def test_empty(self, line):
        assert classify_line(line) == Empty()

    def test_simple_trailing_whitespace_stripped(self):
        assert classify_line("ls -l   \n") == Simple("ls -l")

    def test_simple_keeps_leading_whitespace(self):
        assert classify_line("    https://x.y") == Simple("    https://x.y")

    def test_extended(self):
        parsed = classify_line(": 1678886400:0;ls -l")
        assert parsed == ExtendedHeader(_ts(1678886400), "ls -l", False)

    def test_extended_continuation(self):
        parsed = classify_line(": 1678887000:0;echo \\\\")
        assert isinstance(parsed, ExtendedHeader)
        assert parsed.continues is True
        assert parsed.command == "echo \\\\"

    def test_extended_single_backslash_does_not_continue(self):
        parsed = classify_line(": 1678887000:0;echo \\")
        assert parsed.continues is False

    def test_extended_command_left_stripped(self):
        assert classify_line(": 10:0;   pwd").command == "pwd"

    def test_extended_command_may_contain_separators(self):
        parsed = classify_line(": 10:0;echo a; echo b:c")
        assert parsed.command == "echo a; echo b:c"

    @pytest.mark.parametrize("line", [
        ": 1234567890;command_missing_colon",
        ": invalid_timestamp:0;valid_command",
        ": 1234567890::command_missing_semicolon",
        ": 99999999999999999999:0;too_big",
        ": 1_000:0;underscores",
    ])
    def test_malformed(self, line):
        assert classify_line(line) == MalformedExtended(line)

    def test_colon_without_space_is_simple(self):
        assert classify_line(":noop") == Simple(":noop")


# ---------------------------------------------------------------------------
# ZshImporter.load
# ---------------------------------------------------------------------------


class TestZshLoad:
    def test_empty_file(self, tmp_path):
        assert run_importer_with_content(tmp_path, "") == []

    def test_only_empty_lines(self, tmp_path):
        assert run_importer_with_content(tmp_path, "\n\n  \t\n") == []

    def test_simple_extended_format(self, tmp_path):
        history = run_importer_with_content(
            tmp_path, ": 1678886400:0;ls -l\n: 1678886500:0;cd /tmp"
        )
        assert [h.command for h in history] == ["ls -l", "cd /tmp"]
        assert history[0].unix_timestamp == 1678886400
        assert history[1].unix_timestamp == 1678886500

    def test_imported_records_have_unknown_metadata(self, tmp_path):
        history = run_importer_with_content(tmp_path, ": 1678886400:0;ls")
        assert history[0].id == -1
        assert history[0].cwd == UNKNOWN_CWD
        assert history[0].exit_code == UNKNOWN_EXIT

    def test_simple_non_extended_format(self, tmp_path):
        history = run_importer_with_content(tmp_path, "echo hello\npwd")
        assert [h.command for h in history] == ["echo hello", "pwd"]
        assert _close_to_now(history[0].timestamp)
        assert history[0].timestamp - history[1].timestamp == timedelta(seconds=1)

    def test_multi_line_extended_command(self, tmp_path):
        content = ": 1678887000:0;echo \\\\\n> line 2\\\\\n> line 3\n: 1678887100:0;another cmd"
        history = run_importer_with_content(tmp_path, content)
        assert len(history) == 2
        assert history[0].command == "echo \\\n> line 2\\\n> line 3"
        assert history[0].unix_timestamp == 1678887000
        assert history[1].command == "another cmd"
        assert history[1].unix_timestamp == 1678887100

    def test_mixed_formats(self, tmp_path):
        content = (
            "simple cmd 1\n"
            ": 1678888000:0;extended cmd 1\n"
            "simple cmd 2\n"
            ": 1678888100:0;multi\\\\\nline\\\\\ncmd 2\n"
            "simple cmd 3"
        )
        history = run_importer_with_content(tmp_path, content)
        assert [h.command for h in history] == [
            "simple cmd 1",
            "extended cmd 1",
            "simple cmd 2",
            "multi\\\nline\\\ncmd 2",
            "simple cmd 3",
        ]
        assert _close_to_now(history[0].timestamp)
        assert history[1].unix_timestamp == 1678888000
        assert history[0].timestamp - history[2].timestamp == timedelta(seconds=1)
        assert history[3].unix_timestamp == 1678888100
        assert history[2].timestamp - history[4].timestamp == timedelta(seconds=1)

    def test_malformed_extended_lines(self, tmp_path):
        content = (
            ": 1234567890;command_missing_colon\n"
            ": invalid_timestamp:0;valid_command\n"
            ": 1234567890::command_missing_semicolon"
        )
        history = run_importer_with_content(tmp_path, content)
        assert [h.command for h in history] == [
            ": 1234567890;command_missing_colon",
            ": invalid_timestamp:0;valid_command",
            ": 1234567890::command_missing_semicolon",
        ]
        assert _close_to_now(history[0].timestamp)
        assert history[0].timestamp - history[1].timestamp == timedelta(seconds=1)
        assert history[1].timestamp - history[2].timestamp == timedelta(seconds=1)

    def test_multi_line_non_extended_command(self, tmp_path):
        content = (
            "curl -fLo ~/some/dir/in/home --create-dirs \\\\\n"
            "    https://some-random-webside.thing"
        )
        history = run_importer_with_content(tmp_path, content)
        assert len(history) == 1
        assert history[0].command == (
            "curl -fLo ~/some/dir/in/home --create-dirs \\\n"
            "    https://some-random-webside.thing"
        )
        assert _close_to_now(history[0].timestamp)

    def test_file_ends_mid_extended_command(self, tmp_path):
        content = "cmd1\n: 1678889000:0;line1\\\\\nline2\\\\\nline3"
        history = run_importer_with_content(tmp_path, content)
        assert [h.command for h in history] == ["cmd1", "line1\\\nline2\\\nline3"]
        assert history[1].unix_timestamp == 1678889000

    def test_file_ends_mid_continuation(self, tmp_path):
        # last physical line still ends with the marker
        history = run_importer_with_content(tmp_path, ": 1678889000:0;start\\\\\nmore text\\\\")
        assert len(history) == 1
        assert history[0].command == "start\\\nmore text\\"

    def test_extended_command_with_no_extra_lines(self, tmp_path):
        history = run_importer_with_content(tmp_path, ": 1678890000:0;single line command")
        assert len(history) == 1
        assert history[0].command == "single line command"
        assert history[0].unix_timestamp == 1678890000

    def test_blank_line_inside_continuation_kept(self, tmp_path):
        content = ": 100:0;cat <<EOF \\\\\n\nbody\n: 200:0;next"
        history = run_importer_with_content(tmp_path, content)
        assert [h.command for h in history] == ["cat <<EOF \\\n\nbody", "next"]

    def test_blank_line_inside_simple_continuation_kept(self, tmp_path):
        history = run_importer_with_content(tmp_path, "echo a \\\\\n\nb")
        assert [h.command for h in history] == ["echo a \\\n\nb"]

    def test_isolated_blank_lines_dropped(self, tmp_path):
        history = run_importer_with_content(tmp_path, "a\n\n\nb")
        assert [h.command for h in history] == ["a", "b"]

    def test_undecodable_bytes_replaced(self, tmp_path):
        path = tmp_path / "zsh_history"
        path.write_bytes(b": 100:0;echo \xff\xfe\n")
        loader = MockLoader()
        ZshImporter(path).load(loader)
        assert len(loader.history) == 1
        assert loader.history[0].command.startswith("echo ")

    def test_missing_file(self, tmp_path):
        with pytest.raises(HistoryImportError):
            ZshImporter(tmp_path / "nope").load(MockLoader())

    def test_loader_failure_aborts(self, tmp_path):
        path = tmp_path / "zsh_history"
        path.write_text("ls\npwd\n", encoding="utf-8")
        with pytest.raises(HistoryImportError) as exc_info:
            ZshImporter(path).load(FailingLoader())
        assert isinstance(exc_info.value.__cause__, LoadError)


# ---------------------------------------------------------------------------
# Histfile discovery
# ---------------------------------------------------------------------------


class TestZshNew:
    def test_histfile_env(self, tmp_path, monkeypatch):
        hist = tmp_path / "custom_history"
        hist.write_text("ls\n", encoding="utf-8")
        monkeypatch.setenv("HISTFILE", str(hist))
        assert ZshImporter.new().histpath == hist

    @pytest.mark.parametrize("name", [".zhistory", ".zsh_history", ".histfile"])
    def test_home_candidates(self, tmp_path, monkeypatch, name):
        monkeypatch.delenv("HISTFILE", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / name).write_text("ls\n", encoding="utf-8")
        assert ZshImporter.new().histpath == tmp_path / name

    def test_candidate_order(self, tmp_path, monkeypatch):
        monkeypatch.delenv("HISTFILE", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / ".histfile").write_text("a\n", encoding="utf-8")
        (tmp_path / ".zsh_history").write_text("b\n", encoding="utf-8")
        assert ZshImporter.new().histpath.name == ".zsh_history"

    def test_not_found(self, tmp_path, monkeypatch):
        monkeypatch.delenv("HISTFILE", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        with pytest.raises(HistoryImportError, match="Could not find"):
            ZshImporter.new()

    def test_no_home(self, monkeypatch):
        monkeypatch.delenv("HISTFILE", raising=False)
        monkeypatch.delenv("HOME", raising=False)
        with pytest.raises(HistoryImportError, match="HOME"):
            ZshImporter.new()


# ---------------------------------------------------------------------------
# BatchLoader / import_history
# ---------------------------------------------------------------------------


class FakeStore:
    """Records save_bulk batches; optionally fails on the n-th call."""

    def __init__(self, fail_on=None):
        self.batches = []
        self.fail_on = fail_on

    def save_bulk(self, records):
        if self.fail_on is not None and len(self.batches) + 1 == self.fail_on:
            raise StoreError("database is locked")
        self.batches.append(list(records))
        return list(range(len(records)))


class TestBatchLoader:
    def test_flushes_at_capacity(self):
        fake = FakeStore()
        loader = BatchLoader(fake, capacity=2)
        for i in range(5):
            loader.push(History(command=str(i)))
        assert [len(b) for b in fake.batches] == [2, 2]
        assert loader.count == 4
        loader.flush()
        assert [len(b) for b in fake.batches] == [2, 2, 1]
        assert loader.count == 5

    def test_flush_empty_is_noop(self):
        fake = FakeStore()
        loader = BatchLoader(fake)
        loader.flush()
        assert fake.batches == []
        assert loader.count == 0

    def test_default_capacity(self):
        assert BatchLoader(FakeStore()).capacity == 1000

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            BatchLoader(FakeStore(), capacity=0)

    def test_store_error_becomes_load_error(self):
        fake = FakeStore(fail_on=2)
        loader = BatchLoader(fake, capacity=1)
        loader.push(History(command="ok"))
        with pytest.raises(LoadError) as exc_info:
            loader.push(History(command="boom"))
        assert isinstance(exc_info.value.__cause__, StoreError)
        assert loader.count == 1


class TestImportHistory:
    def test_import_into_store(self, tmp_path):
        path = tmp_path / "zsh_history"
        lines = [f": {1600000000 + i}:0;cmd {i}" for i in range(25)]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        with HistoryStore(":memory:") as store:
            count = import_history(store, ZshImporter(path), capacity=10)
            assert count == 25
            assert store.count_total() == 25
            latest = store.search("")[0]
            assert latest.command == "cmd 24"
            assert latest.unix_timestamp == 1600000024

    def test_committed_batches_survive_failure(self, tmp_path):
        path = tmp_path / "zsh_history"
        path.write_text("a\nb\nc\nd\n", encoding="utf-8")
        fake = FakeStore(fail_on=2)
        with pytest.raises(HistoryImportError):
            import_history(fake, ZshImporter(path), capacity=2)
        assert [[h.command for h in b] for b in fake.batches] == [["a", "b"]]

    def test_final_flush_failure(self, tmp_path):
        path = tmp_path / "zsh_history"
        path.write_text("a\n", encoding="utf-8")
        with pytest.raises(HistoryImportError):
            import_history(FakeStore(fail_on=1), ZshImporter(path))
