"""Tests for the dmerg entry point."""

import io
import os
from datetime import timedelta

import pytest

import dmerg.main as main_module
from dmerg.kernel import SourceUnavailable
from dmerg.models import TimestampedEntry, parse_timestamp


class FakeSource:
    def __init__(self, entries=()):
        self._entries = list(entries)
        self.closed = False

    def entries(self):
        yield from self._entries

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("DMERG_DMESG", "DMERG_CONSOLE_OFF", "DMERG_FULL", "DMERG_OUTPUT",
                 "DMERG_OUTPUT_PREFIX", "DMERG_POLL_INTERVAL", "DMERG_DRAIN_TIMEOUT", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestSourceUnavailable:
    def test_exits_non_zero_without_output(self, tmp_path, monkeypatch, capsys):
        def unavailable(config, cutoff):
            raise SourceUnavailable("Cannot read the kernel journal: permission denied")

        monkeypatch.setattr(main_module, "open_kernel_source", unavailable)
        monkeypatch.chdir(tmp_path)

        code = main_module.main([], stdin=io.BytesIO(b"never merged\n"))

        captured = capsys.readouterr()
        assert code == 1
        assert "permission denied" in captured.err
        assert captured.out == ""
        assert os.listdir(tmp_path) == []


class TestRun:
    def test_stdin_merged_into_explicit_output(self, tmp_path, monkeypatch, capsys):
        opened = []

        def fake_open(config, cutoff):
            source = FakeSource()
            opened.append((config, cutoff, source))
            return source

        monkeypatch.setattr(main_module, "open_kernel_source", fake_open)
        out = tmp_path / "merged.log"

        code = main_module.main(["-o", str(out)], stdin=io.BytesIO(b"first\nsecond\n"))

        captured = capsys.readouterr()
        assert code == 0
        lines = out.read_text().splitlines()
        assert [line.split(" ", 1)[1] for line in lines] == ["first", "second"]
        assert captured.out.splitlines() == lines
        assert f"+ Output written to {out}" in captured.err
        config, _, source = opened[0]
        assert config.output_path == str(out)
        assert source.closed

    def test_console_off(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(main_module, "open_kernel_source", lambda config, cutoff: FakeSource())
        out = tmp_path / "merged.log"

        code = main_module.main(["-c", "-o", str(out)], stdin=io.BytesIO(b"quiet\n"))

        captured = capsys.readouterr()
        assert code == 0
        assert captured.out == ""
        assert out.read_text().endswith(" quiet\n")

    def test_generated_output_name(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(main_module, "open_kernel_source", lambda config, cutoff: FakeSource())
        monkeypatch.chdir(tmp_path)

        code = main_module.main(["-c"], stdin=io.BytesIO(b"x\n"))

        assert code == 0
        (name,) = os.listdir(tmp_path)
        assert name.startswith("dmerged.")
        assert f"+ Output written to {tmp_path / name}" in capsys.readouterr().err

    def test_kernel_entries_sorted_into_file(self, tmp_path, monkeypatch):
        def fake_open(config, cutoff):
            return FakeSource([TimestampedEntry(cutoff - timedelta(hours=1), "kernel: early")])

        monkeypatch.setattr(main_module, "open_kernel_source", fake_open)
        out = tmp_path / "merged.log"

        code = main_module.main(["-c", "-f", "-o", str(out)], stdin=io.BytesIO(b"later\n"))

        assert code == 0
        lines = out.read_text().splitlines()
        stamps = [parse_timestamp(line.split(" ", 1)[0]) for line in lines]
        assert stamps == sorted(stamps)
        assert "later" in [line.split(" ", 1)[1] for line in lines]

    def test_unwritable_destination(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(main_module, "open_kernel_source", lambda config, cutoff: FakeSource())
        out = tmp_path / "missing" / "merged.log"

        code = main_module.main(["-c", "-o", str(out)], stdin=io.BytesIO(b"lost line\n"))

        err = capsys.readouterr().err
        assert code == 1
        assert "1 merged entries were lost" in err
        assert not out.exists()


class TestCli:
    def test_flags(self):
        args = main_module.build_cli_parser().parse_args(["-f", "-c", "-d", "-o", "x.log"])
        assert args.full is True
        assert args.console_off is True
        assert args.dmesg is True
        assert args.output == "x.log"

    def test_unset_flags_are_none(self):
        args = main_module.build_cli_parser().parse_args([])
        assert args.full is None
        assert args.console_off is None
        assert args.dmesg is None

    def test_bad_log_level(self, monkeypatch):
        monkeypatch.setattr(main_module, "open_kernel_source", lambda config, cutoff: FakeSource())
        with pytest.raises(SystemExit) as exc:
            main_module.main(["--log-level", "LOUD"], stdin=io.BytesIO(b""))
        assert exc.value.code == 2

    def test_non_positive_poll_interval(self, monkeypatch):
        monkeypatch.setattr(main_module, "open_kernel_source", lambda config, cutoff: FakeSource())
        with pytest.raises(SystemExit) as exc:
            main_module.main(["-d", "--poll-interval", "0"], stdin=io.BytesIO(b""))
        assert exc.value.code == 2
