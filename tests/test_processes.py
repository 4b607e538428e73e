import os
import socket

import psutil
import pytest

from playwrightess.browser import processes


class FakeProc:
    def __init__(self, pid, cmdline, *, kill_error=None):
        self.pid = pid
        self.info = {"pid": pid, "name": "chrome", "cmdline": cmdline}
        self.kill_error = kill_error
        self.killed = False

    def kill(self):
        if self.kill_error is not None:
            raise self.kill_error
        self.killed = True


@pytest.fixture
def process_table(monkeypatch):
    table = []
    waited = []

    def fake_wait_procs(procs, timeout=None):
        waited.append(list(procs))
        return list(procs), []

    monkeypatch.setattr(processes.psutil, "process_iter", lambda attrs=None: iter(table))
    monkeypatch.setattr(processes.psutil, "wait_procs", fake_wait_procs)
    return table, waited


class TestUsesProfile:
    def test_matches_resolved_path(self, tmp_path):
        profile = tmp_path / "profile"
        cmdline = ["chrome", f"--user-data-dir={tmp_path}/./profile", "--no-first-run"]
        assert processes.uses_profile(cmdline, profile)

    def test_quoted_value(self, tmp_path):
        profile = tmp_path / "profile"
        assert processes.uses_profile([f'--user-data-dir="{profile}"'], profile)

    def test_other_profile_or_no_flag(self, tmp_path):
        profile = tmp_path / "profile"
        assert not processes.uses_profile([f"--user-data-dir={tmp_path / 'other'}"], profile)
        assert not processes.uses_profile(["chrome", "--headless"], profile)
        assert not processes.uses_profile(None, profile)


class TestEvictProfileProcesses:
    def test_kills_only_matching_processes(self, process_table, tmp_path):
        table, waited = process_table
        profile = tmp_path / "profile"
        holder = FakeProc(101, ["chrome", f"--user-data-dir={profile}"])
        bystander = FakeProc(102, ["chrome", f"--user-data-dir={tmp_path / 'elsewhere'}"])
        table.extend([holder, bystander])

        pids = processes.evict_profile_processes(profile)

        assert pids == [101]
        assert holder.killed and not bystander.killed
        assert waited == [[holder]]

    def test_never_kills_itself(self, process_table, tmp_path):
        table, _ = process_table
        profile = tmp_path / "profile"
        me = FakeProc(os.getpid(), ["python", f"--user-data-dir={profile}"])
        table.append(me)

        assert processes.evict_profile_processes(profile) == []
        assert not me.killed

    def test_skips_processes_that_vanish(self, process_table, tmp_path):
        table, _ = process_table
        profile = tmp_path / "profile"
        gone = FakeProc(103, [f"--user-data-dir={profile}"], kill_error=psutil.NoSuchProcess(103))
        table.append(gone)

        assert processes.evict_profile_processes(profile) == []

    def test_clears_lock_files(self, process_table, tmp_path):
        profile = tmp_path / "profile"
        profile.mkdir()
        (profile / "SingletonCookie").write_text("x")
        (profile / "SingletonLock").symlink_to(tmp_path / "missing-host-1234")

        processes.evict_profile_processes(profile)

        assert not (profile / "SingletonCookie").exists()
        assert not (profile / "SingletonLock").is_symlink()


class TestClearProfileLocks:
    def test_missing_directory(self, tmp_path):
        assert processes.clear_profile_locks(tmp_path / "nope") == []

    def test_leaves_other_files(self, tmp_path):
        (tmp_path / "SingletonSocket").write_text("")
        (tmp_path / "Preferences").write_text("{}")

        removed = processes.clear_profile_locks(tmp_path)

        assert removed == [tmp_path / "SingletonSocket"]
        assert (tmp_path / "Preferences").exists()


def test_get_free_port_is_bindable():
    port = processes.get_free_port()
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))
