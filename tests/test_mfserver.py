import os
import signal
import threading
import time

from syslabs.mfserver import main

CONFIG_TEXT = (
    "# test configuration\n"
    'SHMEM_NAME "/srvseg"\n'
    "SHMEM_SIZE 512\n"
    "MAX_MSGS_IN_QUEUE 10\n"
    "MAX_QUEUES_IN_SHMEM 8\n"
)


def _kill_when_ready(path, signo):
    deadline = time.monotonic() + 10
    while not path.exists() and time.monotonic() < deadline:
        time.sleep(0.01)
    if path.exists():
        time.sleep(0.05)
        os.kill(os.getpid(), signo)


def _run_until_signal(tmp_path, signo):
    config = tmp_path / "mf.config"
    config.write_text(CONFIG_TEXT)
    segment = tmp_path / "srvseg"
    killer = threading.Thread(target=_kill_when_ready, args=(segment, signo))
    killer.start()
    try:
        status = main(["--config", str(config), "--base-dir", str(tmp_path)])
    finally:
        killer.join()
    return status, segment


def test_sigterm_cleans_up(tmp_path, capsys):
    status, segment = _run_until_signal(tmp_path, signal.SIGTERM)
    out = capsys.readouterr().out
    assert status == signal.SIGTERM
    assert f"mfserver pid={os.getpid()}" in out
    assert "Cleaning up" in out
    assert not segment.exists()


def test_sigint_cleans_up(tmp_path):
    status, segment = _run_until_signal(tmp_path, signal.SIGINT)
    assert status == signal.SIGINT
    assert not segment.exists()


def test_handlers_restored(tmp_path):
    before = signal.getsignal(signal.SIGTERM)
    _run_until_signal(tmp_path, signal.SIGTERM)
    assert signal.getsignal(signal.SIGTERM) == before


def test_missing_config_fails(tmp_path):
    assert main(["--config", str(tmp_path / "absent.config"),
                 "--base-dir", str(tmp_path)]) == 1


def test_bad_size_fails(tmp_path):
    config = tmp_path / "mf.config"
    config.write_text('SHMEM_NAME "/bad"\nSHMEM_SIZE 100\nMAX_QUEUES_IN_SHMEM 8\n')
    assert main(["--config", str(config), "--base-dir", str(tmp_path)]) == 1
    assert not (tmp_path / "bad").exists()