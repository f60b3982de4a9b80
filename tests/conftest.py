import pathlib
import signal
import sys
import time

import psutil
import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


@pytest.fixture(scope="session", autouse=True)
def cleanup_processes():
    """Kill any player/recorder child processes still alive after the run."""
    yield

    try:
        children = psutil.Process().children(recursive=True)
    except psutil.Error as e:
        print(f"[CLEANUP] Could not list child processes: {e}")
        return

    for child in children:
        try:
            print(f"[CLEANUP] Terminating process {child.pid} ({child.name()})")
            child.send_signal(signal.SIGTERM)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    if children:
        time.sleep(0.3)

    for child in children:
        try:
            if child.is_running():
                print(f"[CLEANUP] Force killing process {child.pid}")
                child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
