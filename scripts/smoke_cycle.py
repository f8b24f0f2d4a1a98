import logging
import os
import subprocess
import sys
import time
from pathlib import Path

import requests

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

COMPRESSOR_URL = os.getenv("COMPRESSOR_URL", "http://127.0.0.1:8000")


def wait_for_health(proc: subprocess.Popen, timeout_s: int = 20) -> None:
    start = time.time()
    while time.time() - start < timeout_s:
        if proc.poll() is not None:
            raise RuntimeError("Compressor service exited before becoming healthy.")
        try:
            resp = requests.get(f"{COMPRESSOR_URL}/healthz", timeout=2)
            if resp.status_code == 200:
                return
        except requests.RequestException:
            time.sleep(0.5)
    raise RuntimeError("Compressor service did not become healthy in time.")


def run_smoke():
    session = requests.post(f"{COMPRESSOR_URL}/cycles", timeout=60).json()
    logger.info(
        f"Cycle {session['id']}: {session['words_discovered']} words, "
        f"{session['candidates_generated']} candidates, {session['candidates_approved']} approved"
    )
    assert session["kind"] == "cycle"

    sub = requests.post(
        f"{COMPRESSOR_URL}/submissions",
        json={"original": "however", "compressed": "λ", "name": "smoke"},
        timeout=5,
    )
    assert sub.status_code == 201

    summary = requests.post(f"{COMPRESSOR_URL}/ceremony", timeout=60).json()
    logger.info(f"Ceremony: {summary['approved_count']} approved, human wins {summary['human_wins']}")

    status = requests.get(f"{COMPRESSOR_URL}/status", timeout=5).json()
    assert status["state"] == "idle"
    assert status["cycles_completed"] >= 1 and status["ceremonies_completed"] >= 1

    codex = requests.get(f"{COMPRESSOR_URL}/codex", params={"limit": 20}, timeout=5).json()
    for entry in codex:
        logger.info(f"  {entry['original']} -> {entry['compressed']} ({entry['token_savings']} saved)")

    events = requests.get(f"{COMPRESSOR_URL}/events", params={"limit": 5}, timeout=5).json()
    assert isinstance(events, list)

    print("Compressor smoke test passed.")


if __name__ == "__main__":
    env = os.environ.copy()
    env["COMPRESSOR_AUTOSTART"] = "0"
    env.setdefault("COMPRESSOR_DATASTORE", "memory")
    env.setdefault("COMPRESSOR_TOKENIZER", "heuristic")
    root = Path(__file__).resolve().parents[1]
    log_path = root / "compressor_smoke.log"
    proc = subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "services.compressor.main:app", "--host", "127.0.0.1", "--port", "8000"],
        env=env,
        cwd=str(root),
        stdout=log_path.open("w", encoding="utf-8"),
        stderr=subprocess.STDOUT,
    )
    try:
        wait_for_health(proc)
        run_smoke()
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
