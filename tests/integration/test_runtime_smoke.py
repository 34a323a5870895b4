import json
import os
import subprocess
import sys

import pytest


ROLES = ["api", "sweeper"]


def _memory_env() -> dict[str, str]:
    env = dict(os.environ)
    env.pop("DATABASE_URL", None)
    env.pop("RESEND_API_KEY", None)
    return env


@pytest.mark.integration
@pytest.mark.parametrize("role", ROLES)
def test_role_starts_in_memory_mode_via_dry_run(role: str) -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "timecapsule.main", "--role", role, "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
        env=_memory_env(),
    )
    assert proc.returncode == 0, proc.stderr


@pytest.mark.integration
def test_unknown_role_exits_with_usage_error() -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "timecapsule.main", "--role", "worker-deliver", "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
        env=_memory_env(),
    )
    assert proc.returncode == 2
    assert "Try one of: api, sweeper" in proc.stderr


@pytest.mark.integration
def test_sweep_once_prints_counters_on_empty_store() -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "timecapsule.main", "--role", "sweeper", "--sweep-once"],
        capture_output=True,
        text=True,
        check=False,
        env=_memory_env(),
    )
    assert proc.returncode == 0, proc.stderr
    counters = json.loads(proc.stdout.strip().splitlines()[-1])
    assert counters == {"processedCount": 0, "successCount": 0, "failedCount": 0, "skippedCount": 0}
