import os
import pathlib
import sys
from typing import Callable

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import dictator`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from dictator.config import ConfigManager  # noqa: E402
from dictator.resilience import ConditionPoller, RetryPolicy  # noqa: E402
from support import FakeClock  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless DICTATOR_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('DICTATOR_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set DICTATOR_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Fresh configuration singleton and no DICTATOR_* overrides per test."""
    for name in list(os.environ):
        if name.startswith("DICTATOR_") and name != "DICTATOR_RUN_SLOW":
            monkeypatch.delenv(name, raising=False)
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_wait_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.0, sleep=lambda _s: None)


@pytest.fixture
def make_poller(clock: FakeClock) -> Callable[..., ConditionPoller]:
    def _make(interval: float = 1.0, timeout: float = 30.0, **options) -> ConditionPoller:
        options.setdefault("clock", clock)
        options.setdefault("sleep", clock.sleep)
        return ConditionPoller(poll_interval_seconds=interval, timeout_seconds=timeout, **options)
    return _make
