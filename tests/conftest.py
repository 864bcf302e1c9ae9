import asyncio
import inspect
import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from resonance.config import override_runtime_env
from resonance.db import init_db, reset_engine_for_tests

os.environ.setdefault("APP_ENV", "test")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None
    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None
    fixtureinfo = getattr(pyfuncitem, "_fixtureinfo", None)
    if fixtureinfo is None:
        return None
    kwargs = {name: pyfuncitem.funcargs[name] for name in fixtureinfo.argnames}
    asyncio.run(test_func(**kwargs))
    return True


@pytest.fixture(autouse=True)
def _test_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{data_dir / 'resonance.db'}")
    monkeypatch.setenv("QUEUE_POLL_INTERVAL_MS", "10")
    monkeypatch.delenv("ACOUSTID_API_KEY", raising=False)

    override_runtime_env(None)
    reset_engine_for_tests()
    init_db()
    try:
        yield
    finally:
        reset_engine_for_tests()
        override_runtime_env(None)


@pytest.fixture()
def scratch_root(tmp_path: Path) -> Path:
    root = tmp_path / "scratch"
    root.mkdir(parents=True, exist_ok=True)
    return root
