from collections.abc import Callable
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from credcheck.batch import BatchRunner
from credcheck.config import Settings
from credcheck.database import build_session_factory
from credcheck.portal import NavigationError
from credcheck.run_store import add_credentials
from credcheck.schemas import CredentialData, Outcome


class FakeChecker:
    """Stands in for PortalChecker; scripts one outcome (or error) per call."""

    def __init__(self, script: dict[int, list[Outcome | Exception]] | None = None) -> None:
        self.script = script or {}
        self.calls: list[int] = []
        self.closed = False
        self.on_check: Callable[[CredentialData], None] | None = None

    def check(self, credential: CredentialData) -> Outcome:
        self.calls.append(credential.id)
        if self.on_check:
            self.on_check(credential)
        steps = self.script.get(credential.id, [Outcome.VALID])
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        return step

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="credcheck",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        portal_url=None,
        headless=True,
        browser_channels=("chromium",),
        max_login_retries=1,
        retry_backoff_seconds=0,
        captcha_max_attempts=5,
        login_timeout_seconds=120,
        step_timeout_ms=1000,
        result_wait_ms=0,
        tesseract_cmd=None,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def seed(session_factory: sessionmaker[Session]) -> Callable[[list[dict[str, object]]], None]:
    def _seed(rows: list[dict[str, object]]) -> None:
        with session_factory() as db:
            add_credentials(db, rows)

    return _seed


@pytest.fixture()
def fake_checker() -> FakeChecker:
    return FakeChecker()


@pytest.fixture()
def runner(test_settings: Settings, session_factory: sessionmaker[Session], fake_checker: FakeChecker) -> BatchRunner:
    return BatchRunner(test_settings, session_factory, checker_factory=lambda: fake_checker)


def timeout_error() -> NavigationError:
    return NavigationError("open login page failed: Timeout 60000ms exceeded")
