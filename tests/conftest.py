from __future__ import annotations

import copy
from datetime import datetime, timezone

import pytest

from cronwatch.clock import FixedClock, TimePolicy
from cronwatch.config import DEFAULT_CONFIG, build_config
from cronwatch.storage import init_db


class FakeRemediationClient:
    """Records every remediation call and answers with canned responses."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []
        self.image_response: dict = {
            "results": [{"success": True, "imageUrl": "https://cdn.example.com/generated.png"}]
        }
        self.brief_response: dict = {"briefs_generated": 1, "errors": []}
        self.enrich_response: dict = {"briefs_enriched": 1, "errors": []}
        self.resend_response: dict = {"emails_sent": 1, "errors": []}
        self.stories_response: dict = {"stories": []}
        self.email_response: dict = {"success": True}
        self.error: Exception | None = None

    def _answer(self, name: str, arg: object, response: dict) -> dict:
        self.calls.append((name, arg))
        if self.error is not None:
            raise self.error
        return response

    def generate_image(self, article_id: str) -> dict:
        return self._answer("generate_image", article_id, self.image_response)

    def generate_brief(self, neighborhood_id: str) -> dict:
        return self._answer("generate_brief", neighborhood_id, self.brief_response)

    def enrich_brief(self, neighborhood_id: str) -> dict:
        return self._answer("enrich_brief", neighborhood_id, self.enrich_response)

    def resend_email(self, email: str) -> dict:
        return self._answer("resend_email", email, self.resend_response)

    def send_email(self, to: str, subject: str, html: str) -> dict:
        return self._answer("send_email", {"to": to, "subject": subject, "html": html}, self.email_response)

    def generate_stories(self, payload: dict) -> dict:
        return self._answer("generate_stories", payload, self.stories_response)

    def called(self, name: str) -> list[object]:
        return [arg for call, arg in self.calls if call == name]


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CW_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("CW_DB_URL", raising=False)
    monkeypatch.delenv("CW_ADMIN_TOKEN", raising=False)
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("CW_LOG_FILE", raising=False)
    monkeypatch.delenv("CW_LOG_LEVELS", raising=False)


@pytest.fixture
def conn(tmp_path):
    db = init_db(str(tmp_path / "state.sqlite3"))
    yield db
    db.close()


@pytest.fixture
def config_dict():
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["app"]["admin_email"] = "ops@example.com"
    return cfg


@pytest.fixture
def config(config_dict):
    return build_config(config_dict)


@pytest.fixture
def clock():
    # Monday 2026-10-19 14:00 UTC, 10:00 in New York
    return FixedClock(datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy(config, clock):
    return TimePolicy.from_config(config, clock)


@pytest.fixture
def client():
    return FakeRemediationClient()
