from __future__ import annotations

import json
import os
import urllib.error
import urllib.parse
import urllib.request
from typing import Any


class RemediationError(ValueError):
    pass


def http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: int,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise RemediationError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise RemediationError(f"network_error: {exc}") from exc
    except TimeoutError as exc:
        raise RemediationError(f"network_error: timed out after {timeout}s") from exc
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"data": parsed}


class RemediationClient:
    """Authenticated calls to the pipeline's internal generation and delivery endpoints."""

    def __init__(self, base_url: str, secret: str | None, timeout_seconds: int = 120) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret = secret or ""
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config) -> "RemediationClient":
        return cls(
            base_url=config.remediation.base_url,
            secret=os.environ.get(config.remediation.secret_env),
            timeout_seconds=config.remediation.timeout_seconds,
        )

    def _headers(self) -> dict[str, str]:
        if not self.secret:
            return {}
        return {
            "Authorization": f"Bearer {self.secret}",
            "x-cron-secret": self.secret,
        }

    def _url(self, path: str, query: dict[str, str] | None = None) -> str:
        url = self.base_url + path
        if query:
            url += "?" + urllib.parse.urlencode(query)
        return url

    def _get(self, path: str, query: dict[str, str]) -> dict[str, Any]:
        return http_request("GET", self._url(path, query), self._headers(), None, self.timeout_seconds)

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        return http_request("POST", self._url(path), self._headers(), payload, self.timeout_seconds)

    def generate_image(self, article_id: str) -> dict[str, Any]:
        return self._post("/api/internal/generate-image", {"article_id": article_id})

    def generate_brief(self, neighborhood_id: str) -> dict[str, Any]:
        return self._get(
            "/api/cron/sync-neighborhood-briefs",
            {"test": neighborhood_id, "force": "true"},
        )

    def enrich_brief(self, neighborhood_id: str) -> dict[str, Any]:
        return self._get("/api/cron/enrich-briefs", {"test": neighborhood_id, "force": "true"})

    def resend_email(self, email: str) -> dict[str, Any]:
        return self._get("/api/cron/send-daily-brief", {"test": email, "force": "true"})

    def send_email(self, to: str, subject: str, html: str) -> dict[str, Any]:
        return self._post("/api/internal/send-email", {"to": to, "subject": subject, "html": html})

    def generate_stories(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._post("/api/internal/generate-stories", payload)
