from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import jsonschema

from ..models import Neighborhood
from .remediation import RemediationClient, RemediationError

STORIES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["stories"],
    "properties": {
        "stories": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["headline", "body"],
                "properties": {
                    "headline": {"type": "string", "minLength": 1},
                    "body": {"type": "string", "minLength": 1},
                    "preview_text": {"type": ["string", "null"]},
                    "category": {"type": ["string", "null"]},
                },
            },
        }
    },
}


@dataclass(frozen=True)
class GeneratedStory:
    headline: str
    body: str
    preview_text: str | None
    category: str | None


class StoryGenerator:
    """Requests supplementary local stories for a tenant with too little content."""

    def __init__(self, client: RemediationClient) -> None:
        self.client = client

    def generate(self, neighborhood: Neighborhood, count: int) -> list[GeneratedStory]:
        response = self.client.generate_stories(
            {
                "neighborhood": {
                    "id": neighborhood.id,
                    "name": neighborhood.name,
                    "city": neighborhood.city,
                    "country": neighborhood.country,
                },
                "count": count,
            }
        )
        try:
            jsonschema.validate(response, STORIES_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise RemediationError(f"invalid_stories_response: {exc.message}") from exc
        stories = []
        for item in response["stories"][:count]:
            body = item["body"]
            stories.append(
                GeneratedStory(
                    headline=item["headline"].strip(),
                    body=body,
                    preview_text=item.get("preview_text") or body[:200],
                    category=item.get("category"),
                )
            )
        return stories
