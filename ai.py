import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors

from schemas import Event, Registration, User

logger = logging.getLogger(__name__)

DESCRIPTION_UNAVAILABLE = "AI service is currently unavailable. Please write a description manually."
DESCRIPTION_EMPTY = "Could not generate description. Please try again."

DESCRIPTION_PROMPT = """
You are an expert event planner. Write a compelling, professional, and exciting description for an event.

Event Details:
Title: {title}
Date: {date}
Location: {location}

Requirements:
1. Two concise paragraphs engaging the potential attendee.
2. A suggested simplified agenda (3-4 bullet points) formatted cleanly.
3. Tone: Professional yet enthusiastic.
4. Return ONLY the text, no markdown code blocks.
"""

RECOMMENDATION_PROMPT = """
You recommend events to {name}.
Events they registered for before: {history}

Candidate events (JSON):
{candidates}

Return ONLY a JSON array of candidate event ids, best match first, at most {limit} ids.
"""


class AIService:
    def __init__(self, api_key: Optional[str], model: str, client=None):
        self.model = model
        self.client = client if client is not None else (genai.Client(api_key=api_key) if api_key else None)

    @property
    def available(self) -> bool:
        return self.client is not None

    def _generate(self, prompt: str) -> str:
        response = self.client.models.generate_content(model=self.model, contents=prompt)
        return (response.text or "").strip()

    def generate_event_description(self, title: str, start: datetime, location: str) -> str:
        if not self.available:
            logger.warning("Gemini API key not configured")
            return DESCRIPTION_UNAVAILABLE
        prompt = DESCRIPTION_PROMPT.format(title=title, date=start.isoformat(), location=location or "TBA")
        try:
            text = self._generate(prompt)
        except (genai_errors.APIError, httpx.HTTPError) as e:
            logger.error(f"Gemini API Error: {e}")
            return DESCRIPTION_UNAVAILABLE
        return text or DESCRIPTION_EMPTY

    def recommend_events(self, user: User, events: List[Event], registrations: List[Registration], limit: int = 3) -> List[Event]:
        """
        Rank open upcoming events the user has not registered for.
        Falls back to soonest-first when the model is unavailable or answers
        with something other than a JSON list of known ids.
        """
        now = datetime.now(timezone.utc)
        registered = {r.event_id for r in registrations}
        candidates = sorted(
            (e for e in events if e.is_registration_open and e.start >= now and e.id not in registered),
            key=lambda e: e.start,
        )
        if not candidates or not self.available:
            return candidates[:limit]

        by_id = {e.id: e for e in candidates}
        history = [e.title for e in events if e.id in registered] or ["none"]
        prompt = RECOMMENDATION_PROMPT.format(
            name=user.name,
            history=", ".join(history),
            candidates=json.dumps(
                [{"id": e.id, "title": e.title, "description": e.description[:200], "location": e.location} for e in candidates]
            ),
            limit=limit,
        )
        try:
            ranked_ids = parse_id_list(self._generate(prompt))
        except (genai_errors.APIError, httpx.HTTPError) as e:
            logger.error(f"Gemini API Error: {e}")
            ranked_ids = []

        ranked = []
        for event_id in ranked_ids:
            event = by_id.pop(event_id, None)
            if event is not None:
                ranked.append(event)
        if not ranked:
            return candidates[:limit]
        return ranked[:limit]


def parse_id_list(text: str) -> List[str]:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        cleaned = cleaned[cleaned.find("["):]
    try:
        data = json.loads(cleaned)
    except ValueError:
        logger.warning("Recommendation response was not JSON")
        return []
    if not isinstance(data, list):
        return []
    return [str(item) for item in data]
