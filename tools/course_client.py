"""
Course data tool.

Provides:
- CourseClient.fetch_course_slots(institution_key, course_key, term_key): current sections of a course
  with available/capacity counts for each section and each nested meeting.

Talks to a GraphQL endpoint (settings.COURSE_API_URL) that exposes
`course(code, institution, term) { sections { ... } }`. The response is normalized into
models.schemas.CourseData so the evaluator never sees raw JSON:
    {
        "sections": [
            {"id": "0101", "available": 3, "capacity": 30,
             "meetings": [{"id": "...", "type": "LAB", "name": "...", "available": 1, "capacity": 24}]}
        ]
    }
"""

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from config.settings import settings
from core.errors import FetchError
from models.schemas import CourseData

logger = logging.getLogger(__name__)

SLOTS_QUERY = """
query Slots($courseKey: String!, $termKey: Term!, $institutionKey: School!) {
  course(code: $courseKey, institution: $institutionKey, term: $termKey) {
    sections {
      id
      available
      capacity
      meetings {
        id
        type
        name
        available
        capacity
      }
    }
  }
}
"""


class CourseClient:
    """Async client for the course GraphQL API. Call open() before use and close() when done."""

    def __init__(self, api_url: Optional[str] = None, timeout: Optional[float] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_url = api_url or settings.COURSE_API_URL
        self.timeout = timeout if timeout is not None else settings.COURSE_API_TIMEOUT_SEC
        self._client = client
        self._owns_client = client is None

    async def open(self) -> "CourseClient":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "CourseClient":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def fetch_course_slots(self, institution_key: str, course_key: str, term_key: str) -> Optional[CourseData]:
        """
        Fetch sections for one course.

        Returns None when the API knows nothing about the course, raises FetchError on any
        transport, HTTP or GraphQL level failure.
        """
        if self._client is None:
            await self.open()

        variables = {"institutionKey": institution_key, "courseKey": course_key, "termKey": term_key}
        context = {"institution_key": institution_key, "course_key": course_key, "term_key": term_key}
        try:
            resp = await self._client.post(self.api_url, json={"query": SLOTS_QUERY, "variables": variables})
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Course fetch failed for %s: %s", variables, e)
            raise FetchError(f"Course data request failed: {e}", **context) from e

        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            messages = "; ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)
            logger.error("Course API returned errors for %s: %s", variables, messages)
            raise FetchError(f"Course API error: {messages}", **context)

        return self._normalize(payload, context)

    @staticmethod
    def _normalize(payload: Any, context: Dict[str, str]) -> Optional[CourseData]:
        data = payload.get("data") if isinstance(payload, dict) else None
        course = (data or {}).get("course")
        if not course:
            return None
        try:
            return CourseData.model_validate(course)
        except PydanticValidationError as e:
            raise FetchError(f"Course API returned malformed course data: {e}", **context) from e
