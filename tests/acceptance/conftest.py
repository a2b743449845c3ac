"""Fixtures shared by the acceptance scenarios."""

from dataclasses import dataclass
from typing import Any

import pytest
from werkzeug.test import TestResponse


@dataclass
class ResponseContext:
    """Carries the last response and the episode under test between steps."""

    response: TestResponse | None = None
    episode_id: str | None = None

    def json(self) -> Any:
        assert self.response is not None, "Response has not been set."
        return self.response.get_json()


@pytest.fixture
def response_context() -> ResponseContext:
    return ResponseContext()
