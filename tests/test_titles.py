from unittest.mock import AsyncMock, patch

import pytest

from widgetchat.models.db_models import UNTITLED
from widgetchat.services import titles
from widgetchat.services.errors import CompletionError


@pytest.fixture
def api_key(monkeypatch):
    monkeypatch.setenv("LLM_API_KEY", "sk-test")


@pytest.mark.asyncio
async def test_title_from_completion(api_key):
    """Test that the title comes back trimmed of quotes."""
    mock_complete = AsyncMock(return_value='"Lunch Log"\n')
    with patch("widgetchat.services.completion.complete", mock_complete):
        title = await titles.generate_title("I had a caesar salad for lunch", "Nice choice.")

    assert title == "Lunch Log"
    messages = mock_complete.call_args.args[0]
    assert "User: I had a caesar salad for lunch" in messages[1]["content"]


@pytest.mark.asyncio
async def test_failed_completion_falls_back(api_key):
    message = "Can you help me plan a week of vegetarian dinners for two people?"
    with patch("widgetchat.services.completion.complete", AsyncMock(side_effect=CompletionError("timeout"))):
        title = await titles.generate_title(message)

    assert title == message[:50]


@pytest.mark.asyncio
async def test_no_api_key_skips_completion():
    mock_complete = AsyncMock()
    with patch("widgetchat.settings.settings.get_api_key", return_value=""), patch(
        "widgetchat.services.completion.complete", mock_complete
    ):
        assert await titles.generate_title("Hello there") == "Hello there"
        assert await titles.generate_title("") == UNTITLED

    mock_complete.assert_not_awaited()
