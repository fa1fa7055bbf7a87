import pytest

from smartfarm.models import FinishReason, ModelCallResult


class FakeModelClient:
    """Stands in for GeminiClient; replies are consumed in order."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    async def generate(self, prompt, config=None):
        self.calls.append((prompt, config))
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, ModelCallResult):
            return reply
        return ModelCallResult(raw_text=reply, finish_reason=FinishReason.COMPLETE)


@pytest.fixture
def fake_client():
    def _make(*replies):
        return FakeModelClient(replies)
    return _make
