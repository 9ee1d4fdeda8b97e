import pytest

from codesync.coordinator import Coordinator
from codesync.errors import ExternalServiceFailure
from codesync.judge import ExecutionResult


class StubJudge:
    """Stands in for JudgeClient; records calls and replays a canned outcome"""

    def __init__(self, result=None, failure=None):
        self.result = result or ExecutionResult(output="ok\n", error="", time="0.01", memory="1024")
        self.failure = failure
        self.calls = []
        self.closed = False

    @property
    def configured(self):
        return True

    async def execute(self, script, language):
        self.calls.append((script, language))
        if self.failure is not None:
            raise ExternalServiceFailure(self.failure)
        return self.result

    async def close(self):
        self.closed = True


def drain(channel):
    """Pop everything queued on a channel so far"""
    events = []
    while not channel.outbox.empty():
        message = channel.outbox.get_nowait()
        if message is not None:
            events.append(message)
    return events


def of_type(events, msg_type):
    return [e for e in events if e["type"] == msg_type]


@pytest.fixture
def judge():
    return StubJudge()


@pytest.fixture
def coordinator(judge):
    return Coordinator(judge=judge)
