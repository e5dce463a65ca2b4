import asyncio
import json
import types
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from mockmate.gateway import GenerationGateway
from mockmate.ledger import BalanceStore, ConsumptionLedger
from mockmate.orchestrator import SessionOrchestrator
from mockmate.providers.base import GenerationClient
from mockmate.recovery import RecoveryWriter, ResultStore
from mockmate.sessions import SessionRegistry

Script = Sequence[Union[str, BaseException]]

DEFAULT_TURN = [
    "Nice. Next question: how did you ",
    "scale the ingestion service?\n\n[STANDARD_",
    "ANSWER]\nDescribe the bottleneck, ",
    "the sharding scheme and the measured result.",
]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGenerationClient(GenerationClient):
    """Plays back scripted fragment lists, one per generation call.

    A script entry that is an exception is raised at that point of the stream.
    Once the scripts run out every call replays ``DEFAULT_TURN``.
    """

    provider_name = "fake"

    def __init__(self, scripts: Optional[List[Script]] = None, delay_s: float = 0.0):
        super().__init__(model="fake-1")
        self.scripts = list(scripts or [])
        self.prompts: List[str] = []
        self.closed = 0
        self._delay_s = delay_s

    async def stream_chat(self, prompt, system=None, request_id=None, json_mode=False):
        self.prompts.append(prompt)
        script = self.scripts.pop(0) if self.scripts else DEFAULT_TURN
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                await asyncio.sleep(self._delay_s)
                yield item
        finally:
            self.closed += 1


def json_script(obj: Dict[str, Any], size: int = 16) -> List[str]:
    text = json.dumps(obj)
    return [text[i : i + size] for i in range(0, len(text), size)]


def make_orchestrator(client: GenerationClient, clock: Optional[FakeClock] = None, free_credits: int = 3) -> SessionOrchestrator:
    clock = clock or FakeClock()
    return SessionOrchestrator(
        ledger=ConsumptionLedger(BalanceStore(free_credits=free_credits)),
        registry=SessionRegistry(clock=clock),
        gateway=GenerationGateway(client),
        writer=RecoveryWriter(ResultStore()),
        clock=clock,
    )


async def collect(channel) -> List[Dict[str, Any]]:
    return [event.to_dict() async for event in channel]


def of_type(events: List[Dict[str, Any]], kind: str) -> List[Dict[str, Any]]:
    return [e for e in events if e["type"] == kind]


def parse_sse(lines) -> List[Dict[str, Any]]:
    out = []
    for line in lines:
        if line and line.startswith("data:"):
            out.append(json.loads(line[len("data:"):].strip()))
    return out


def fake_httpx(calls=None, status_code=200, raise_exc=None):
    """Stand-in for the ``httpx`` module as used by the result mirror."""
    calls = calls if calls is not None else []

    class FakeResponse:
        def __init__(self):
            self.status_code = status_code

    class FakeAsyncClient:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, json=None, headers=None):
            if raise_exc is not None:
                raise raise_exc
            calls.append({"url": url, "json": json, "headers": headers or {}})
            return FakeResponse()

    return types.SimpleNamespace(AsyncClient=FakeAsyncClient, HTTPError=httpx.HTTPError)
