"""Generation gateway: one call that returns a cancellable fragment channel.

``GenerationGateway.generate`` starts a producer task that pulls fragments
from the configured ``GenerationClient`` into a bounded ``Channel``. Consumers
iterate the stream; ``close()`` cancels the producer. Once the fragments are
exhausted ``await stream.result()`` yields the parsed ``GenerationResult``.
Provider errors and timeouts surface as ``GenerationFailure`` on the
consumer side.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

from mockmate import config
from mockmate.channel import Channel
from mockmate.errors import GenerationFailure
from mockmate.metrics import GENERATION_TOTAL_SECONDS, GENERATION_TTFT_SECONDS
from mockmate.providers.base import GenerationClient
from mockmate.splitter import split_text

logger = config.get_logger("gateway")


@dataclass
class PromptContext:
    prompt: str
    system: Optional[str] = None
    request_id: Optional[str] = None
    json_mode: bool = False
    # Interview turns carry the in-band tokens; one-shot JSON jobs do not
    marker: Optional[str] = config.REFERENCE_ANSWER_MARKER
    end_flag: Optional[str] = config.END_INTERVIEW_FLAG
    labels: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationResult:
    end_flag: bool
    primary: str
    secondary: Optional[str]
    raw: str


def parse_generation(text: str, ctx: PromptContext) -> GenerationResult:
    end_flag = bool(ctx.end_flag) and ctx.end_flag in text
    if ctx.marker:
        primary, secondary = split_text(text, ctx.marker, ctx.end_flag)
    else:
        primary, secondary = text, None
    if ctx.end_flag:
        primary = primary.replace(ctx.end_flag, "")
    return GenerationResult(
        end_flag=end_flag,
        primary=primary.strip(),
        secondary=secondary.strip() if secondary is not None else None,
        raw=text,
    )


def parse_json_output(text: str) -> Dict[str, Any]:
    """Parse a JSON object from model output, tolerating markdown fences."""
    content = (text or "").strip()
    if content.startswith("```"):
        content = content.strip("`")
        if content.lower().startswith("json"):
            content = content[4:]
    start, end = content.find("{"), content.rfind("}")
    if start < 0 or end <= start:
        raise GenerationFailure("model output contained no JSON object")
    try:
        obj = json.loads(content[start : end + 1])
    except json.JSONDecodeError as e:
        raise GenerationFailure(f"model output was not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise GenerationFailure("model output JSON was not an object")
    return obj


class GenerationStream:
    def __init__(self, ctx: PromptContext, channel: Channel[str]):
        self.ctx = ctx
        self._channel = channel
        self._task: Optional[asyncio.Task] = None
        self._result: asyncio.Future = asyncio.get_running_loop().create_future()

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task

    def __aiter__(self) -> AsyncIterator[str]:
        return self._channel.__aiter__()

    def close(self) -> None:
        """Cancel generation; pending fragments are dropped."""
        self._channel.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if not self._result.done():
            self._result.cancel()

    async def result(self) -> GenerationResult:
        return await self._result

    def _resolve(self, result: GenerationResult) -> None:
        if not self._result.done():
            self._result.set_result(result)

    def _fail(self, error: BaseException) -> None:
        if not self._result.done():
            self._result.set_exception(error)
            # Retrieved by result(); avoid "exception never retrieved" noise
            self._result.exception()


class GenerationGateway:
    def __init__(self, client: GenerationClient, *, ttft_timeout_s: Optional[float] = None, channel_size: Optional[int] = None):
        self.client = client
        self._ttft_timeout_s = ttft_timeout_s if ttft_timeout_s is not None else config.AI_GENERATION_TTFT_TIMEOUT_SECONDS
        self._channel_size = channel_size if channel_size is not None else config.STREAM_CHANNEL_SIZE

    @property
    def provider_name(self) -> str:
        return getattr(self.client, "provider_name", "unknown")

    @property
    def model(self) -> str:
        return str(getattr(self.client, "model", None) or "unknown")

    def generate(self, ctx: PromptContext) -> GenerationStream:
        channel: Channel[str] = Channel(maxsize=self._channel_size)
        stream = GenerationStream(ctx, channel)
        stream._attach(asyncio.create_task(self._produce(ctx, stream, channel)))
        return stream

    async def complete_json(self, ctx: PromptContext) -> Dict[str, Any]:
        """Drain a generation and parse its output as a JSON object."""
        stream = self.generate(ctx)
        async for _ in stream:
            pass
        result = await stream.result()
        return parse_json_output(result.raw)

    async def _produce(self, ctx: PromptContext, stream: GenerationStream, channel: Channel[str]) -> None:
        start = time.perf_counter()
        first_s: Optional[float] = None
        parts = []
        outcome = "success"
        agen = None
        try:
            agen = self.client.stream_chat(ctx.prompt, system=ctx.system, request_id=ctx.request_id, json_mode=ctx.json_mode).__aiter__()
            while True:
                try:
                    if first_s is None and self._ttft_timeout_s > 0:
                        fragment = await asyncio.wait_for(agen.__anext__(), timeout=self._ttft_timeout_s)
                    else:
                        fragment = await agen.__anext__()
                except StopAsyncIteration:
                    break
                if first_s is None:
                    first_s = time.perf_counter() - start
                    GENERATION_TTFT_SECONDS.labels(provider=self.provider_name, model=self.model).observe(first_s)
                if not fragment:
                    continue
                parts.append(fragment)
                if not await channel.put(fragment):
                    outcome = "cancelled"
                    return
            result = parse_generation("".join(parts), ctx)
            stream._resolve(result)
            channel.close()
        except asyncio.CancelledError:
            outcome = "cancelled"
            channel.close()
            raise
        except asyncio.TimeoutError:
            outcome = "ttft_timeout"
            err = GenerationFailure(
                f"generation backend produced no output within {self._ttft_timeout_s:g}s",
                detail={"provider": self.provider_name, "model": self.model},
            )
            stream._fail(err)
            channel.close(err)
        except Exception as e:
            outcome = "error"
            logger.exception(json.dumps({
                "event": "generation_provider_error",
                "requestId": ctx.request_id,
                "provider": self.provider_name,
                "model": self.model,
                "error": str(e),
            }))
            err = e if isinstance(e, GenerationFailure) else GenerationFailure(
                f"generation backend error: {str(e)[:240]}",
                detail={"provider": self.provider_name, "model": self.model},
            )
            stream._fail(err)
            channel.close(err)
        finally:
            total_s = time.perf_counter() - start
            GENERATION_TOTAL_SECONDS.labels(provider=self.provider_name, model=self.model, outcome=outcome).observe(total_s)
            logger.info(json.dumps({
                "event": "generation_complete",
                "requestId": ctx.request_id,
                "provider": self.provider_name,
                "model": self.model,
                "outcome": outcome,
                "ttft_ms": int(first_s * 1000) if first_s is not None else None,
                "total_ms": int(total_s * 1000),
                "chars": sum(len(p) for p in parts),
            }))
            aclose = getattr(agen, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    pass
